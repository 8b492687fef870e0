import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from ordersync.core.config import Settings, settings
from ordersync.application.orchestrator import ReconciliationOrchestrator
from ordersync.application.status_channel import LiveStatusChannel
from ordersync.infrastructure.database import build_engine, build_session_factory, init_db
from ordersync.infrastructure.repositories.order_repository import SqlAlchemyOrderRepository
from ordersync.infrastructure.status_store import build_status_store
from ordersync.interfaces import orders_api

logger = logging.getLogger(__name__)


def create_app(config: Settings = settings, status_store=None) -> FastAPI:
    """
    Composition root. Every service is built here and handed to its
    consumers explicitly; routes reach them through app.state.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(config.DATABASE_URL)
        init_db(engine, retries=config.DB_CONNECT_RETRIES, wait_seconds=config.DB_RETRY_WAIT_SECONDS)

        order_repo = SqlAlchemyOrderRepository(
            build_session_factory(engine), poll_seconds=config.LIVE_QUERY_POLL_SECONDS
        )
        store = status_store or await build_status_store(config.REDIS_URL, config.STATUS_HEARTBEAT_SECONDS)

        app.state.order_repo = order_repo
        app.state.status_store = store
        app.state.channel = LiveStatusChannel(store, order_repo)
        # Server side has no signed-in principal; orders are tracked per owner id
        app.state.orchestrator = ReconciliationOrchestrator(order_repo, app.state.channel)
        try:
            yield
        finally:
            await app.state.orchestrator.close()
            app.state.channel.close()
            await store.close()
            engine.dispose()

    app = FastAPI(title=config.PROJECT_NAME, lifespan=lifespan)
    app.include_router(orders_api.router)

    @app.get("/")
    def health_check():
        channel = getattr(app.state, "channel", None)
        live = channel is not None and channel.is_connected
        return {
            "status": "active" if live else "degraded",
            "liveStatusConnected": live,
            "system": "Order Sync",
        }

    return app


logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
app = create_app()


def run(config: Settings = settings) -> None:
    """Serve the app with uvicorn (the `ordersync` console script)."""
    uvicorn.run("ordersync.main:app", host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
