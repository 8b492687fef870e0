from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "Order_Sync"

    # --- Durable store ---
    DATABASE_URL: str = "sqlite:///./ordersync.db"
    DB_CONNECT_RETRIES: int = 10
    DB_RETRY_WAIT_SECONDS: float = 3.0
    LIVE_QUERY_POLL_SECONDS: float = 2.0

    # --- Live status channel ---
    REDIS_URL: str = "redis://localhost:6379/0"
    STATUS_HEARTBEAT_SECONDS: float = 5.0

    # --- HTTP server ---
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"  # Other services share the same .env
    )

settings = Settings()
