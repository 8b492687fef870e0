"""Failure taxonomy shared by the durable store, the live channel and the orchestrator."""

MISSING_FIELD = "MissingField"
INVALID_FIELD = "InvalidField"


class OrderSyncError(Exception):
    pass


class NotFoundError(OrderSyncError):
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class DecodeFailure(OrderSyncError):
    """A stored document is incomplete or carries a value we cannot use."""

    def __init__(self, reason: str, field: str, detail: str = ""):
        message = f"{reason}: {field}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.reason = reason
        self.field = field


class TransportError(OrderSyncError):
    pass


class FormatError(OrderSyncError):
    """Unexpected value shape on the live status channel."""

    def __init__(self, path: str, value):
        super().__init__(f"Invalid status format at {path}: {value!r}")
        self.path = path
        self.value = value


class IndexUnavailable(OrderSyncError):
    pass


class InvalidTransition(OrderSyncError):
    def __init__(self, current, requested):
        super().__init__(f"Cannot move order from {current} to {requested}")
        self.current = current
        self.requested = requested


class NotAuthenticated(OrderSyncError):
    pass
