"""Domain-specific exceptions."""


class ServiceError(Exception):
    pass


class NotAuthenticated(ServiceError):
    pass


class UserNotFound(ServiceError):
    pass


class InvalidAmount(ServiceError):
    pass


class InsufficientTokens(ServiceError):
    def __init__(self, message: str, *, available: int = 0, requested: int = 0) -> None:
        super().__init__(message)
        self.available = available
        self.requested = requested


class LedgerPersistenceError(ServiceError):
    pass


def require_user_id(user_id: int | None) -> int:
    """Return the caller's user id or fail when the session carried none."""

    if user_id is None or isinstance(user_id, bool):
        raise NotAuthenticated("Unauthorized")
    return int(user_id)
