"""Failure kinds raised by the data access layer."""

from typing import Any, Iterable, Optional


class RepositoryError(Exception):
    """Base exception for repository and unit of work operations."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.entity_type = entity_type
        self.operation = operation


class NotFoundError(RepositoryError):
    """Raised when a key lookup that must succeed matches nothing."""

    def __init__(self, entity_type: str, key: Any, operation: str = "get"):
        super().__init__(
            f"{entity_type} with key {key!r} not found",
            entity_type=entity_type,
            operation=operation,
        )
        self.key = key


class AmbiguousResultError(RepositoryError):
    """Raised when a unique lookup matches more than one row."""

    def __init__(self, entity_type: str, detail: str = "", operation: str = "get"):
        message = f"More than one {entity_type} matched a unique lookup"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, entity_type=entity_type, operation=operation)


class MissingContextError(RepositoryError):
    """Raised when no persistence context of the required type is available."""

    def __init__(
        self,
        context_type: Any,
        operation: str,
        entity_type: Optional[str] = None,
        message: Optional[str] = None,
    ):
        name = getattr(context_type, "__name__", str(context_type))
        super().__init__(
            message or f"{operation} failed. No instance of context {name} registered",
            entity_type=entity_type,
            operation=operation,
        )
        self.context_type = context_type


class StorageFailureError(RepositoryError):
    """Raised when the underlying storage operation fails; the cause is attached."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        committed: Iterable[type] = (),
    ):
        super().__init__(message, operation=operation)
        self.committed = list(committed)


class TransactionMisuseError(RepositoryError):
    """Raised when a transaction is used outside its lifecycle."""

    def __init__(self, message: str):
        super().__init__(message, operation="transaction")


class InvalidIncludeError(RepositoryError):
    """Raised when an eager-load path names an unknown relationship."""

    def __init__(self, entity_type: str, path: str):
        super().__init__(
            f"{entity_type} has no relationship path {path!r}",
            entity_type=entity_type,
            operation="include",
        )
        self.path = path


class RegistrationError(RepositoryError):
    """Raised for conflicting repository registrations."""

    def __init__(self, message: str, entity_type: Optional[str] = None):
        super().__init__(message, entity_type=entity_type, operation="register")
