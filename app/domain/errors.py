from __future__ import annotations

from app.domain.error_taxonomy import ProviderErrorKind


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class ForbiddenError(DomainError):
    pass


class TaskNotFoundError(DomainError):
    pass


class InvalidStateError(DomainError):
    pass


class InsufficientBalanceError(DomainError):
    pass


class CancellationPendingError(DomainError):
    """Cancellation was requested but the store never confirmed a terminal status."""


class PersistenceError(DomainError):
    """Store write or read failed; conditional updates may be retried."""


class ProviderError(DomainError):
    def __init__(self, kind: ProviderErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind: ProviderErrorKind = kind
