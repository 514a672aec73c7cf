"""
Error taxonomy for the reconciliation engine.

Every error raised inside a reconcile pass is one of these types so the
controller can decide whether to retry, back off, or surface a condition.
"""


class OperatorError(Exception):
    """Base class for all operator errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SpecValidationError(OperatorError):
    """Raised when a resource spec violates an invariant."""


class StoreError(OperatorError):
    """Raised when the orchestration store rejects a request."""


class NotFoundError(StoreError):
    """Raised when an object does not exist in the store."""


class TransientStoreError(StoreError):
    """Raised when the store is temporarily unavailable."""


class ConflictError(StoreError):
    """Raised when a write loses an optimistic-concurrency race."""


class OwnershipError(OperatorError):
    """Raised when the expected workload name is owned by another resource."""
