"""
Error taxonomy for the mission kernel.

AlreadyProcessed is deliberately absent: an idempotent replay is an outcome,
reported as success, never raised.
"""

from typing import Optional


class KernelError(Exception):
    """Base class for every failure surfaced by the engine."""

    error_code = "kernel_error"
    retryable = False

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(KernelError):
    """Malformed or missing required input. Rejected, not retried."""

    error_code = "validation_error"


class NotFoundError(KernelError):
    """Referenced entity does not exist."""

    error_code = "not_found"


class ConflictError(KernelError):
    """Illegal state transition. No mutation was made."""

    error_code = "conflict"


class StorageError(KernelError):
    """The atomic admit/credit/transition failed in the storage layer."""

    error_code = "storage_error"
    retryable = True


class ExternalNotifyFailure(KernelError):
    """Best-effort update of the external tracker failed."""

    error_code = "external_notify_failure"
