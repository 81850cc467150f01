"""Error types raised by the terminal core.

Validation and conflict errors are raised before any transport call and leave
local state untouched. Transport errors are split by whether a retry can help.
"""

from typing import Optional

class PosError(Exception):
    """Base class for terminal core errors."""

    kind = "error"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

class ValidationFailed(PosError):
    """Malformed or out-of-policy input, rejected locally."""

    kind = "validation"

class CreditLimitExceeded(ValidationFailed):
    """A store-credit charge would push a customer past their credit limit."""

    def __init__(self, customer_id: str, limit: float, requested: float):
        super().__init__(
            f"credit limit exceeded for customer {customer_id}: "
            f"limit {limit:.2f}, requested balance {requested:.2f}"
        )
        self.customer_id = customer_id
        self.limit = limit
        self.requested = requested

class ConflictError(PosError):
    """The operation contradicts current shared state; nothing was changed."""

    kind = "conflict"

class PermissionDenied(PosError):
    kind = "permission"

    def __init__(self, actor_id: str, permission: str):
        super().__init__(f"actor {actor_id} lacks permission {permission}")
        self.actor_id = actor_id
        self.permission = permission

class TransportError(PosError):
    """Transport-level failure talking to the store."""

    kind = "transport"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, cause: Optional[Exception] = None):
        super().__init__(message, cause)
        self.status_code = status_code

class TransientTransportError(TransportError):
    """Network failure, request timeout or a 5xx response."""

    retryable = True

class PermanentTransportError(TransportError):
    """A 4xx response; retrying the same request cannot succeed."""

class RetriesExhausted(TransportError):
    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"gave up after {attempts} attempts", cause=last_error)
        self.attempts = attempts
        self.status_code = getattr(last_error, "status_code", None)

class SubmissionTimeout(TransportError):
    kind = "timeout"

    def __init__(self, seconds: float):
        super().__init__(f"submission timed out after {seconds:g}s")
        self.seconds = seconds
