"""
Error Taxonomy

Every failure that can leave a pipeline stage is one of the tagged error
types below. Retryability is a property of the type, not of the message;
the retry classifier reads ``kind`` and ``retryable`` and nothing else.

Also provides the circuit breaker that guards calls to external services.
"""

from enum import Enum
import time
from typing import Any, Callable, Dict, Optional

from pixelqueue.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Stable error codes persisted on jobs and dead-letter records."""
    INVALID_INPUT = "INVALID_INPUT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    BAD_IMAGE = "BAD_IMAGE"
    CONTENT_POLICY_VIOLATION = "CONTENT_POLICY_VIOLATION"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    PROVIDER_TRANSIENT = "PROVIDER_TRANSIENT"
    STORAGE_ERROR = "STORAGE_ERROR"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Kinds that must fail fast: retrying them only delays the refund.
NON_RETRYABLE_KINDS = frozenset({
    ErrorKind.INVALID_INPUT,
    ErrorKind.VALIDATION_FAILED,
    ErrorKind.BAD_IMAGE,
    ErrorKind.CONTENT_POLICY_VIOLATION,
    ErrorKind.UNAUTHORIZED,
    ErrorKind.FORBIDDEN,
    ErrorKind.INSUFFICIENT_CREDITS,
})


# =============================================================================
# Custom Exceptions
# =============================================================================

class PixelQueueError(Exception):
    """Base exception for PixelQueue."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "job_id": self.job_id,
            "stage": self.stage,
            "details": self.details,
        }


class InvalidInputError(PixelQueueError):
    """Malformed request or selector."""
    kind = ErrorKind.INVALID_INPUT


class InvalidKeyFormatError(InvalidInputError):
    """Idempotency key without a channel separator."""


class InvalidStorageKeyError(InvalidInputError):
    """Object key that resolves outside the storage root."""


class BadImageError(PixelQueueError):
    """Source image cannot be decoded or is missing."""
    kind = ErrorKind.BAD_IMAGE


class ContentPolicyViolationError(PixelQueueError):
    """Provider flagged the content. Also counts against the account."""
    kind = ErrorKind.CONTENT_POLICY_VIOLATION


class UnauthorizedError(PixelQueueError):
    """Credentials rejected by an external service."""
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(PixelQueueError):
    """Caller is not allowed to use the resource."""
    kind = ErrorKind.FORBIDDEN


class ProviderTransientError(PixelQueueError):
    """Timeout or 5xx from the generative provider."""
    kind = ErrorKind.PROVIDER_TRANSIENT

    def __init__(self, message: str, service: str = "generation", http_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class CircuitBreakerOpenError(ProviderTransientError):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str, **kwargs):
        super().__init__(
            f"Service '{service}' is temporarily unavailable (circuit breaker open)",
            service=service,
            **kwargs
        )


class StorageError(PixelQueueError):
    """Raised when storage operations fail."""
    kind = ErrorKind.STORAGE_ERROR


class InsufficientCreditsError(PixelQueueError):
    """Account balance is below the job cost."""
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, account_id: str, required: int, available: int, **kwargs):
        super().__init__(
            f"Account {account_id} has {available} credits, {required} required",
            **kwargs
        )
        self.details.update({"account_id": account_id, "required": required, "available": available})


class InternalError(PixelQueueError):
    """Unexpected failure. Retryable until attempts run out."""
    kind = ErrorKind.INTERNAL_ERROR


class InvalidStatusTransition(InternalError):
    """Job status may only move forward (or processing -> queued on retry)."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Illegal status transition {current} -> {target}",
            job_id=job_id,
            details={"current": current, "target": target}
        )


# =============================================================================
# Provider Circuit
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fails provider calls fast after a run of consecutive failures.

    After `recovery_timeout` seconds the circuit lets a single trial call
    through. A successful trial closes it again and a failed trial restarts
    the cooldown. Only failures the caller chooses to report count, so a
    content-policy rejection never trips the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def can_execute(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self):
        if self._opened_at is not None:
            logger.info("circuit_closed", circuit=self.name)
        self.reset()

    def record_failure(self, error: Optional[Exception] = None):
        self._consecutive_failures += 1
        was_trial = self._trial_in_flight
        self._trial_in_flight = False

        if was_trial or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                "circuit_opened",
                circuit=self.name,
                consecutive_failures=self._consecutive_failures,
                trial=was_trial,
                error=str(error) if error else None
            )

    def release_trial(self):
        """Give back a trial slot whose call ended without an outcome."""
        self._trial_in_flight = False

    def reset(self):
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False
