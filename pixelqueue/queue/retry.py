"""
Retry Classifier

Maps a failure to retryable / non-retryable. Rules, in order:

1. error kinds tagged non-retryable (validation, content policy, bad
   input, auth) fail fast
2. an exhausted attempt budget is final
3. everything else is retried
"""

from dataclasses import dataclass

from pixelqueue.core.exceptions import ErrorKind, NON_RETRYABLE_KINDS, PixelQueueError


@dataclass(frozen=True)
class FailureClassification:
    retryable: bool
    code: ErrorKind
    reason: str


def error_kind_of(error: BaseException) -> ErrorKind:
    """Domain errors carry their kind; anything else is an internal error."""
    if isinstance(error, PixelQueueError):
        return error.kind
    return ErrorKind.INTERNAL_ERROR


def classify(error: BaseException, attempts_made: int, max_attempts: int) -> FailureClassification:
    code = error_kind_of(error)

    if code in NON_RETRYABLE_KINDS:
        return FailureClassification(retryable=False, code=code, reason="non_retryable_error")

    if attempts_made >= max_attempts:
        return FailureClassification(retryable=False, code=code, reason="max_attempts_exhausted")

    return FailureClassification(retryable=True, code=code, reason="transient")
