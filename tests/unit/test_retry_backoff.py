import pytest

from pixelqueue.core.exceptions import (
    BadImageError,
    ContentPolicyViolationError,
    ErrorKind,
    ForbiddenError,
    InternalError,
    InvalidInputError,
    ProviderTransientError,
    StorageError,
    UnauthorizedError,
)
from pixelqueue.queue.backoff import backoff_delay, make_backoff
from pixelqueue.queue.retry import classify, error_kind_of


def test_backoff_follows_table_and_clamps():
    no_jitter = dict(delays_ms=(1000, 2000, 5000), jitter_max_ms=0)
    assert backoff_delay(1, **no_jitter) == 1.0
    assert backoff_delay(2, **no_jitter) == 2.0
    assert backoff_delay(3, **no_jitter) == 5.0
    assert backoff_delay(7, **no_jitter) == 5.0


def test_backoff_jitter_is_bounded():
    assert backoff_delay(1, (1000,), 500, rng=lambda: 0.0) == 1.0
    assert backoff_delay(1, (1000,), 500, rng=lambda: 0.999) < 1.5


def test_backoff_empty_table_means_no_delay():
    assert backoff_delay(3, delays_ms=()) == 0.0


def test_make_backoff_binds_arguments():
    backoff = make_backoff((100, 200), jitter_max_ms=0)
    assert backoff(1) == 0.1
    assert backoff(2) == 0.2


@pytest.mark.parametrize("error", [
    InvalidInputError("bad selector"),
    BadImageError("cannot decode"),
    ContentPolicyViolationError("flagged"),
    UnauthorizedError("bad key"),
    ForbiddenError("nope"),
])
def test_permanent_errors_fail_fast(error):
    # Act
    result = classify(error, attempts_made=1, max_attempts=3)

    # Assert
    assert result.retryable is False
    assert result.code == error.kind
    assert result.reason == "non_retryable_error"


@pytest.mark.parametrize("error", [
    ProviderTransientError("503"),
    StorageError("disk full"),
    InternalError("oops"),
    RuntimeError("unexpected"),
])
def test_transient_errors_retry_until_budget_runs_out(error):
    assert classify(error, 1, 3).retryable is True
    assert classify(error, 2, 3).retryable is True

    exhausted = classify(error, 3, 3)
    assert exhausted.retryable is False
    assert exhausted.reason == "max_attempts_exhausted"


def test_unknown_exceptions_are_internal_errors():
    assert error_kind_of(ValueError("x")) == ErrorKind.INTERNAL_ERROR
    assert classify(KeyError("x"), 1, 3).code == ErrorKind.INTERNAL_ERROR
