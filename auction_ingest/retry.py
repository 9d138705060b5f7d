import time
from collections.abc import Callable
from typing import TypeVar


T = TypeVar("T")


def run_with_retries(
    fn: Callable[[int], T],
    *,
    max_attempts: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> T:
    """Call ``fn(attempt)`` until it succeeds or attempts run out.

    The last error is re-raised unchanged so callers can still tell a
    transport failure from a validation failure.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return fn(attempt)
        except Exception as exc:
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt >= max_attempts or not retry_allowed:
                raise
            time.sleep(backoff_seconds * attempt)

    raise AssertionError("unreachable")
