"""Tenacity retry policy for outbound calls, driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        logger.warning(
            "retry_scheduled",
            operation=operation,
            attempt=state.attempt_number,
            wait_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
            error_type=type(exc).__name__ if exc is not None else None,
        )

    return _log


def with_retry(
    config: RetryConfig,
    *,
    operation: str,
    retryable_exceptions: tuple[type[BaseException], ...],
) -> Callable:
    """Return a tenacity decorator retrying *retryable_exceptions* only.

    Every scheduled retry is logged as ``retry_scheduled`` with the
    *operation* name.  After the last attempt the original exception is
    re-raised rather than wrapped in ``tenacity.RetryError``.

    Usage::

        @with_retry(settings.retry, operation="token_refresh",
                    retryable_exceptions=(httpx.TransportError,))
        async def post() -> dict: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_before_sleep(operation),
        reraise=True,
    )
