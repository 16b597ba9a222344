"""Bounded retry with linear backoff for persistence gateway calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from marginalia.errors import TransientNetworkError
from marginalia.models.config import RetryConfig

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

_logger = structlog.get_logger("marginalia.retry")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Await ``operation()``, retrying on :class:`TransientNetworkError`.

    The n-th retry waits ``config.backoff_seconds * n`` seconds. Any other
    exception (including :class:`~marginalia.errors.PersistenceRejected`)
    propagates immediately.

    Args:
        operation: Zero-argument coroutine factory. Called once per attempt.
        config: Attempt budget and backoff unit.
        name: Label used in log events.
        sleep: Injectable sleep, for tests.

    Returns:
        The result of the first successful attempt.

    Raises:
        TransientNetworkError: The last transient failure once the budget is spent.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except TransientNetworkError as exc:
            if attempt >= config.max_attempts:
                _logger.warning(
                    "retry_budget_exhausted",
                    operation=name,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            delay = config.backoff_seconds * attempt
            _logger.info(
                "retrying_after_transient_error",
                operation=name,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            await sleep(delay)
            attempt += 1
