"""Helpers for fire-and-forget asyncio tasks and provider retries."""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from .exceptions import BotHostError

logger = structlog.get_logger("botalto.session")

T = TypeVar("T")


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(
            "background_task_failed",
            task=task.get_name(),
            error=str(exc),
            exc_type=type(exc).__name__,
        )


async def retry_once(
    op: Callable[[], Awaitable[T]],
    *,
    action: str,
    backoff: float,
    log=logger,
) -> T:
    """Await op, retrying it once after ``backoff`` seconds on a retryable error.

    Errors whose category is not TRANSIENT propagate on the first attempt.
    """
    try:
        return await op()
    except BotHostError as e:
        if not e.is_retryable:
            raise
        log.warning(
            "transient_error_retrying",
            action=action, error=str(e), retry_delay=backoff,
        )
    await asyncio.sleep(backoff)
    return await op()
