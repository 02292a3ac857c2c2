"""
Detached tasks — fire-and-forget bookkeeping.

A detached task is never awaited by the code that spawns it.  Its
failure is logged and discarded; it can never surface on the request or
connection that triggered it.  Anything whose outcome the caller needs
must be awaited directly instead.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

# Strong references until completion (the loop only keeps weak ones).
_detached: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Detached task %s failed: %s",
            task.get_name(),
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def spawn_detached(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """Schedule `coro` on the running loop without tying it to the caller."""
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _detached.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain_detached() -> None:
    """Wait for every outstanding detached task (tests, orderly shutdown)."""
    while _detached:
        await asyncio.gather(*list(_detached), return_exceptions=True)
