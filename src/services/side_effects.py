"""Runner for non-critical side effects.

Notifications, transcript uploads and the timeout cancel call must never
change the outcome of a turn or stretch it past its deadline.  Instead of
scattering ``try/except`` at each call site, callers hand the coroutine to
:meth:`SideEffects.fire`, which schedules it as a task, keeps a strong
reference until it finishes and logs any failure.

:meth:`SideEffects.drain` waits for everything still in flight; the app
lifespan calls it on shutdown and tests call it before asserting on
collaborators.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class SideEffects:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def fire(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
        """Schedule *coro*; failures are logged under *label* and dropped."""
        task = asyncio.create_task(self._guard(coro, label), name=f"side-effect:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, coro: Coroutine[Any, Any, Any], label: str) -> Any | None:
        """Await *coro* inline with the same guard.  Returns ``None`` on failure."""
        return await self._guard(coro, label)

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("%d side effects still running at drain", len(still_running))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, Any], label: str) -> Any | None:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Non-critical side effect failed: %s", label)
            return None
