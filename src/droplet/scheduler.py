"""Clock and delay source for the droplet poll loop."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Coroutine, Optional


@dataclass(frozen=True)
class PollSchedule:
    """Fixed-delay retry schedule. ``timeout=None`` polls forever."""
    interval: float = 5.0
    timeout: Optional[float] = None

    def expired(self, started_at: float, now: float) -> bool:
        return self.timeout is not None and now - started_at >= self.timeout


class Scheduler:
    """
    Real-time scheduler backed by the running asyncio loop.

    The controller only talks to this object for time, so tests can
    substitute a manual clock whose sleeps return immediately.
    """

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(coro)
