"""Session-wide telemetry silence detection."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[], Awaitable[None]]


class LivenessMonitor:
    """One-shot deadline that is pushed back by every accepted reading.

    The monitor latches once it fires: late readings and stale timer handles
    cannot trigger the callback a second time. Only :meth:`reset` (a new
    session) re-arms it.
    """

    def __init__(self, timeout: float, on_timeout: TimeoutCallback) -> None:
        if timeout <= 0:
            raise ValueError("liveness timeout must be positive")
        self.timeout = timeout
        self._on_timeout = on_timeout
        self._handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._deadline: Optional[float] = None
        self._fired = False
        self._callback_task: Optional[asyncio.Task[None]] = None

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def armed(self) -> bool:
        return self._handle is not None and not self._fired

    @property
    def deadline(self) -> Optional[float]:
        """Monotonic deadline of the pending timer, if any."""
        return self._deadline

    def remaining(self) -> float:
        if self._deadline is None or self._fired:
            return 0.0
        return max(0.0, self._deadline - time.monotonic())

    def start(self) -> None:
        """Arm the deadline at session start, before any reading arrives."""
        self._schedule()

    def on_reading_accepted(self) -> None:
        self._schedule()

    def cancel(self) -> None:
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._deadline = None

    def reset(self) -> None:
        """Clear the latch for a fresh session. Leaves the monitor disarmed."""
        self.cancel()
        self._fired = False

    def _schedule(self) -> None:
        if self._fired:
            return
        self.cancel()
        loop = asyncio.get_running_loop()
        generation = self._generation
        self._deadline = time.monotonic() + self.timeout
        self._handle = loop.call_later(self.timeout, self._expire, generation)

    def _expire(self, generation: int) -> None:
        if generation != self._generation or self._fired:
            return
        self._fired = True
        self._handle = None
        self._deadline = None
        logger.warning("No accepted telemetry for %.1fs - liveness timeout", self.timeout)
        self._callback_task = asyncio.ensure_future(self._run_callback())

    async def _run_callback(self) -> None:
        try:
            await self._on_timeout()
        except Exception:
            logger.exception("Liveness timeout callback failed")


__all__ = ["LivenessMonitor", "TimeoutCallback"]
