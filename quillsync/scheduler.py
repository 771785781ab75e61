"""Guards and periodic runners for cooperative background work."""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RoundState(Enum):
    """State of a guarded resource."""

    IDLE = "idle"
    IN_FLIGHT = "in_flight"


class RoundGuard:
    """Non-blocking mutual exclusion for one resource.

    The guard is taken before the first suspension point of a task and
    released after its last step. A task that finds the guard taken
    returns instead of waiting.
    """

    def __init__(self, name: str):
        self.name = name
        self.state = RoundState.IDLE

    @property
    def in_flight(self) -> bool:
        return self.state == RoundState.IN_FLIGHT

    def try_acquire(self) -> bool:
        if self.state == RoundState.IN_FLIGHT:
            return False
        self.state = RoundState.IN_FLIGHT
        return True

    def release(self) -> None:
        self.state = RoundState.IDLE

    async def wait_idle(self, attempts: int, delay_seconds: float) -> bool:
        """Poll a bounded number of times for the guard to become idle.

        Returns:
            True if the guard is idle.
        """
        tries = 0
        while tries < attempts and self.in_flight:
            tries += 1
            await asyncio.sleep(delay_seconds)
        return not self.in_flight


class PeriodicTask:
    """Runs a coroutine function at a fixed interval until stopped.

    A failing run is logged and the task is scheduled again, so one error
    never stops later runs. Stopping waits for a running call to finish
    instead of cancelling it.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval_seconds: float,
    ):
        self.name = name
        self._func = func
        self._interval = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the task in the background (restarts a finished task)."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info(f"Periodic task '{self.name}' started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop rescheduling and wait for the current run to end."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info(f"Periodic task '{self.name}' stopped")

    async def run_once(self) -> None:
        """Run the function once, logging any failure."""
        self.runs += 1
        try:
            await self._func()
        except Exception as e:
            self.failures += 1
            logger.error(f"Periodic task '{self.name}' failed: {e}", exc_info=True)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
