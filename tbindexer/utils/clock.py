import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

log = logging.getLogger(__name__)


class Clock:
    """Wall-clock time and sleeping, injectable so loops can be driven from tests."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


SYSTEM_CLOCK = Clock()


class PeriodicTask:
    """Runs `fn` every `interval` seconds until stopped.

    A failing tick is logged and the loop carries on; only cancellation ends it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[None]],
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if self.run_immediately:
            await self._tick()
        while True:
            await self.clock.sleep(self.interval)
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self.fn()
        except Exception:
            self.log.exception(f"[{self.name}] tick failed")
