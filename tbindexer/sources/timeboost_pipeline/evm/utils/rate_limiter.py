"""
Adaptive admission control for remote reads.

Every remote call goes through `AdaptiveRateLimiter.execute`. Calls wait in a
FIFO queue until fewer than `concurrency` calls are in flight. The limit
tunes itself:

* a rate-limit failure cuts concurrency immediately
  (`max(min, floor(C * decrease_ratio))`) and pauses dispatch for an
  exponentially growing backoff;
* a periodic `adjust()` tick raises the target by `increase_ratio` while the
  success rate holds above `target_success_rate`, shrinks it 10 % when the
  rate drops below 90 % of target, and moves the live limit one step toward
  the target.

The limiter never retries and never swallows: the original exception is
re-raised after bookkeeping.
"""
import asyncio
import logging
import math
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, TypeVar

from tbindexer.sources.timeboost_pipeline.evm.utils.errors import RateLimitedError
from tbindexer.utils.clock import Clock, PeriodicTask, SYSTEM_CLOCK
from tbindexer.utils.types import RateLimiterMetrics

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RESPONSE_TIMES = 100
MIN_BACKOFF_SECONDS = 0.001


class AdaptiveRateLimiter:
    def __init__(
        self,
        initial_concurrency: int = 5,
        min_concurrency: int = 1,
        max_concurrency: int = 50,
        increase_ratio: float = 1.2,
        decrease_ratio: float = 0.5,
        success_window: float = 30.0,
        adjustment_interval: float = 5.0,
        target_success_rate: float = 0.95,
        backoff_multiplier: float = 2.0,
        initial_backoff: float = 1.0,
        max_backoff: float = 60.0,
        min_samples: int = 10,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if not 1 <= min_concurrency <= max_concurrency:
            raise ValueError("need 1 <= min_concurrency <= max_concurrency")
        self.min_concurrency = min_concurrency
        self.max_concurrency = max_concurrency
        self.current_concurrency = min(max(initial_concurrency, min_concurrency), max_concurrency)
        self.target_concurrency = self.current_concurrency
        self.increase_ratio = increase_ratio
        self.decrease_ratio = decrease_ratio
        self.success_window = success_window
        self.adjustment_interval = adjustment_interval
        self.target_success_rate = target_success_rate
        self.backoff_multiplier = backoff_multiplier
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.min_samples = min_samples
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log

        self._waiters: Deque[asyncio.Future] = deque()
        self._active = 0
        self._backoff = 0.0
        self._paused_until = 0.0
        self._resume_task: Optional[asyncio.Task] = None
        self._adjuster: Optional[PeriodicTask] = None

        # window counters, reset on each adjustment
        self._success_count = 0
        self._failure_count = 0
        self._rate_limit_count = 0
        # cumulative counters for reporting
        self._total_success = 0
        self._total_failure = 0
        self._total_rate_limited = 0

        self._response_times: Deque[float] = deque(maxlen=MAX_RESPONSE_TIMES)
        self._last_adjustment_time = self.clock.time()
        self._last_success_time = self.clock.time()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    @property
    def concurrency(self) -> int:
        return self.current_concurrency

    @property
    def in_flight(self) -> int:
        return self._active

    @property
    def backoff_delay(self) -> float:
        return self._backoff

    def pause_remaining(self) -> float:
        return max(0.0, self._paused_until - self.clock.monotonic())

    def _can_dispatch(self) -> bool:
        return self._active < self.current_concurrency and self.pause_remaining() <= 0

    def _dispatch(self) -> None:
        while self._waiters and self._can_dispatch():
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._active += 1
            fut.set_result(None)

    async def _acquire(self) -> None:
        if not self._waiters and self._can_dispatch():
            self._active += 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # slot was granted just as we were cancelled; hand it on
                self._release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        self._active -= 1
        self._dispatch()

    async def execute(self, task: Callable[[], Awaitable[T]]) -> T:
        await self._acquire()
        started = self.clock.monotonic()
        try:
            result = await task()
        except RateLimitedError as exc:
            self._record_latency(started)
            self._rate_limit_count += 1
            self._total_rate_limited += 1
            self._handle_rate_limit(exc)
            raise
        except Exception:
            self._record_latency(started)
            self._failure_count += 1
            self._total_failure += 1
            raise
        else:
            self._record_latency(started)
            self._success_count += 1
            self._total_success += 1
            self._last_success_time = self.clock.time()
            if self._backoff > 0:
                decayed = self._backoff * 0.9
                self._backoff = decayed if decayed >= MIN_BACKOFF_SECONDS else 0.0
            return result
        finally:
            self._release()

    def _record_latency(self, started: float) -> None:
        self._response_times.append((self.clock.monotonic() - started) * 1000)

    def _handle_rate_limit(self, exc: RateLimitedError) -> None:
        before = self.current_concurrency
        self.current_concurrency = max(self.min_concurrency, math.floor(before * self.decrease_ratio))
        self.target_concurrency = self.current_concurrency

        if self._backoff == 0:
            self._backoff = self.initial_backoff
        else:
            self._backoff = min(self._backoff * self.backoff_multiplier, self.max_backoff)

        pause = max(self._backoff, exc.retry_after or 0.0)
        self._paused_until = max(self._paused_until, self.clock.monotonic() + pause)
        self._schedule_resume()

        self.log.warning(
            f"Rate limit hit. Concurrency {before} -> {self.current_concurrency}, backoff {pause:.2f}s"
        )

    def _schedule_resume(self) -> None:
        if self._resume_task is not None and not self._resume_task.done():
            self._resume_task.cancel()
        self._resume_task = asyncio.get_running_loop().create_task(self._resume_after_pause())

    async def _resume_after_pause(self) -> None:
        while (remaining := self.pause_remaining()) > 0:
            await self.clock.sleep(remaining)
        self._dispatch()

    # ------------------------------------------------------------------
    # Periodic adjustment
    # ------------------------------------------------------------------

    def adjust(self) -> None:
        """One adjustment tick. Needs `min_samples` requests since the last one."""
        now = self.clock.time()
        total = self._success_count + self._failure_count + self._rate_limit_count
        if total < self.min_samples:
            return

        success_rate = self._success_count / total
        recently_successful = (now - self._last_success_time) < self.success_window

        self._success_count = 0
        self._failure_count = 0
        self._rate_limit_count = 0
        self._last_adjustment_time = now

        if recently_successful and success_rate >= self.target_success_rate:
            grown = max(self.target_concurrency + 1, math.floor(self.target_concurrency * self.increase_ratio))
            self.target_concurrency = min(self.max_concurrency, grown)
        elif success_rate < self.target_success_rate * 0.9:
            self.target_concurrency = max(self.min_concurrency, math.floor(self.target_concurrency * 0.9))

        # slow ramp: one step per tick
        if self.current_concurrency < self.target_concurrency:
            self.current_concurrency += 1
        elif self.current_concurrency > self.target_concurrency:
            self.current_concurrency -= 1

        self.log.debug(
            f"Concurrency adjusted: {self.current_concurrency} (target: {self.target_concurrency}), "
            f"success rate: {success_rate * 100:.1f}%, avg response time: {self.average_response_time():.0f}ms"
        )
        self._dispatch()

    async def _adjust_tick(self) -> None:
        self.adjust()

    def start(self) -> None:
        if self._adjuster is None:
            self._adjuster = PeriodicTask(
                "rate-limiter-adjust", self.adjustment_interval, self._adjust_tick, clock=self.clock, logger=self.log
            )
        self._adjuster.start()

    async def aclose(self) -> None:
        if self._adjuster is not None:
            await self._adjuster.stop()
        if self._resume_task is not None and not self._resume_task.done():
            self._resume_task.cancel()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def average_response_time(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def get_metrics(self) -> RateLimiterMetrics:
        return RateLimiterMetrics(
            success_count=self._total_success,
            failure_count=self._total_failure,
            rate_limit_count=self._total_rate_limited,
            average_response_time=round(self.average_response_time(), 1),
            current_concurrency=self.current_concurrency,
            target_concurrency=self.target_concurrency,
            in_flight=self._active,
            queued=len(self._waiters),
            backoff_delay=self._backoff,
            last_adjustment_time=self._last_adjustment_time,
        )

    def get_batch_size(self) -> int:
        """Suggested batch size: higher concurrency, smaller batches."""
        if self.current_concurrency >= 30:
            return 10
        if self.current_concurrency >= 20:
            return 20
        if self.current_concurrency >= 10:
            return 50
        return 100
