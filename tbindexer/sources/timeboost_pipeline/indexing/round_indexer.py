"""
Per-round indexing state machine.

`index_round` returns a cached result straight away when it is final, or when
the round is still running and its partial result is being tracked. Otherwise
the round joins a FIFO queue drained by a single worker task, and every caller
waiting on that round gets the same result (or the same exception).

Worker steps for one round:

1. resolve the block range (first block at/after the start timestamp, last
   block at/before the end timestamp, or the chain head while the round is
   still running);
2. scan the range for boosted transactions;
3. save the `IndexedRound`, mark it completed, report the block range.

A rate-limited round goes back to the front of the queue and the worker pauses.
Any other failure marks the round `error` and is not retried here.
"""
import asyncio
import dataclasses
import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Set, Union

from tbindexer.sources.timeboost_pipeline.evm.utils.blocks import BlockTimestampResolver
from tbindexer.sources.timeboost_pipeline.evm.utils.errors import BlockResolutionError, RateLimitedError
from tbindexer.sources.timeboost_pipeline.evm.utils.rate_limiter import AdaptiveRateLimiter
from tbindexer.sources.timeboost_pipeline.evm.utils.transactions import BoostedTransactionScanner
from tbindexer.utils.clock import Clock, SYSTEM_CLOCK
from tbindexer.utils.types import (
    BoostedTransaction,
    IndexedRound,
    IndexerProgress,
    RoundIndexStatus,
    RoundInfo,
    RoundState,
)

log = logging.getLogger(__name__)

StatusCallback = Callable[[RoundIndexStatus], None]
BlockRangeCallback = Callable[[int, int, int], Union[None, Awaitable[None]]]


class OngoingTracker(Protocol):
    def track(self, info: RoundInfo, last_seen_block: int) -> None: ...

    def is_round_ongoing(self, round_number: int) -> bool: ...


class RoundIndexer:
    def __init__(
        self,
        resolver: BlockTimestampResolver,
        scanner: BoostedTransactionScanner,
        rate_limiter: AdaptiveRateLimiter,
        round_cache,
        on_block_range: Optional[BlockRangeCallback] = None,
        base_delay: float = 1.0,
        min_delay: float = 0.1,
        rate_limited_delay: float = 5.0,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.resolver = resolver
        self.scanner = scanner
        self.rate_limiter = rate_limiter
        self.round_cache = round_cache
        self.on_block_range = on_block_range
        self.base_delay = base_delay
        self.min_delay = min_delay
        self.rate_limited_delay = rate_limited_delay
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log

        self._queue: Deque[RoundInfo] = deque()
        self._pending: Set[int] = set()            # queued or in flight
        self._waiters: Dict[int, List[asyncio.Future]] = {}
        self._listeners: Dict[int, List[StatusCallback]] = {}
        self._statuses: Dict[int, RoundIndexStatus] = {}
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[int] = None
        self._tracker: Optional[OngoingTracker] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_ongoing_tracker(self, tracker: Optional[OngoingTracker]) -> None:
        self._tracker = tracker

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def current_round(self) -> Optional[int]:
        return self._current

    def is_queued(self, round_number: int) -> bool:
        return round_number in self._pending

    async def index_round(
        self,
        info: RoundInfo,
        on_progress: Optional[StatusCallback] = None,
        force: bool = False,
    ) -> IndexedRound:
        r = info.round
        if not force and r not in self._pending:
            cached = await self.round_cache.load(r)
            if cached is not None and (cached.final or self._resume_tracking(info, cached)):
                status = self._set_status(r, RoundState.COMPLETED, len(cached.transactions), last_indexed=cached.indexed_at)
                if on_progress is not None:
                    on_progress(status)
                return cached

        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(r, []).append(fut)
        if on_progress is not None:
            self._listeners.setdefault(r, []).append(on_progress)

        if r not in self._pending:
            self._pending.add(r)
            self._queue.append(info)
            self._set_status(r, RoundState.PENDING)
            self.log.info(f"Round {r} queued ({len(self._queue)} waiting)")
        elif on_progress is not None and r in self._statuses:
            on_progress(self._statuses[r])

        self._ensure_worker()
        return await fut

    def _resume_tracking(self, info: RoundInfo, cached: IndexedRound) -> bool:
        """
        A partial cached round is only usable while the round is still
        running and a tracker keeps it up to date; otherwise it is re-indexed.
        """
        if not info.is_ongoing(self.clock.time()) or self._tracker is None:
            self.log.info(f"Cached round {info.round} is partial; indexing it again")
            return False
        if not self._tracker.is_round_ongoing(info.round):
            resumed = dataclasses.replace(info, start_block=cached.start_block, end_block=cached.end_block)
            self._tracker.track(resumed, cached.end_block)
        return True

    async def finalize_round(self, info: RoundInfo) -> IndexedRound:
        """Re-index a round over its final block range, replacing any cached result."""
        return await self.index_round(info, force=True)

    async def get_cached_round(self, round_number: int) -> Optional[IndexedRound]:
        return await self.round_cache.load(round_number)

    async def append_transactions(
        self,
        round_number: int,
        transactions: Iterable[BoostedTransaction],
        end_block: Optional[int] = None,
    ) -> int:
        """Merge newly found transactions into a cached round. Returns how many were new."""
        cached = await self.round_cache.load(round_number)
        if cached is None:
            raise KeyError(f"Round {round_number} is not cached")

        seen = {tx.hash for tx in cached.transactions}
        added = [tx for tx in transactions if tx.hash not in seen]
        if not added and (end_block is None or end_block == cached.end_block):
            return 0

        merged = sorted(cached.transactions + added, key=lambda tx: (tx.block_number, tx.transaction_index))
        updated = dataclasses.replace(
            cached,
            transactions=merged,
            end_block=end_block if end_block is not None else cached.end_block,
            indexed_at=self.clock.time(),
        )
        await self.round_cache.save(updated)
        self._set_status(round_number, RoundState.COMPLETED, len(merged), last_indexed=updated.indexed_at)
        return len(added)

    def get_round_status(self, round_number: int) -> Optional[RoundIndexStatus]:
        return self._statuses.get(round_number)

    def get_all_round_statuses(self) -> List[RoundIndexStatus]:
        return [self._statuses[r] for r in sorted(self._statuses)]

    async def clear_cache(self) -> None:
        await self.round_cache.clear()
        for r in [r for r, s in self._statuses.items() if s.state == RoundState.COMPLETED]:
            del self._statuses[r]

    async def aclose(self) -> None:
        """Stop the worker; callers still waiting on a round are cancelled."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        for futures in self._waiters.values():
            for fut in futures:
                fut.cancel()
        self._waiters.clear()
        self._listeners.clear()
        self._pending.clear()
        self._queue.clear()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="round-indexer")

    async def _drain(self) -> None:
        while self._queue:
            info = self._queue.popleft()
            self._current = info.round
            try:
                indexed = await self._index(info)
            except RateLimitedError:
                self._queue.appendleft(info)
                self._set_status(info.round, RoundState.PENDING)
                pause = max(self.rate_limiter.backoff_delay, self.rate_limited_delay)
                self.log.warning(f"⏳ Round {info.round} rate limited, requeued; pausing {pause:.1f}s")
                self._current = None
                await self.clock.sleep(pause)
                continue
            except Exception as exc:
                self.log.error(f"❌ Round {info.round} failed: {exc}")
                self._set_status(info.round, RoundState.ERROR, error=str(exc))
                self._settle(info.round, exc=exc)
            else:
                self._settle(info.round, result=indexed)
            self._current = None

            if self._queue:
                await self.clock.sleep(self._inter_round_delay())

    def _inter_round_delay(self) -> float:
        return max(self.min_delay, self.base_delay / max(1, self.rate_limiter.concurrency))

    async def _index(self, info: RoundInfo) -> IndexedRound:
        r = info.round
        self._set_status(r, RoundState.INDEXING)

        head, _ = await self.resolver.get_head()
        ongoing = info.is_ongoing(self.clock.time())

        start_block = await self.resolver.find_block_by_timestamp(
            info.start_timestamp, "after", hint_key=f"round:{r}:start", head=head
        )
        if ongoing:
            if start_block is None:
                # no block inside the round yet
                start_block = head + 1
            end_block = head
        else:
            if start_block is None:
                raise BlockResolutionError(f"Round {r} starts after the chain head")
            end_block = await self.resolver.find_block_by_timestamp(
                info.end_timestamp, "before", hint_key=f"round:{r}:end", head=head
            )
            if end_block is None or end_block < start_block:
                raise BlockResolutionError(
                    f"Could not determine block range for round {r}: start {start_block}, end {end_block}"
                )

        self.log.info(f"Round {r}: blocks {start_block}-{end_block}{' (ongoing)' if ongoing else ''}")

        transactions: List[BoostedTransaction] = []
        if end_block >= start_block:
            transactions = await self.scanner.get_boosted_transactions(
                start_block, end_block, on_progress=lambda p: self._on_scan_progress(r, p)
            )

        indexed = IndexedRound(
            round=r,
            start_timestamp=info.start_timestamp,
            end_timestamp=info.end_timestamp,
            start_block=start_block,
            end_block=end_block,
            transactions=transactions,
            indexed_at=self.clock.time(),
            final=not ongoing,
        )
        await self.round_cache.save(indexed)
        self._set_status(r, RoundState.COMPLETED, len(transactions), last_indexed=indexed.indexed_at)

        if self.on_block_range is not None:
            result = self.on_block_range(r, start_block, end_block)
            if inspect.isawaitable(result):
                await result

        if ongoing and self._tracker is not None:
            self._tracker.track(dataclasses.replace(info, start_block=start_block, end_block=end_block), end_block)

        self.log.info(f"✅ Round {r} indexed: {len(transactions)} boosted transactions")
        return indexed

    def _on_scan_progress(self, round_number: int, progress: IndexerProgress) -> None:
        self._set_status(round_number, RoundState.INDEXING, progress.found_transactions)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _set_status(
        self,
        round_number: int,
        state: RoundState,
        transaction_count: int = 0,
        last_indexed: Optional[float] = None,
        error: Optional[str] = None,
    ) -> RoundIndexStatus:
        status = RoundIndexStatus(round_number, state, transaction_count, last_indexed, error)
        self._statuses[round_number] = status
        for listener in self._listeners.get(round_number, ()):
            try:
                listener(status)
            except Exception:
                self.log.exception(f"Progress callback for round {round_number} failed")
        return status

    def _settle(self, round_number: int, result: Optional[IndexedRound] = None, exc: Optional[BaseException] = None) -> None:
        self._pending.discard(round_number)
        self._listeners.pop(round_number, None)
        for fut in self._waiters.pop(round_number, []):
            if fut.done():
                continue
            if exc is not None:
                fut.set_exception(exc)
            else:
                fut.set_result(result)
