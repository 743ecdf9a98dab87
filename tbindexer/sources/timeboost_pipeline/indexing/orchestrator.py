"""
Decides which rounds get indexed and when.

Three queues of round numbers, all insertion-ordered sets:

* indexing queue: new, failed and stale rounds, drained first;
* gap queue: rounds inside holes of the indexed sequence;
* backfill queue: every other unindexed round.

Background loops (each a `PeriodicTask` on the injected clock, plus the drain
loop) only add to the queues; the drain loop is the only one that starts
indexing work and writes status records.

Repository and round-source calls are synchronous and run in worker threads
through `asyncio.to_thread`, off the event loop.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol

from tbindexer.sources.timeboost_pipeline.indexing.round_indexer import RoundIndexer
from tbindexer.storage.repositories import TimeboostRepository
from tbindexer.utils.clock import Clock, PeriodicTask, SYSTEM_CLOCK
from tbindexer.utils.types import DatabaseStats, Gap, IndexedRound, OrchestratorStatus, RoundInfo

log = logging.getLogger(__name__)


class RoundSource(Protocol):
    def get_latest_round(self) -> Optional[int]: ...

    def get_round(self, round_number: int) -> Optional[RoundInfo]: ...

    def get_rounds_after(self, round_number: Optional[int]) -> List[RoundInfo]: ...


@dataclass
class OrchestratorConfig:
    realtime_interval: float = 30.0
    backfill_interval: float = 60.0
    gap_detection_interval: float = 300.0
    drain_interval: float = 5.0
    error_retry_delay: float = 10.0
    recent_rounds: int = 5
    failed_rounds_limit: int = 10
    drain_batch_size: int = 3
    backfill_batch_size: int = 3
    idle_backfill_batch_size: int = 10
    max_concurrent_indexing: int = 2
    idle_max_concurrent_indexing: int = 5
    idle_threshold: float = 300.0
    stale_indexing_after: float = 30 * 60.0


def find_gaps(round_numbers: Iterable[int]) -> List[Gap]:
    """Closed intervals missing between consecutive indexed round numbers."""
    ordered = sorted(set(round_numbers))
    return [Gap(a + 1, b - 1) for a, b in zip(ordered, ordered[1:]) if b - a > 1]


class DatabaseIndexingOrchestrator:
    def __init__(
        self,
        round_indexer: RoundIndexer,
        round_source: RoundSource,
        repository: TimeboostRepository,
        config: Optional[OrchestratorConfig] = None,
        ongoing=None,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.round_indexer = round_indexer
        self.round_source = round_source
        self.repository = repository
        self.config = config or OrchestratorConfig()
        self.ongoing = ongoing
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log

        self._indexing_queue: Dict[int, None] = {}
        self._gap_queue: Dict[int, None] = {}
        self._backfill_queue: Dict[int, None] = {}
        self._in_flight: Dict[int, asyncio.Task] = {}

        self._running = False
        self._last_seen_round: Optional[int] = None
        self._oldest_queued_round: Optional[int] = None
        self._last_completion = self.clock.time()
        self._max_concurrent = self.config.max_concurrent_indexing
        self._tickers: List[PeriodicTask] = []
        self._drain_task: Optional[asyncio.Task] = None

        if ongoing is not None:
            ongoing.on_finalized = self.record_result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            self.log.warning("Orchestrator already running")
            return
        self._running = True
        self.log.info("🚀 Starting round indexing orchestrator")

        try:
            await self.initialize_from_database()
        except Exception:
            self.log.exception("Initialising from the database failed; continuing with empty queues")

        cfg = self.config
        self._tickers = [
            PeriodicTask("realtime", cfg.realtime_interval, self.check_for_new_rounds, self.clock, self.log),
            PeriodicTask("backfill", cfg.backfill_interval, self.backfill_older_rounds, self.clock, self.log),
            PeriodicTask("gap-detection", cfg.gap_detection_interval, self._detect_gaps_tick, self.clock, self.log,
                         run_immediately=True),
        ]
        for ticker in self._tickers:
            ticker.start()
        self._drain_task = asyncio.create_task(self._drain_loop(), name="orchestrator-drain")

    async def stop(self, wait: bool = False) -> None:
        """Stop every loop. Rounds already handed to the indexer keep running; `wait=True` waits for them."""
        self._running = False
        for ticker in self._tickers:
            await ticker.stop()
        self._tickers = []

        drain, self._drain_task = self._drain_task, None
        if drain is not None:
            drain.cancel()
            try:
                await drain
            except asyncio.CancelledError:
                pass

        if wait and self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)
        self.log.info("Orchestrator stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Tick bodies
    # ------------------------------------------------------------------

    async def initialize_from_database(self) -> None:
        cfg = self.config
        stats = await asyncio.to_thread(self.repository.get_stats)
        self.log.info(
            f"Database holds {stats.total_rounds} rounds ({stats.indexed_rounds} indexed), "
            f"{stats.total_boosted_transactions} boosted transactions"
        )

        known = await asyncio.to_thread(self.round_source.get_rounds_after, None)
        await asyncio.to_thread(self.repository.rounds.create_many, known, now=self.clock.time())
        self._last_seen_round = await asyncio.to_thread(self.round_source.get_latest_round)

        failed = await asyncio.to_thread(self.repository.statuses.find_failed)
        unindexed = await asyncio.to_thread(self.repository.rounds.find_unindexed, newest_first=True)
        for r in failed[:cfg.failed_rounds_limit]:
            self._enqueue(r)

        for i, r in enumerate(unindexed):
            if r in self._indexing_queue:
                continue
            if i < cfg.recent_rounds:
                self._enqueue(r)
            else:
                self._backfill_queue[r] = None

        self.log.info(
            f"Initialised: {len(self._indexing_queue)} rounds to index, "
            f"{len(self._backfill_queue)} to backfill (latest round {self._last_seen_round})"
        )

    async def check_for_new_rounds(self) -> List[int]:
        latest = await asyncio.to_thread(self.round_source.get_latest_round)
        if latest is None:
            return []
        if self._last_seen_round is not None and latest <= self._last_seen_round:
            return []

        new_rounds = await asyncio.to_thread(self.round_source.get_rounds_after, self._last_seen_round)
        await asyncio.to_thread(self.repository.rounds.create_many, new_rounds, now=self.clock.time())
        for info in new_rounds:
            self._enqueue(info.round)
        self._last_seen_round = latest

        if new_rounds:
            self.log.info(f"🆕 {len(new_rounds)} new rounds queued (latest {latest})")
        return [info.round for info in new_rounds]

    def is_idle(self) -> bool:
        return self.clock.time() - self._last_completion >= self.config.idle_threshold

    async def backfill_older_rounds(self) -> List[int]:
        cfg = self.config
        idle = self.is_idle()
        if idle:
            batch, self._max_concurrent = cfg.idle_backfill_batch_size, cfg.idle_max_concurrent_indexing
        else:
            batch, self._max_concurrent = cfg.backfill_batch_size, cfg.max_concurrent_indexing
            if len(self._in_flight) >= self._max_concurrent:
                self.log.debug(f"Skipping backfill, {len(self._in_flight)} rounds in flight")
                return []

        moved: List[int] = []
        for queue in (self._gap_queue, self._backfill_queue):
            while queue and len(moved) < batch:
                r = next(iter(queue))
                del queue[r]
                if r in self._in_flight or r in self._indexing_queue:
                    continue
                self._enqueue(r)
                moved.append(r)

        if moved:
            self.log.info(f"Backfill: {len(moved)} rounds moved to the indexing queue{' (idle)' if idle else ''}")
        return moved

    async def detect_gaps(self) -> List[Gap]:
        gaps = find_gaps(await asyncio.to_thread(self.repository.rounds.find_indexed_round_numbers))
        for gap in gaps:
            for r in range(gap.start, gap.end + 1):
                if r in self._in_flight or r in self._indexing_queue:
                    continue
                self._backfill_queue.pop(r, None)
                self._gap_queue[r] = None
        if gaps:
            self.log.info(f"Found {len(gaps)} gaps ({len(self._gap_queue)} rounds queued)")

        cutoff = self.clock.time() - self.config.stale_indexing_after
        for r in await asyncio.to_thread(self.repository.rounds.find_stale_indexing, cutoff):
            if r not in self._in_flight:
                self.log.warning(f"Round {r} stuck in indexing since before {cutoff:.0f}; requeueing")
                self._enqueue(r)
        return gaps

    async def _detect_gaps_tick(self) -> None:
        await self.detect_gaps()

    async def drain_once(self) -> List[int]:
        """Start indexing for up to one batch of queued rounds; returns the rounds started."""
        slots = self._max_concurrent - len(self._in_flight)
        if slots <= 0 or not self._indexing_queue:
            return []

        started: List[int] = []
        for r in list(self._indexing_queue)[:self.config.drain_batch_size]:
            if len(started) >= slots:
                break
            del self._indexing_queue[r]
            if r in self._in_flight or await asyncio.to_thread(self.repository.rounds.is_indexed, r):
                continue

            info = await asyncio.to_thread(self._lookup_round, r)
            if info is None:
                self.log.warning(f"Round {r} is unknown to both the database and the event source; skipped")
                continue
            if r in self._in_flight:
                continue

            await asyncio.to_thread(self._mark_started, info, self.clock.time())
            self.log.info(f"Starting to index round {r}")

            task = asyncio.create_task(self._index_and_record(info), name=f"index-round-{r}")
            self._in_flight[r] = task
            task.add_done_callback(lambda _t, r=r: self._in_flight.pop(r, None))
            started.append(r)
        return started

    def _lookup_round(self, round_number: int) -> Optional[RoundInfo]:
        return self.repository.rounds.find_by_number(round_number) or self.round_source.get_round(round_number)

    def _mark_started(self, info: RoundInfo, now: float) -> None:
        self.repository.rounds.create(info, now=now)
        self.repository.statuses.mark_started(info.round, now=now)

    async def _drain_loop(self) -> None:
        while self._running:
            try:
                await self.drain_once()
                delay = self.config.drain_interval
            except Exception:
                self.log.exception("Error processing queues")
                delay = self.config.error_retry_delay
            await self.clock.sleep(delay)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _index_and_record(self, info: RoundInfo) -> None:
        r = info.round
        try:
            indexed = await self.round_indexer.index_round(info)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.error(f"❌ Indexing round {r} failed: {exc}")
            try:
                await asyncio.to_thread(
                    self.repository.statuses.mark_failed, r, str(exc) or type(exc).__name__, now=self.clock.time()
                )
            except Exception:
                self.log.exception(f"Could not record failure of round {r}")
            return

        if not indexed.final or (self.ongoing is not None and self.ongoing.is_round_ongoing(r)):
            self.log.info(f"Round {r} still running; it is stored once finalized")
            return
        await self.record_result(indexed)

    async def record_result(self, indexed: IndexedRound) -> None:
        try:
            await asyncio.to_thread(self._store, indexed, self.clock.time())
        except Exception:
            self.log.exception(f"Storing round {indexed.round} failed")
            return
        self._last_completion = self.clock.time()

    def _store(self, indexed: IndexedRound, now: float) -> None:
        self.repository.record_indexed_round(indexed)
        self.repository.statuses.mark_completed(indexed.round, len(indexed.transactions), now=now)

    # ------------------------------------------------------------------
    # Queues and reporting
    # ------------------------------------------------------------------

    def _enqueue(self, round_number: int) -> None:
        self._backfill_queue.pop(round_number, None)
        self._gap_queue.pop(round_number, None)
        self._indexing_queue[round_number] = None
        if self._oldest_queued_round is None or round_number < self._oldest_queued_round:
            self._oldest_queued_round = round_number

    async def wait_for_in_flight(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def get_status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            is_running=self._running,
            last_seen_round=self._last_seen_round,
            oldest_queued_round=self._oldest_queued_round,
            indexing_queue_size=len(self._indexing_queue),
            backfill_queue_size=len(self._backfill_queue),
            gap_queue_size=len(self._gap_queue),
            active_indexing=len(self._in_flight),
            idle=self.is_idle(),
        )

    async def get_database_stats(self) -> DatabaseStats:
        return await asyncio.to_thread(self.repository.get_stats)
