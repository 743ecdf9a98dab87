import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Union

from tbindexer.sources.timeboost_pipeline.evm.utils.blocks import BlockTimestampResolver
from tbindexer.sources.timeboost_pipeline.evm.utils.errors import RateLimitedError
from tbindexer.sources.timeboost_pipeline.evm.utils.transactions import BoostedTransactionScanner
from tbindexer.sources.timeboost_pipeline.indexing.round_indexer import RoundIndexer
from tbindexer.utils.clock import Clock, PeriodicTask, SYSTEM_CLOCK
from tbindexer.utils.types import IndexedRound, RoundInfo

log = logging.getLogger(__name__)


@dataclass(slots=True)
class OngoingRound:
    info: RoundInfo
    start_block: int
    last_seen_block: int


class OngoingRoundIndexer:
    """
    Keeps rounds that were indexed before they ended up to date.

    Each tick scans only the blocks produced since the last tick and appends
    what it finds to the cached round. Once both the wall clock and the chain
    head are past the round's end, the round is re-indexed over its exact
    final range and dropped from tracking.
    """

    def __init__(
        self,
        round_indexer: RoundIndexer,
        resolver: BlockTimestampResolver,
        scanner: BoostedTransactionScanner,
        update_interval: float = 5.0,
        on_finalized: Optional[Callable[[IndexedRound], Union[None, Awaitable[None]]]] = None,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.round_indexer = round_indexer
        self.resolver = resolver
        self.scanner = scanner
        self.update_interval = update_interval
        self.on_finalized = on_finalized
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log
        self._rounds: Dict[int, OngoingRound] = {}
        self._ticker: Optional[PeriodicTask] = None

        round_indexer.set_ongoing_tracker(self)

    def track(self, info: RoundInfo, last_seen_block: int) -> None:
        if self.clock.time() > info.end_timestamp:
            return
        start_block = info.start_block if info.start_block is not None else last_seen_block + 1
        self._rounds[info.round] = OngoingRound(info, start_block, last_seen_block)
        self.log.info(f"Tracking ongoing round {info.round} until {info.end_timestamp}")

    def untrack(self, round_number: int) -> None:
        self._rounds.pop(round_number, None)

    def get_ongoing_rounds(self) -> List[RoundInfo]:
        return [self._rounds[r].info for r in sorted(self._rounds)]

    def is_round_ongoing(self, round_number: int) -> bool:
        return round_number in self._rounds

    async def update_ongoing_rounds(self) -> None:
        if not self._rounds:
            return

        head, head_ts = await self.resolver.get_head()
        now = self.clock.time()

        for r, entry in list(self._rounds.items()):
            end_ts = entry.info.end_timestamp
            try:
                if now > end_ts and head_ts > end_ts:
                    await self._finalize(entry)
                    self._rounds.pop(r, None)
                elif head > entry.last_seen_block:
                    await self._catch_up(entry, head)
            except RateLimitedError:
                self.log.warning(f"⏳ Rate limited while updating round {r}; retrying next tick")
            except Exception:
                self.log.exception(f"Updating ongoing round {r} failed; still tracked")

    async def _catch_up(self, entry: OngoingRound, head: int) -> None:
        r = entry.info.round
        txs = await self.scanner.get_boosted_transactions(entry.last_seen_block + 1, head)
        added = await self.round_indexer.append_transactions(r, txs, end_block=head)
        entry.last_seen_block = head
        if added:
            self.log.info(f"Round {r}: +{added} boosted transactions (blocks up to {head})")

    async def _finalize(self, entry: OngoingRound) -> None:
        r = entry.info.round
        self.log.info(f"Round {r} ended; re-indexing its final block range")
        indexed = await self.round_indexer.finalize_round(entry.info)
        self.log.info(
            f"🏁 Round {r} finalized: blocks {indexed.start_block}-{indexed.end_block}, "
            f"{len(indexed.transactions)} boosted transactions"
        )
        if self.on_finalized is not None:
            result = self.on_finalized(indexed)
            if inspect.isawaitable(result):
                await result

    def start(self) -> None:
        if self._ticker is None:
            self._ticker = PeriodicTask(
                "ongoing-rounds", self.update_interval, self.update_ongoing_rounds,
                clock=self.clock, logger=self.log, run_immediately=True,
            )
        self._ticker.start()

    async def stop(self) -> None:
        if self._ticker is not None:
            await self._ticker.stop()
