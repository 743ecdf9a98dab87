import bisect
import logging
from typing import Dict, List, Literal, NamedTuple, Optional, Tuple

from tbindexer.sources.timeboost_pipeline.evm.utils.errors import BlockResolutionError
from tbindexer.utils.clock import Clock, SYSTEM_CLOCK

log = logging.getLogger(__name__)

Position = Literal["before", "after"]


class CacheEntry(NamedTuple):
    block_number: int
    timestamp: int


class BlockTimestampCache:
    """
    Bounded block -> timestamp map with a reverse timestamp index.

    When full, inserting a new block evicts the smallest cached block number.
    Timestamps are non-decreasing in block number on a real chain, so the
    sorted block list doubles as a sorted timestamp list for `closest_blocks`.
    """

    def __init__(self, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._timestamps: Dict[int, int] = {}
        self._blocks: List[int] = []                      # sorted block numbers
        self._by_timestamp: Dict[int, List[int]] = {}     # ts -> sorted block numbers
        self._sorted_ts: List[int] = []                   # sorted distinct timestamps
        self._hints: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._timestamps)

    def __contains__(self, block_number: int) -> bool:
        return block_number in self._timestamps

    def get(self, block_number: int) -> Optional[int]:
        return self._timestamps.get(block_number)

    def put(self, block_number: int, timestamp: int) -> None:
        old = self._timestamps.get(block_number)
        if old == timestamp:
            return
        if old is not None:
            self._unindex(block_number, old)
        elif len(self._timestamps) >= self.max_size:
            self._evict_smallest()
            bisect.insort(self._blocks, block_number)
        else:
            bisect.insort(self._blocks, block_number)

        self._timestamps[block_number] = timestamp
        blocks = self._by_timestamp.get(timestamp)
        if blocks is None:
            self._by_timestamp[timestamp] = [block_number]
            bisect.insort(self._sorted_ts, timestamp)
        else:
            bisect.insort(blocks, block_number)

    def _evict_smallest(self) -> None:
        smallest = self._blocks.pop(0)
        ts = self._timestamps.pop(smallest)
        self._unindex(smallest, ts)

    def _unindex(self, block_number: int, timestamp: int) -> None:
        blocks = self._by_timestamp[timestamp]
        blocks.remove(block_number)
        if not blocks:
            del self._by_timestamp[timestamp]
            idx = bisect.bisect_left(self._sorted_ts, timestamp)
            del self._sorted_ts[idx]

    def closest_blocks(self, timestamp: int) -> Tuple[Optional[CacheEntry], Optional[CacheEntry]]:
        """Nearest cached block at or before `timestamp`, and nearest strictly after it."""
        idx = bisect.bisect_right(self._sorted_ts, timestamp)
        before = after = None
        if idx > 0:
            ts = self._sorted_ts[idx - 1]
            before = CacheEntry(self._by_timestamp[ts][-1], ts)
        if idx < len(self._sorted_ts):
            ts = self._sorted_ts[idx]
            after = CacheEntry(self._by_timestamp[ts][0], ts)
        return before, after

    def set_sequential_hint(self, key: str, block_number: int) -> None:
        self._hints[key] = block_number

    def sequential_hint(self, key: str) -> Optional[int]:
        return self._hints.get(key)

    def clear(self) -> None:
        self._timestamps.clear()
        self._blocks.clear()
        self._by_timestamp.clear()
        self._sorted_ts.clear()
        self._hints.clear()


class BlockTimestampResolver:
    """Maps wall-clock timestamps onto block numbers by binary search."""

    def __init__(
        self,
        provider,
        cache: Optional[BlockTimestampCache] = None,
        max_probe_retries: int = 5,
        probe_retry_delay: float = 0.5,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else BlockTimestampCache()
        self.max_probe_retries = max_probe_retries
        self.probe_retry_delay = probe_retry_delay
        self.clock = clock or SYSTEM_CLOCK
        self.log = logger or log

    async def get_head(self) -> Tuple[int, int]:
        """(number, timestamp) of the latest block."""
        block = await self.provider.get_block("latest")
        if block is None:
            raise BlockResolutionError("Chain head unavailable")
        number, ts = int(block["number"], 16), int(block["timestamp"], 16)
        self.cache.put(number, ts)
        return number, ts

    async def get_block_timestamp(self, block_number: int) -> int:
        cached = self.cache.get(block_number)
        if cached is not None:
            return cached

        for attempt in range(1, self.max_probe_retries + 1):
            block = await self.provider.get_block(block_number)
            if block is not None:
                ts = int(block["timestamp"], 16)
                self.cache.put(block_number, ts)
                return ts
            self.log.debug(f"Block {block_number} unavailable (attempt {attempt}/{self.max_probe_retries})")
            if attempt < self.max_probe_retries:
                await self.clock.sleep(self.probe_retry_delay)

        raise BlockResolutionError(f"Block {block_number} unavailable after {self.max_probe_retries} attempts")

    async def find_block_by_timestamp(
        self,
        target_ts: int,
        position: Position,
        hint_key: Optional[str] = None,
        head: Optional[int] = None,
    ) -> Optional[int]:
        """
        "after": smallest block with timestamp >= target, None above the head.
        "before": largest block with timestamp <= target, None below block 1.
        """
        if position not in ("before", "after"):
            raise ValueError(f"position must be 'before' or 'after', got {position!r}")
        if head is None:
            head, _ = await self.get_head()

        # blocks share timestamps: an exact hit keeps narrowing toward the
        # first (after) or last (before) block carrying it
        low, high = 1, head
        result: Optional[int] = None
        if position == "after":
            below, candidate = self.cache.closest_blocks(target_ts - 1)
            if below is not None:
                low = max(low, below.block_number + 1)
            if candidate is not None and candidate.block_number <= head:
                result, high = candidate.block_number, candidate.block_number - 1
        else:
            candidate, above = self.cache.closest_blocks(target_ts)
            if candidate is not None and candidate.block_number <= head:
                result, low = candidate.block_number, candidate.block_number + 1
            if above is not None:
                high = min(high, above.block_number - 1)

        while low <= high:
            mid = (low + high) // 2
            mid_ts = await self.get_block_timestamp(mid)
            if position == "after":
                if mid_ts >= target_ts:
                    result, high = mid, mid - 1
                else:
                    low = mid + 1
            elif mid_ts <= target_ts:
                result, low = mid, mid + 1
            else:
                high = mid - 1

        if result is not None:
            self._remember(hint_key, result)
        return result

    def _remember(self, hint_key: Optional[str], block_number: int) -> None:
        if hint_key is not None:
            self.cache.set_sequential_hint(hint_key, block_number)

    async def resolve_round_range(self, round_number: int, start_ts: int, end_ts: int, head: Optional[int] = None) -> Tuple[int, int]:
        """Closed block range covering [start_ts, end_ts]."""
        if head is None:
            head, _ = await self.get_head()
        start_block = await self.find_block_by_timestamp(start_ts, "after", hint_key=f"round:{round_number}:start", head=head)
        end_block = await self.find_block_by_timestamp(end_ts, "before", hint_key=f"round:{round_number}:end", head=head)
        if start_block is None or end_block is None:
            raise BlockResolutionError(
                f"Could not determine block range for round {round_number} ({start_ts}..{end_ts})"
            )
        if end_block < start_block:
            raise BlockResolutionError(
                f"Empty block range for round {round_number}: start {start_block} > end {end_block}"
            )
        return start_block, end_block
