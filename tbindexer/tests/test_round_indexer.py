import asyncio

import pytest
from web3 import Web3

from tbindexer.sources.timeboost_pipeline.config.settings import AUCTION_CONTRACT
from tbindexer.sources.timeboost_pipeline.evm.utils.errors import (
    BlockResolutionError,
    MissingChainDataError,
    RateLimitedError,
    TransportError,
)
from tbindexer.storage.round_cache import RoundCache
from tbindexer.tests.fakes import FakeChain, FakeClock, addr, build_indexer as build, scenario_timestamp
from tbindexer.utils.types import BoostedTransaction, RoundInfo, RoundState

ROUND = RoundInfo(round=1, start_timestamp=1000, end_timestamp=2000)


class RecordingTracker:
    def __init__(self):
        self.tracked = []

    def is_round_ongoing(self, round_number):
        return any(info.round == round_number for info, _ in self.tracked)

    def track(self, info, last_seen_block):
        self.tracked.append((info, last_seen_block))


def seed_transactions(chain):
    """Three boosted transactions inside blocks 101..200, noise around them."""
    first = chain.add_tx(120, boosted=True)
    chain.add_tx(120, boosted=False)
    second = chain.add_tx(120, boosted=True)
    third = chain.add_tx(150, boosted=True)
    chain.add_tx(50, boosted=True)
    chain.add_tx(250, boosted=True)
    chain.add_tx(160, boosted=None, to=addr(0xDEAD))
    return [first, second, third]


@pytest.mark.asyncio
async def test_indexes_finished_round(chain, clock):
    expected = seed_transactions(chain)
    ranges = []
    indexer, _ = build(chain, clock, on_block_range=lambda *args: ranges.append(args))

    indexed = await indexer.index_round(ROUND)

    assert (indexed.start_block, indexed.end_block) == (101, 200)
    assert [tx.hash for tx in indexed.transactions] == expected
    assert [(tx.block_number, tx.transaction_index) for tx in indexed.transactions] == [(120, 0), (120, 2), (150, 0)]
    assert indexed.transactions[0].from_address == Web3.to_checksum_address(addr(0xA11CE))
    assert indexed.transactions[0].timestamp == scenario_timestamp(120)
    assert ranges == [(1, 101, 200)]

    status = indexer.get_round_status(1)
    assert status.state == RoundState.COMPLETED
    assert status.transaction_count == 3


@pytest.mark.asyncio
async def test_contract_fallback_marks_unflagged_transactions(chain, clock):
    chain.add_tx(130, boosted=None, to=AUCTION_CONTRACT)
    indexer, _ = build(chain, clock)

    indexed = await indexer.index_round(ROUND)

    assert len(indexed.transactions) == 1
    assert indexed.transactions[0].to_address == Web3.to_checksum_address(AUCTION_CONTRACT)


@pytest.mark.asyncio
async def test_cached_round_is_returned_without_network(chain, clock, tmp_path):
    seed_transactions(chain)
    indexer, transport = build(chain, clock, round_cache=RoundCache(tmp_path))

    first = await indexer.index_round(ROUND)
    calls = transport.call_count
    second = await indexer.index_round(ROUND)

    assert second.to_dict() == first.to_dict()
    assert transport.call_count == calls

    # a fresh indexer over the same directory also skips the network
    restarted, fresh_transport = build(chain, clock, round_cache=RoundCache(tmp_path))
    third = await restarted.index_round(ROUND)
    assert third.to_dict() == first.to_dict()
    assert fresh_transport.call_count == 0


@pytest.mark.asyncio
async def test_partial_round_cached_before_restart_is_indexed_again(tmp_path):
    chain = FakeChain.from_function(150, scenario_timestamp)
    early = chain.add_tx(120, boosted=True)
    live, _ = build(chain, FakeClock(start=1500.0), round_cache=RoundCache(tmp_path))
    live.set_ongoing_tracker(RecordingTracker())
    partial = await live.index_round(ROUND)
    assert (partial.end_block, partial.final) == (150, False)

    chain.extend(300, scenario_timestamp)
    late = chain.add_tx(180, boosted=True)
    restarted, transport = build(chain, FakeClock(start=5000.0), round_cache=RoundCache(tmp_path))
    indexed = await restarted.index_round(ROUND)

    assert (indexed.start_block, indexed.end_block, indexed.final) == (101, 200, True)
    assert [tx.hash for tx in indexed.transactions] == [early, late]
    assert transport.call_count > 0
    assert (await restarted.get_cached_round(1)).final


@pytest.mark.asyncio
async def test_partial_round_is_tracked_again_while_still_running(tmp_path):
    chain = FakeChain.from_function(150, scenario_timestamp)
    live, _ = build(chain, FakeClock(start=1500.0), round_cache=RoundCache(tmp_path))
    await live.index_round(ROUND)

    restarted, transport = build(chain, FakeClock(start=1600.0), round_cache=RoundCache(tmp_path))
    tracker = RecordingTracker()
    restarted.set_ongoing_tracker(tracker)
    cached = await restarted.index_round(ROUND)

    assert (cached.end_block, cached.final) == (150, False)
    assert transport.call_count == 0
    [(info, last_seen)] = tracker.tracked
    assert (info.start_block, info.end_block, last_seen) == (101, 150, 150)

    await restarted.index_round(ROUND)
    assert len(tracker.tracked) == 1


@pytest.mark.asyncio
async def test_missing_block_and_receipts_are_fetched_again(chain, clock):
    expected = seed_transactions(chain)
    indexer, transport = build(chain, clock)
    transport.null_blocks[150] = 1
    transport.null_receipts[expected[0]] = 2

    indexed = await indexer.index_round(ROUND)

    assert [tx.hash for tx in indexed.transactions] == expected
    assert indexer.get_round_status(1).state == RoundState.COMPLETED
    assert transport.null_blocks[150] == 0
    assert transport.null_receipts[expected[0]] == 0


@pytest.mark.asyncio
async def test_block_that_stays_missing_fails_the_round(chain, clock):
    seed_transactions(chain)
    indexer, transport = build(chain, clock)
    transport.null_blocks[150] = 100

    with pytest.raises(MissingChainDataError):
        await indexer.index_round(ROUND)

    assert indexer.get_round_status(1).state == RoundState.ERROR
    assert await indexer.get_cached_round(1) is None
    assert transport.null_blocks[150] == 95


@pytest.mark.asyncio
async def test_force_reindexes_cached_round(chain, clock):
    indexer, transport = build(chain, clock)
    await indexer.index_round(ROUND)
    calls = transport.call_count

    await indexer.finalize_round(ROUND)

    assert transport.call_count > calls


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_run(chain, clock):
    seed_transactions(chain)
    indexer, _ = build(chain, clock)

    a, b = await asyncio.gather(indexer.index_round(ROUND), indexer.index_round(ROUND))

    assert a is b
    assert indexer.queue_size == 0
    assert not indexer.is_queued(1)


@pytest.mark.asyncio
async def test_rounds_are_processed_in_order(chain, clock):
    indexer, _ = build(chain, clock)
    later = RoundInfo(round=2, start_timestamp=2000, end_timestamp=2500)
    done = []

    async def run(info):
        await indexer.index_round(info)
        done.append(info.round)

    await asyncio.gather(run(ROUND), run(later))

    assert done == [1, 2]


@pytest.mark.asyncio
async def test_rate_limited_round_is_requeued(chain, clock):
    seed_transactions(chain)
    indexer, transport = build(chain, clock)
    transport.fail_next = [RateLimitedError()]
    states = []

    indexed = await indexer.index_round(ROUND, on_progress=lambda s: states.append(s.state))

    assert len(indexed.transactions) == 3
    assert 5.0 in clock.slept
    assert indexer.rate_limiter.get_metrics().rate_limit_count == 1
    assert states[0] == RoundState.PENDING
    assert states[-1] == RoundState.COMPLETED
    first_indexing = states.index(RoundState.INDEXING)
    assert RoundState.PENDING in states[first_indexing:]


@pytest.mark.asyncio
async def test_failure_marks_round_error(chain, clock):
    indexer, transport = build(chain, clock)
    transport.fail_next = [TransportError("connection reset")]

    with pytest.raises(TransportError):
        await indexer.index_round(ROUND)

    status = indexer.get_round_status(1)
    assert status.state == RoundState.ERROR
    assert "connection reset" in status.error
    assert not indexer.is_queued(1)

    # not retried automatically, but a new request runs again
    indexed = await indexer.index_round(ROUND)
    assert indexed.start_block == 101


@pytest.mark.asyncio
async def test_round_after_chain_head_fails_resolution(chain, clock):
    indexer, _ = build(chain, clock)

    with pytest.raises(BlockResolutionError):
        await indexer.index_round(RoundInfo(round=9, start_timestamp=5000, end_timestamp=6000))

    assert indexer.get_round_status(9).state == RoundState.ERROR


@pytest.mark.asyncio
async def test_round_without_blocks_fails_resolution():
    chain = FakeChain({1: 1000, 2: 1010, 3: 1020})
    indexer, _ = build(chain, FakeClock(start=10_000.0))

    with pytest.raises(BlockResolutionError):
        await indexer.index_round(RoundInfo(round=3, start_timestamp=1002, end_timestamp=1009))


@pytest.mark.asyncio
async def test_ongoing_round_ends_at_head_and_is_tracked():
    chain = FakeChain.from_function(250, scenario_timestamp)
    boosted = chain.add_tx(245, boosted=True)
    indexer, _ = build(chain, FakeClock(start=2495.0))
    tracker = RecordingTracker()
    indexer.set_ongoing_tracker(tracker)

    indexed = await indexer.index_round(RoundInfo(round=40, start_timestamp=2400, end_timestamp=2600))

    assert (indexed.start_block, indexed.end_block) == (241, 250)
    assert [tx.hash for tx in indexed.transactions] == [boosted]
    [(info, last_seen)] = tracker.tracked
    assert (info.start_block, info.end_block, last_seen) == (241, 250, 250)


@pytest.mark.asyncio
async def test_ongoing_round_without_blocks_yet():
    chain = FakeChain.from_function(250, scenario_timestamp)
    indexer, _ = build(chain, FakeClock(start=2495.0))
    tracker = RecordingTracker()
    indexer.set_ongoing_tracker(tracker)

    indexed = await indexer.index_round(RoundInfo(round=41, start_timestamp=2495, end_timestamp=2600))

    assert (indexed.start_block, indexed.end_block) == (251, 250)
    assert indexed.transactions == []
    assert tracker.tracked[0][1] == 250


@pytest.mark.asyncio
async def test_append_transactions_skips_known_hashes(chain, clock):
    seed_transactions(chain)
    indexer, _ = build(chain, clock)
    indexed = await indexer.index_round(ROUND)
    late = BoostedTransaction(
        hash="0x" + "ab" * 32, block_number=110, timestamp=1090,
        from_address=addr(1), to_address=addr(2), value=0, gas_used=21000, effective_gas_price=1,
    )

    added = await indexer.append_transactions(1, [indexed.transactions[0], late], end_block=205)

    assert added == 1
    cached = await indexer.get_cached_round(1)
    assert [tx.block_number for tx in cached.transactions] == [110, 120, 120, 150]
    assert cached.end_block == 205
    assert await indexer.append_transactions(1, [late]) == 0

    with pytest.raises(KeyError):
        await indexer.append_transactions(77, [late])


@pytest.mark.asyncio
async def test_clear_cache_forgets_completed_rounds(chain, clock):
    indexer, _ = build(chain, clock)
    await indexer.index_round(ROUND)

    await indexer.clear_cache()

    assert indexer.get_all_round_statuses() == []
    assert await indexer.get_cached_round(1) is None
