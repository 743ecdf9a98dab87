import asyncio

import pytest

from tbindexer.sources.timeboost_pipeline.evm.utils.errors import TransportError
from tbindexer.sources.timeboost_pipeline.indexing.ongoing_round_indexer import OngoingRoundIndexer
from tbindexer.tests.fakes import FakeChain, FakeClock, build_indexer, scenario_timestamp
from tbindexer.utils.types import RoundInfo

LIVE = RoundInfo(round=40, start_timestamp=2400, end_timestamp=2600)


def setup_live_round():
    chain = FakeChain.from_function(250, scenario_timestamp)
    clock = FakeClock(start=2495.0)
    indexer, transport = build_indexer(chain, clock)
    finalized = []
    ongoing = OngoingRoundIndexer(indexer, indexer.resolver, indexer.scanner, clock=clock, on_finalized=finalized.append)
    return chain, clock, indexer, transport, ongoing, finalized


@pytest.mark.asyncio
async def test_indexing_a_live_round_starts_tracking_it():
    chain, _, indexer, _, ongoing, _ = setup_live_round()

    await indexer.index_round(LIVE)

    assert ongoing.is_round_ongoing(40)
    [info] = ongoing.get_ongoing_rounds()
    assert (info.start_block, info.end_block) == (241, 250)


@pytest.mark.asyncio
async def test_update_scans_only_new_blocks():
    chain, _, indexer, transport, ongoing, _ = setup_live_round()
    early = chain.add_tx(245)
    await indexer.index_round(LIVE)

    chain.extend(260, scenario_timestamp)
    late = chain.add_tx(255)
    transport.requests.clear()
    transport.batches.clear()

    await ongoing.update_ongoing_rounds()

    cached = await indexer.get_cached_round(40)
    assert [tx.hash for tx in cached.transactions] == [early, late]
    assert cached.end_block == 260
    fetched = {
        int(item["params"][0], 16)
        for batch in transport.batches
        for item in batch
        if item["method"] == "eth_getBlockByNumber" and item["params"][1]
    }
    assert fetched == set(range(251, 261))


@pytest.mark.asyncio
async def test_round_is_finalized_once_chain_passes_its_end():
    chain, clock, indexer, _, ongoing, finalized = setup_live_round()
    inside = chain.add_tx(245)
    await indexer.index_round(LIVE)

    chain.extend(280, scenario_timestamp)
    chain.add_tx(270)           # after the round's end
    clock.now = 2700.0

    await ongoing.update_ongoing_rounds()

    [final] = finalized
    assert (final.start_block, final.end_block) == (241, 260)
    assert [tx.hash for tx in final.transactions] == [inside]
    assert not ongoing.is_round_ongoing(40)


@pytest.mark.asyncio
async def test_waits_for_chain_head_to_pass_round_end():
    chain, clock, indexer, _, ongoing, finalized = setup_live_round()
    await indexer.index_round(LIVE)

    chain.extend(260, scenario_timestamp)       # head timestamp 2591, still inside the round
    clock.now = 2700.0

    await ongoing.update_ongoing_rounds()

    assert finalized == []
    assert ongoing.is_round_ongoing(40)
    assert (await indexer.get_cached_round(40)).end_block == 260


@pytest.mark.asyncio
async def test_failed_update_keeps_round_tracked(monkeypatch):
    chain, _, indexer, _, ongoing, _ = setup_live_round()
    await indexer.index_round(LIVE)
    chain.extend(255, scenario_timestamp)

    scan = indexer.scanner.get_boosted_transactions
    failures = [TransportError("connection reset")]

    async def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await scan(*args, **kwargs)

    monkeypatch.setattr(indexer.scanner, "get_boosted_transactions", flaky)

    await ongoing.update_ongoing_rounds()
    assert ongoing.is_round_ongoing(40)
    assert (await indexer.get_cached_round(40)).end_block == 250

    await ongoing.update_ongoing_rounds()
    assert (await indexer.get_cached_round(40)).end_block == 255


def test_ended_rounds_are_not_tracked():
    chain = FakeChain.from_function(10, scenario_timestamp)
    clock = FakeClock(start=5000.0)
    indexer, _ = build_indexer(chain, clock)
    ongoing = OngoingRoundIndexer(indexer, indexer.resolver, indexer.scanner, clock=clock)

    ongoing.track(RoundInfo(round=1, start_timestamp=1000, end_timestamp=2000), 10)

    assert ongoing.get_ongoing_rounds() == []


@pytest.mark.asyncio
async def test_periodic_updates_run_until_stopped():
    chain, _, indexer, _, ongoing, _ = setup_live_round()
    await indexer.index_round(LIVE)
    chain.extend(252, scenario_timestamp)
    chain.add_tx(252)

    ongoing.start()
    for _ in range(200):
        if (await indexer.get_cached_round(40)).end_block == 252:
            break
        await asyncio.sleep(0)
    await ongoing.stop()

    assert (await indexer.get_cached_round(40)).end_block == 252
