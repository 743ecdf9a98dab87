import asyncio
import json
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from tbindexer.main import build_engine
from tbindexer.sources.timeboost_pipeline.auction.events import AuctionResolved, RoundRegistry
from tbindexer.sources.timeboost_pipeline.ingestion import cli_ingest
from tbindexer.storage.repositories import TimeboostRepository
from tbindexer.storage.round_cache import MemoryRoundCache
from tbindexer.tests.fakes import FakeTransport, addr
from tbindexer.utils.types import DatabaseStats, IndexedRound, RoundInfo


@pytest.mark.asyncio
async def test_engine_indexes_a_round_end_to_end(session_factory, chain, clock):
    boosted = chain.add_tx(105)
    chain.add_tx(105, boosted=False)
    registry = RoundRegistry()
    registry.apply(AuctionResolved(
        round=1, is_multi_bid=True, winner_bidder=addr(1), winner_express_lane_controller=addr(1),
        winner_bid_amount=10, price_paid=9, round_start=1000, round_end=1100,
    ))

    engine = build_engine(
        session_factory, transport=FakeTransport(chain), round_source=registry,
        round_cache=MemoryRoundCache(), clock=clock,
    )
    await engine.start()
    for _ in range(1000):
        if engine.repository.rounds.is_indexed(1):
            break
        await asyncio.sleep(0.01)
    await engine.stop()

    stored = engine.repository.rounds.find_by_number(1)
    assert stored.start_block == 101
    assert [tx.hash for tx in engine.repository.transactions.find_by_round(1)] == [boosted]
    assert engine.repository.statuses.find_by_round(1).status == "completed"


runner = CliRunner()


def test_gaps_command(session_factory, monkeypatch):
    repo = TimeboostRepository(session_factory)
    repo.rounds.create_many([RoundInfo(round=n, start_timestamp=n, end_timestamp=n + 1) for n in range(1, 8)])
    for n in (1, 2, 6, 7):
        repo.record_indexed_round(IndexedRound(n, n, n + 1, None, None, []))
    monkeypatch.setattr(cli_ingest, "SessionLocal", session_factory)

    result = runner.invoke(cli_ingest.app, ["gaps"])

    assert result.exit_code == 0
    assert "3-5 (3 rounds)" in result.output


def test_status_command(monkeypatch):
    repo = MagicMock()
    repo.get_stats.return_value = DatabaseStats(
        total_rounds=10, indexed_rounds=7, total_boosted_transactions=42, failed_rounds=1,
        last_indexed_round=9, last_indexed_block=1234,
    )
    repo.statuses.find_failed.return_value = [4]
    monkeypatch.setattr(cli_ingest, "TimeboostRepository", MagicMock(return_value=repo))

    result = runner.invoke(cli_ingest.app, ["status"])

    assert result.exit_code == 0
    assert "boosted transactions: 42" in result.output
    assert "failed: 4" in result.output


def test_index_round_command_for_unknown_round(session_factory, monkeypatch):
    monkeypatch.setattr(cli_ingest, "SessionLocal", session_factory)
    monkeypatch.setattr(cli_ingest, "build_engine", lambda factory: build_engine(factory, transport=MagicMock(aclose=_noop)))

    result = runner.invoke(cli_ingest.app, ["index-round", "--round", "99"])

    assert result.exit_code == 0


def test_load_events_command_stores_rounds(session_factory, monkeypatch, tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        json.dumps({
            "event": "AuctionResolved", "round": 3, "is_multi_bid": True, "winner_bidder": addr(1),
            "winner_express_lane_controller": addr(1), "winner_bid_amount": "10", "price_paid": "9",
            "round_start": 1200, "round_end": 1260,
        }) + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(cli_ingest, "SessionLocal", session_factory)

    result = runner.invoke(cli_ingest.app, ["load-events", "--file", str(path)])

    assert result.exit_code == 0
    assert "1 events, 1 rounds stored" in result.output
    stored = TimeboostRepository(session_factory).rounds.find_by_number(3)
    assert (stored.start_timestamp, stored.price_paid) == (1200, 9)


def test_load_events_command_rejects_bad_file(session_factory, monkeypatch, tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text("not json\n", encoding="utf-8")
    monkeypatch.setattr(cli_ingest, "SessionLocal", session_factory)

    result = runner.invoke(cli_ingest.app, ["load-events", "--file", str(path)])

    assert result.exit_code == 1
    assert TimeboostRepository(session_factory).rounds.find_all_round_numbers() == []


async def _noop():
    return None
