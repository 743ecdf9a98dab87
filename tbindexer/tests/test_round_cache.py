import pytest

from tbindexer.storage.round_cache import MemoryRoundCache, RoundCache
from tbindexer.tests.fakes import addr, tx_hash
from tbindexer.utils.types import BoostedTransaction, IndexedRound


def indexed(n: int) -> IndexedRound:
    return IndexedRound(
        round=n, start_timestamp=1000, end_timestamp=1060, start_block=10, end_block=20,
        transactions=[BoostedTransaction(
            hash=tx_hash(n), block_number=12, timestamp=1010, from_address=addr(1), to_address=addr(2),
            value=2**200, gas_used=21000, effective_gas_price=10**8,
        )],
        indexed_at=1100.5,
    )


@pytest.mark.asyncio
async def test_saved_round_loads_back(tmp_path):
    cache = RoundCache(tmp_path / "rounds")

    await cache.save(indexed(3))
    loaded = await cache.load(3)

    assert loaded == indexed(3)
    assert loaded.transactions[0].value == 2**200
    assert (tmp_path / "rounds" / "round-3.json").exists()


@pytest.mark.asyncio
async def test_missing_and_corrupt_files_load_as_none(tmp_path):
    cache = RoundCache(tmp_path)
    (tmp_path / "round-4.json").write_text("{not json", encoding="utf-8")

    assert await cache.load(1) is None
    assert await cache.load(4) is None


@pytest.mark.asyncio
async def test_listing_delete_and_clear(tmp_path):
    cache = RoundCache(tmp_path)
    for n in (12, 2, 7):
        await cache.save(indexed(n))
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    assert await cache.rounds() == [2, 7, 12]

    await cache.delete(7)
    await cache.delete(7)
    assert await cache.rounds() == [2, 12]

    await cache.clear()
    assert await cache.rounds() == []
    assert (tmp_path / "notes.txt").exists()


@pytest.mark.asyncio
async def test_overwrite_leaves_no_temp_files(tmp_path):
    cache = RoundCache(tmp_path)
    await cache.save(indexed(1))
    await cache.save(indexed(1))

    assert sorted(p.name for p in tmp_path.iterdir()) == ["round-1.json"]


@pytest.mark.asyncio
async def test_memory_cache():
    cache = MemoryRoundCache()
    await cache.save(indexed(1))

    assert (await cache.load(1)).round == 1
    assert await cache.rounds() == [1]
    await cache.clear()
    assert await cache.load(1) is None
