import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from tbindexer.utils.types import IndexedRound

log = logging.getLogger(__name__)

_ROUND_FILE = re.compile(r"^round-(\d+)\.json$")


class RoundCache:
    """One JSON file per indexed round under `cache_dir`."""

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)

    def _path(self, round_number: int) -> Path:
        return self.cache_dir / f"round-{round_number}.json"

    # blocking helpers, run off the event loop

    def _read(self, round_number: int) -> Optional[IndexedRound]:
        path = self._path(round_number)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return IndexedRound.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            log.warning(f"⚠️ Ignoring unreadable cache file {path.name}: {exc}")
            return None

    def _write(self, indexed: IndexedRound) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=".round-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(indexed.to_dict(), f, indent=2)
            os.replace(tmp, self._path(indexed.round))
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def _list(self) -> List[int]:
        if not self.cache_dir.is_dir():
            return []
        found = []
        for entry in self.cache_dir.iterdir():
            m = _ROUND_FILE.match(entry.name)
            if m:
                found.append(int(m.group(1)))
        return sorted(found)

    # async API

    async def load(self, round_number: int) -> Optional[IndexedRound]:
        return await asyncio.to_thread(self._read, round_number)

    async def save(self, indexed: IndexedRound) -> None:
        await asyncio.to_thread(self._write, indexed)

    async def delete(self, round_number: int) -> None:
        await asyncio.to_thread(self._path(round_number).unlink, True)

    async def rounds(self) -> List[int]:
        return await asyncio.to_thread(self._list)

    async def clear(self) -> None:
        for round_number in await self.rounds():
            await self.delete(round_number)


class MemoryRoundCache:
    """In-process stand-in for `RoundCache`; nothing survives a restart."""

    def __init__(self):
        self._rounds = {}

    async def load(self, round_number: int) -> Optional[IndexedRound]:
        return self._rounds.get(round_number)

    async def save(self, indexed: IndexedRound) -> None:
        self._rounds[indexed.round] = indexed

    async def delete(self, round_number: int) -> None:
        self._rounds.pop(round_number, None)

    async def rounds(self) -> List[int]:
        return sorted(self._rounds)

    async def clear(self) -> None:
        self._rounds.clear()
