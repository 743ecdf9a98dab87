"""
Round, indexing-status and boosted-transaction persistence.

Repositories are synchronous and take a session factory (a
`scoped_session` or `sessionmaker`). Every write is an idempotent upsert keyed
by round number or transaction hash, so a retried write is harmless.
"""
import logging
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tbindexer.storage.db_utils import upsert_rows
from tbindexer.storage.models.timeboost import BoostedTransactionRecord, IndexingStatusRecord, RoundRecord
from tbindexer.utils.types import AuctionKind, BoostedTransaction, DatabaseStats, IndexedRound, RoundInfo

log = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_INDEXING = "indexing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

AUCTION_COLUMNS = (
    "start_timestamp", "end_timestamp", "controller_address", "auction_kind",
    "winner", "winning_amount", "price_paid", "resolution_ref",
)


def _opt_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


def _opt_int(value: Optional[str]) -> Optional[int]:
    return None if value in (None, "") else int(value)


class _Repository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class RoundRepository(_Repository):
    @staticmethod
    def to_round_info(rec: RoundRecord) -> RoundInfo:
        return RoundInfo(
            round=int(rec.round),
            start_timestamp=int(rec.start_timestamp),
            end_timestamp=int(rec.end_timestamp),
            controller_address=rec.controller_address,
            auction_kind=AuctionKind(rec.auction_kind or AuctionKind.UNKNOWN.value),
            winner=rec.winner,
            winning_amount=_opt_int(rec.winning_amount),
            price_paid=_opt_int(rec.price_paid),
            resolution_ref=rec.resolution_ref,
            start_block=rec.start_block,
            end_block=rec.end_block,
        )

    @staticmethod
    def _row(info: RoundInfo, now: float) -> dict:
        return {
            "round": info.round,
            "start_timestamp": info.start_timestamp,
            "end_timestamp": info.end_timestamp,
            "controller_address": info.controller_address,
            "auction_kind": AuctionKind(info.auction_kind).value,
            "winner": info.winner,
            "winning_amount": _opt_str(info.winning_amount),
            "price_paid": _opt_str(info.price_paid),
            "resolution_ref": info.resolution_ref,
            "start_block": info.start_block,
            "end_block": info.end_block,
            "indexed": False,
            "created_at": now,
        }

    def create_many(self, infos: Iterable[RoundInfo], now: Optional[float] = None) -> None:
        """Insert rounds that are not stored yet; existing rows are left alone."""
        now = time.time() if now is None else now
        rows = [self._row(info, now) for info in infos]
        if not rows:
            return
        with self.session() as db:
            upsert_rows(db, RoundRecord.__table__, rows, ["round"])

    def create(self, info: RoundInfo, now: Optional[float] = None) -> None:
        self.create_many([info], now=now)

    def save_auction_data(self, infos: Iterable[RoundInfo], now: Optional[float] = None) -> int:
        """Insert rounds or refresh their event-derived columns; block ranges and index state are kept."""
        now = time.time() if now is None else now
        rows = [self._row(info, now) for info in infos]
        with self.session() as db:
            upsert_rows(db, RoundRecord.__table__, rows, ["round"], update_columns=AUCTION_COLUMNS)
        return len(rows)

    def find_by_number(self, round_number: int) -> Optional[RoundInfo]:
        with self.session() as db:
            rec = db.get(RoundRecord, round_number)
            return self.to_round_info(rec) if rec is not None else None

    def is_indexed(self, round_number: int) -> bool:
        with self.session() as db:
            rec = db.get(RoundRecord, round_number)
            return bool(rec is not None and rec.indexed)

    def find_latest_round(self) -> Optional[int]:
        with self.session() as db:
            return db.query(func.max(RoundRecord.round)).scalar()

    def find_all_round_numbers(self) -> List[int]:
        with self.session() as db:
            return [r for (r,) in db.query(RoundRecord.round).order_by(RoundRecord.round)]

    def find_unindexed(self, limit: Optional[int] = None, newest_first: bool = True) -> List[int]:
        with self.session() as db:
            order = RoundRecord.round.desc() if newest_first else RoundRecord.round.asc()
            q = db.query(RoundRecord.round).filter(RoundRecord.indexed.is_(False)).order_by(order)
            if limit is not None:
                q = q.limit(limit)
            return [r for (r,) in q]

    def find_indexed_round_numbers(self) -> List[int]:
        with self.session() as db:
            q = db.query(RoundRecord.round).filter(RoundRecord.indexed.is_(True)).order_by(RoundRecord.round)
            return [r for (r,) in q]

    def mark_indexed(self, round_number: int, indexed_at: Optional[float] = None) -> None:
        with self.session() as db:
            db.query(RoundRecord).filter_by(round=round_number).update(
                {"indexed": True, "indexed_at": time.time() if indexed_at is None else indexed_at}
            )

    def update_block_range(self, round_number: int, start_block: Optional[int], end_block: Optional[int]) -> None:
        with self.session() as db:
            db.query(RoundRecord).filter_by(round=round_number).update(
                {"start_block": start_block, "end_block": end_block}
            )

    def find_stale_indexing(self, older_than: float) -> List[int]:
        """Rounds whose `indexing` status was opened before `older_than` and never closed."""
        with self.session() as db:
            q = (
                db.query(IndexingStatusRecord.round)
                .join(RoundRecord, RoundRecord.round == IndexingStatusRecord.round)
                .filter(IndexingStatusRecord.status == STATUS_INDEXING)
                .filter(IndexingStatusRecord.started_at < older_than)
                .filter(RoundRecord.indexed.is_(False))
                .order_by(IndexingStatusRecord.round)
            )
            return [r for (r,) in q]


class IndexingStatusRepository(_Repository):
    def _upsert(self, db: Session, row: dict) -> None:
        upsert_rows(
            db, IndexingStatusRecord.__table__, [row], ["round"],
            update_columns=[c for c in row if c != "round"],
        )

    def mark_started(self, round_number: int, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self.session() as db:
            rec = db.get(IndexingStatusRecord, round_number)
            attempts = (rec.attempts or 0) + 1 if rec is not None else 1
            self._upsert(db, {
                "round": round_number,
                "status": STATUS_INDEXING,
                "attempts": attempts,
                "started_at": now,
                "completed_at": None,
                "error": None,
            })

    def mark_completed(self, round_number: int, transaction_count: int = 0, now: Optional[float] = None) -> None:
        with self.session() as db:
            self._upsert(db, {
                "round": round_number,
                "status": STATUS_COMPLETED,
                "transaction_count": transaction_count,
                "completed_at": time.time() if now is None else now,
                "error": None,
            })

    def mark_failed(self, round_number: int, error: str, now: Optional[float] = None) -> None:
        with self.session() as db:
            self._upsert(db, {
                "round": round_number,
                "status": STATUS_FAILED,
                "completed_at": time.time() if now is None else now,
                "error": error[:2000],
            })

    def find_by_round(self, round_number: int) -> Optional[IndexingStatusRecord]:
        with self.session() as db:
            return db.get(IndexingStatusRecord, round_number)

    def find_pending(self) -> List[int]:
        with self.session() as db:
            q = (
                db.query(IndexingStatusRecord.round)
                .filter(IndexingStatusRecord.status.in_([STATUS_PENDING, STATUS_INDEXING]))
                .order_by(IndexingStatusRecord.round)
            )
            return [r for (r,) in q]

    def find_failed(self) -> List[int]:
        with self.session() as db:
            q = (
                db.query(IndexingStatusRecord.round)
                .filter(IndexingStatusRecord.status == STATUS_FAILED)
                .order_by(IndexingStatusRecord.round.desc())
            )
            return [r for (r,) in q]


class BoostedTransactionRepository(_Repository):
    @staticmethod
    def _row(round_number: int, tx: BoostedTransaction) -> dict:
        return {
            "hash": tx.hash,
            "round": round_number,
            "block_number": tx.block_number,
            "transaction_index": tx.transaction_index,
            "timestamp": tx.timestamp,
            "from_address": tx.from_address,
            "to_address": tx.to_address or "",
            "value": str(tx.value),
            "gas_used": str(tx.gas_used),
            "effective_gas_price": str(tx.effective_gas_price),
        }

    def upsert_many(self, db: Session, round_number: int, transactions: Iterable[BoostedTransaction]) -> None:
        rows = [self._row(round_number, tx) for tx in transactions]
        upsert_rows(
            db, BoostedTransactionRecord.__table__, rows, ["hash"],
            update_columns=[c for c in rows[0] if c != "hash"] if rows else None,
        )

    def find_by_round(self, round_number: int) -> List[BoostedTransaction]:
        with self.session() as db:
            q = (
                db.query(BoostedTransactionRecord)
                .filter_by(round=round_number)
                .order_by(BoostedTransactionRecord.block_number, BoostedTransactionRecord.transaction_index)
            )
            return [
                BoostedTransaction(
                    hash=rec.hash,
                    block_number=int(rec.block_number),
                    timestamp=int(rec.timestamp),
                    from_address=rec.from_address,
                    to_address=rec.to_address,
                    value=int(rec.value),
                    gas_used=int(rec.gas_used),
                    effective_gas_price=int(rec.effective_gas_price),
                    transaction_index=int(rec.transaction_index),
                )
                for rec in q
            ]


class TimeboostRepository(_Repository):
    """Everything the orchestrator needs from the database, behind one object."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.rounds = RoundRepository(session_factory)
        self.statuses = IndexingStatusRepository(session_factory)
        self.transactions = BoostedTransactionRepository(session_factory)

    def record_indexed_round(self, indexed: IndexedRound) -> None:
        """Persist a completed round in one transaction."""
        with self.session() as db:
            self.transactions.upsert_many(db, indexed.round, indexed.transactions)
            db.query(RoundRecord).filter_by(round=indexed.round).update({
                "start_block": indexed.start_block,
                "end_block": indexed.end_block,
                "indexed": True,
                "indexed_at": indexed.indexed_at,
            })
        log.info(f"💾 Round {indexed.round} stored ({len(indexed.transactions)} boosted txs)")

    def get_stats(self) -> DatabaseStats:
        with self.session() as db:
            total_rounds = db.query(func.count(RoundRecord.round)).scalar() or 0
            indexed_rounds = (
                db.query(func.count(RoundRecord.round)).filter(RoundRecord.indexed.is_(True)).scalar() or 0
            )
            total_txs = db.query(func.count(BoostedTransactionRecord.hash)).scalar() or 0
            failed = (
                db.query(func.count(IndexingStatusRecord.round))
                .filter(IndexingStatusRecord.status == STATUS_FAILED)
                .scalar() or 0
            )
            last_round = (
                db.query(func.max(RoundRecord.round)).filter(RoundRecord.indexed.is_(True)).scalar()
            )
            last_block = db.query(func.max(RoundRecord.end_block)).filter(RoundRecord.indexed.is_(True)).scalar()
        return DatabaseStats(
            total_rounds=total_rounds,
            indexed_rounds=indexed_rounds,
            total_boosted_transactions=total_txs,
            failed_rounds=failed,
            last_indexed_round=last_round,
            last_indexed_block=last_block,
        )


class DatabaseRoundSource:
    """Round lookups served from the `rounds` table."""

    def __init__(self, repository: TimeboostRepository):
        self.repository = repository

    def get_latest_round(self) -> Optional[int]:
        return self.repository.rounds.find_latest_round()

    def get_round(self, round_number: int) -> Optional[RoundInfo]:
        return self.repository.rounds.find_by_number(round_number)

    def get_rounds_after(self, round_number: Optional[int]) -> List[RoundInfo]:
        numbers = self.repository.rounds.find_all_round_numbers()
        if round_number is not None:
            numbers = [r for r in numbers if r > round_number]
        return [info for info in (self.get_round(r) for r in numbers) if info is not None]
