from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import NamedTuple, Optional


class AuctionKind(str, Enum):
    SINGLE = "single"
    MULTI = "multi"
    UNKNOWN = "unknown"


class RoundState(str, Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class RoundInfo:
    """One auction round as reported by the event source.

    Immutable once the auction is resolved; `start_block` / `end_block` are
    filled in later with `dataclasses.replace`.
    """
    round: int
    start_timestamp: int
    end_timestamp: int
    controller_address: Optional[str] = None
    auction_kind: AuctionKind = AuctionKind.UNKNOWN
    winner: Optional[str] = None
    winning_amount: Optional[int] = None
    price_paid: Optional[int] = None
    resolution_ref: Optional[str] = None      # tx hash of the AuctionResolved event
    start_block: Optional[int] = None
    end_block: Optional[int] = None

    def is_ongoing(self, now: float) -> bool:
        return now < self.end_timestamp


@dataclass(frozen=True, slots=True)
class BoostedTransaction:
    hash: str
    block_number: int
    timestamp: int
    from_address: str
    to_address: str
    value: int
    gas_used: int
    effective_gas_price: int
    transaction_index: int = 0
    boosted: bool = True

    def to_dict(self) -> dict:
        out = asdict(self)
        # big ints travel as decimal strings
        for key in ("value", "gas_used", "effective_gas_price"):
            out[key] = str(out[key])
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "BoostedTransaction":
        return cls(
            hash=data["hash"],
            block_number=int(data["block_number"]),
            timestamp=int(data["timestamp"]),
            from_address=data["from_address"],
            to_address=data.get("to_address") or "",
            value=int(data["value"]),
            gas_used=int(data["gas_used"]),
            effective_gas_price=int(data["effective_gas_price"]),
            transaction_index=int(data.get("transaction_index", 0)),
            boosted=bool(data.get("boosted", True)),
        )


@dataclass(slots=True)
class IndexedRound:
    round: int
    start_timestamp: int
    end_timestamp: int
    start_block: Optional[int]
    end_block: Optional[int]
    transactions: list[BoostedTransaction] = field(default_factory=list)
    indexed_at: float = 0.0
    # False when indexed before the round ended
    final: bool = True

    def to_dict(self) -> dict:
        return {
            "round": self.round,
            "start_timestamp": self.start_timestamp,
            "end_timestamp": self.end_timestamp,
            "start_block": self.start_block,
            "end_block": self.end_block,
            "transactions": [tx.to_dict() for tx in self.transactions],
            "indexed_at": self.indexed_at,
            "final": self.final,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexedRound":
        return cls(
            round=int(data["round"]),
            start_timestamp=int(data["start_timestamp"]),
            end_timestamp=int(data["end_timestamp"]),
            start_block=data.get("start_block"),
            end_block=data.get("end_block"),
            transactions=[BoostedTransaction.from_dict(tx) for tx in data.get("transactions", [])],
            indexed_at=float(data.get("indexed_at", 0.0)),
            final=bool(data.get("final", True)),
        )


@dataclass(slots=True)
class RoundIndexStatus:
    round: int
    state: RoundState
    transaction_count: int = 0
    last_indexed: Optional[float] = None
    error: Optional[str] = None


class Gap(NamedTuple):
    start: int
    end: int


@dataclass(slots=True)
class IndexerProgress:
    current_block: int
    total_blocks: int
    processed_blocks: int
    found_transactions: int
    started_at: float
    estimated_seconds_remaining: Optional[int] = None


@dataclass(slots=True)
class RateLimiterMetrics:
    success_count: int
    failure_count: int
    rate_limit_count: int
    average_response_time: float          # milliseconds
    current_concurrency: int
    target_concurrency: int
    in_flight: int
    queued: int
    backoff_delay: float                  # seconds
    last_adjustment_time: float


@dataclass(slots=True)
class DatabaseStats:
    total_rounds: int
    indexed_rounds: int
    total_boosted_transactions: int
    failed_rounds: int
    last_indexed_round: Optional[int] = None
    last_indexed_block: Optional[int] = None


@dataclass(slots=True)
class OrchestratorStatus:
    is_running: bool
    last_seen_round: Optional[int]
    oldest_queued_round: Optional[int]
    indexing_queue_size: int
    backfill_queue_size: int
    gap_queue_size: int
    active_indexing: int
    idle: bool
