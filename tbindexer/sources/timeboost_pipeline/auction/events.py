import dataclasses
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

from tbindexer.utils.types import AuctionKind, RoundInfo

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuctionResolved:
    round: int
    is_multi_bid: bool
    winner_bidder: str
    winner_express_lane_controller: str
    winner_bid_amount: int
    price_paid: int
    round_start: int
    round_end: int
    transaction_hash: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SetExpressLaneController:
    round: int
    prev_express_lane_controller: Optional[str]
    new_express_lane_controller: str
    transferor: Optional[str]
    start_timestamp: int
    end_timestamp: int
    transaction_hash: Optional[str] = None


AuctionEvent = Union[AuctionResolved, SetExpressLaneController]

EVENT_TYPES = {
    "AuctionResolved": AuctionResolved,
    "SetExpressLaneController": SetExpressLaneController,
}
_INT_FIELDS = {
    "round", "winner_bid_amount", "price_paid", "round_start", "round_end", "start_timestamp", "end_timestamp",
}


def event_from_dict(data: dict) -> AuctionEvent:
    """
    Build an event from one decoded record, e.g.
    `{"event": "AuctionResolved", "round": 12, "price_paid": "5000", ...}`.
    Amounts may be JSON numbers or decimal strings.
    """
    kind = data.get("event")
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown auction event {kind!r}")
    values = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name in _INT_FIELDS:
            value = int(value)
        elif f.name == "is_multi_bid":
            value = bool(value)
        values[f.name] = value
    return cls(**values)


def read_events(path: Union[str, Path]) -> Iterator[AuctionEvent]:
    """Events from a JSON-lines file, one decoded record per line."""
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield event_from_dict(json.loads(line))
            except (ValueError, TypeError) as e:
                raise ValueError(f"{path}:{lineno}: {e}") from e


class RoundRegistry:
    """
    In-memory round source built from already-decoded auction events.

    `AuctionResolved` fills in the auction outcome; `SetExpressLaneController`
    moves the controller and the round's time window (a transfer mid-round
    narrows it). Events may arrive in any order.
    """

    def __init__(self):
        self._rounds: Dict[int, RoundInfo] = {}
        self._lock = threading.Lock()

    def _current(self, round_number: int) -> RoundInfo:
        return self._rounds.get(round_number) or RoundInfo(round=round_number, start_timestamp=0, end_timestamp=0)

    def apply(self, event) -> RoundInfo:
        if isinstance(event, AuctionResolved):
            return self.apply_auction_resolved(event)
        if isinstance(event, SetExpressLaneController):
            return self.apply_controller_set(event)
        raise TypeError(f"Unsupported event type {type(event).__name__}")

    def apply_all(self, events: Iterable[AuctionEvent]) -> int:
        count = 0
        for event in events:
            self.apply(event)
            count += 1
        log.info(f"Applied {count} auction events ({len(self._rounds)} rounds known)")
        return count

    def apply_auction_resolved(self, ev: AuctionResolved) -> RoundInfo:
        with self._lock:
            info = dataclasses.replace(
                self._current(ev.round),
                auction_kind=AuctionKind.MULTI if ev.is_multi_bid else AuctionKind.SINGLE,
                winner=ev.winner_bidder,
                winning_amount=ev.winner_bid_amount,
                price_paid=ev.price_paid,
                start_timestamp=ev.round_start,
                end_timestamp=ev.round_end,
                controller_address=ev.winner_express_lane_controller,
                resolution_ref=ev.transaction_hash,
            )
            self._rounds[ev.round] = info
        log.debug(f"AuctionResolved round {ev.round}: winner {ev.winner_bidder}")
        return info

    def apply_controller_set(self, ev: SetExpressLaneController) -> RoundInfo:
        with self._lock:
            info = dataclasses.replace(
                self._current(ev.round),
                controller_address=ev.new_express_lane_controller,
                start_timestamp=ev.start_timestamp,
                end_timestamp=ev.end_timestamp,
            )
            self._rounds[ev.round] = info
        return info

    def get_latest_round(self) -> Optional[int]:
        with self._lock:
            return max(self._rounds) if self._rounds else None

    def get_round(self, round_number: int) -> Optional[RoundInfo]:
        with self._lock:
            return self._rounds.get(round_number)

    def get_all_rounds(self) -> List[RoundInfo]:
        with self._lock:
            return [self._rounds[r] for r in sorted(self._rounds)]

    def get_rounds_after(self, round_number: Optional[int]) -> List[RoundInfo]:
        with self._lock:
            return [
                self._rounds[r] for r in sorted(self._rounds)
                if round_number is None or r > round_number
            ]
