import json

import pytest

from tbindexer.sources.timeboost_pipeline.auction.events import (
    AuctionResolved,
    RoundRegistry,
    SetExpressLaneController,
    event_from_dict,
    read_events,
)
from tbindexer.tests.fakes import addr
from tbindexer.utils.types import AuctionKind


def resolved(n: int, multi: bool = True) -> AuctionResolved:
    return AuctionResolved(
        round=n, is_multi_bid=multi, winner_bidder=addr(1), winner_express_lane_controller=addr(2),
        winner_bid_amount=100, price_paid=80, round_start=6000, round_end=6060, transaction_hash="0xabc",
    )


def test_auction_resolved_fills_round():
    registry = RoundRegistry()

    info = registry.apply(resolved(10, multi=False))

    assert info.auction_kind == AuctionKind.SINGLE
    assert (info.winner, info.controller_address) == (addr(1), addr(2))
    assert (info.winning_amount, info.price_paid) == (100, 80)
    assert (info.start_timestamp, info.end_timestamp) == (6000, 6060)
    assert info.resolution_ref == "0xabc"


def test_controller_transfer_narrows_window_and_keeps_auction_data():
    registry = RoundRegistry()
    registry.apply(resolved(10))

    info = registry.apply(SetExpressLaneController(
        round=10, prev_express_lane_controller=addr(2), new_express_lane_controller=addr(3),
        transferor=addr(2), start_timestamp=6030, end_timestamp=6060,
    ))

    assert info.controller_address == addr(3)
    assert info.start_timestamp == 6030
    assert info.winner == addr(1)
    assert info.auction_kind == AuctionKind.MULTI


def test_events_in_any_order():
    registry = RoundRegistry()
    registry.apply(SetExpressLaneController(
        round=11, prev_express_lane_controller=None, new_express_lane_controller=addr(5),
        transferor=None, start_timestamp=6060, end_timestamp=6120,
    ))
    registry.apply(resolved(12))

    assert registry.get_round(11).auction_kind == AuctionKind.UNKNOWN
    assert registry.get_latest_round() == 12
    assert [r.round for r in registry.get_all_rounds()] == [11, 12]
    assert [r.round for r in registry.get_rounds_after(11)] == [12]
    assert registry.get_round(99) is None


def test_unknown_event_type_is_rejected():
    with pytest.raises(TypeError):
        RoundRegistry().apply(object())


def write_lines(path, records):
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n\n", encoding="utf-8")
    return path


def test_event_from_dict_accepts_string_amounts():
    big = 10**30
    ev = event_from_dict({
        "event": "AuctionResolved", "round": "7", "is_multi_bid": 1, "winner_bidder": addr(1),
        "winner_express_lane_controller": addr(2), "winner_bid_amount": str(big), "price_paid": "5000",
        "round_start": 6000, "round_end": 6060,
    })

    assert isinstance(ev, AuctionResolved)
    assert (ev.round, ev.winner_bid_amount, ev.price_paid) == (7, big, 5000)
    assert ev.is_multi_bid is True
    assert ev.transaction_hash is None


def test_event_from_dict_rejects_unknown_kind():
    with pytest.raises(ValueError):
        event_from_dict({"event": "BidSubmitted", "round": 1})


def test_read_events_feeds_registry(tmp_path):
    path = write_lines(tmp_path / "events.jsonl", [
        {
            "event": "AuctionResolved", "round": 20, "is_multi_bid": False, "winner_bidder": addr(1),
            "winner_express_lane_controller": addr(2), "winner_bid_amount": 100, "price_paid": 80,
            "round_start": 7200, "round_end": 7260, "transaction_hash": "0xfeed",
        },
        {
            "event": "SetExpressLaneController", "round": 20, "prev_express_lane_controller": addr(2),
            "new_express_lane_controller": addr(3), "transferor": addr(2),
            "start_timestamp": 7230, "end_timestamp": 7260,
        },
    ])
    registry = RoundRegistry()

    assert registry.apply_all(read_events(path)) == 2

    info = registry.get_round(20)
    assert info.controller_address == addr(3)
    assert (info.start_timestamp, info.end_timestamp) == (7230, 7260)
    assert info.auction_kind == AuctionKind.SINGLE
    assert info.resolution_ref == "0xfeed"


def test_read_events_reports_bad_line(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text('{"event": "SetExpressLaneController", "round": 1}\n', encoding="utf-8")

    with pytest.raises(ValueError, match=":1:"):
        list(read_events(path))
