"""Test bid acceptance, soft close and terminal state on the auction ledger."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from sgarage.core import (
    AuctionEnded,
    BidConflict,
    BidTooLow,
    InvalidAmount,
    ListingNotFound,
    ReserveState,
    reserve_state_for,
)
from sgarage.ledger import DEMO_LISTING_ID, AuctionLedger
from sgarage.settings import AuctionCfg, Settings


def test_concrete_soft_close_scenario(ledger, lot, clock):
    """Too-low bid, normal bid, then a late bid that extends the close."""
    with pytest.raises(BidTooLow) as exc:
        ledger.place_bid("lot-a", "u1", 10_200)
    assert exc.value.minimum == 10_250

    first = ledger.place_bid("lot-a", "u1", 10_300)
    assert first.current_price == 10_300
    assert first.extended is False
    assert first.end_at == lot.end_at

    now = clock.set(lot.end_at - timedelta(seconds=20))
    late = ledger.place_bid("lot-a", "u2", 10_600)
    assert late.current_price == 10_600
    assert late.extended is True
    assert late.end_at == now + timedelta(seconds=120)


def test_bid_outside_window_does_not_extend(ledger, lot, clock):
    clock.set(lot.end_at - timedelta(seconds=60))
    result = ledger.place_bid("lot-a", "u1", 10_250)
    assert result.extended is False
    assert result.end_at == lot.end_at


def test_extension_counts_from_bid_time_not_old_end(ledger, lot, clock):
    clock.set(lot.end_at - timedelta(seconds=10))
    first = ledger.place_bid("lot-a", "u1", 10_250)
    now = clock.set(first.end_at - timedelta(seconds=5))
    second = ledger.place_bid("lot-a", "u2", 10_500)
    assert second.end_at == now + timedelta(seconds=120)
    assert second.end_at < first.end_at + timedelta(seconds=120)


def test_bid_at_end_time_is_rejected(ledger, lot, clock):
    clock.set(lot.end_at)
    with pytest.raises(AuctionEnded):
        ledger.place_bid("lot-a", "u1", 1_000_000)
    assert ledger.get_listing("lot-a").current_price == 10_000


def test_rejected_bid_leaves_listing_untouched(ledger, lot, events):
    ledger.place_bid("lot-a", "u1", 10_250)
    before = ledger.get_listing("lot-a")
    with pytest.raises(BidTooLow):
        ledger.place_bid("lot-a", "u2", 10_250)
    after = ledger.get_listing("lot-a")
    assert after.current_price == before.current_price
    assert after.end_at == before.end_at
    assert after.bid_count == 1
    assert len(ledger.get_bid_history("lot-a")) == 1
    assert len(events) == 1


@pytest.mark.parametrize("amount", [0, -10, 10_300.5, float("nan"), float("inf"), "10300", None, True, 10**20, 2**63])
def test_invalid_amounts(ledger, lot, amount):
    with pytest.raises(InvalidAmount):
        ledger.place_bid("lot-a", "u1", amount)


def test_whole_float_amount_is_accepted(ledger, lot):
    assert ledger.place_bid("lot-a", "u1", 10_300.0).current_price == 10_300


def test_unknown_listing(ledger):
    with pytest.raises(ListingNotFound):
        ledger.place_bid("nope", "u1", 10_000)
    with pytest.raises(ListingNotFound):
        ledger.get_listing("nope")
    with pytest.raises(ListingNotFound):
        ledger.get_bid_history("nope")


def test_amount_need_not_be_multiple_of_increment(ledger, lot):
    assert ledger.place_bid("lot-a", "u1", 10_251).current_price == 10_251


def test_monotonic_price_and_end(ledger, lot, clock):
    prices, ends = [], []
    amount = 10_000
    for step in (100, 200, 300, 250, 40, 15, 100):
        clock.advance(step)
        amount += 250 + step
        result = ledger.place_bid("lot-a", f"u{step}", amount)
        prices.append(result.current_price)
        ends.append(result.end_at)
    assert prices == sorted(prices)
    assert ends == sorted(ends)


def test_reserve_state_follows_price(ledger, lot):
    assert lot.reserve_state is ReserveState.NOT_MET
    assert ledger.place_bid("lot-a", "u1", 11_999).reserve_state is ReserveState.NOT_MET
    assert ledger.place_bid("lot-a", "u2", 12_249).reserve_state is ReserveState.MET


def test_no_reserve_is_always_none(ledger, clock):
    ledger.create_listing("lot-n", starting_price=100, end_at=clock() + timedelta(hours=1))
    assert ledger.place_bid("lot-n", "u1", 1_000_000).reserve_state is ReserveState.NONE


@pytest.mark.parametrize(
    "current,reserve,expected",
    [
        (100, None, ReserveState.NONE),
        (100, 0, ReserveState.MET),
        (100, 100, ReserveState.MET),
        (99, 100, ReserveState.NOT_MET),
    ],
)
def test_reserve_state_for(current, reserve, expected):
    assert reserve_state_for(current, reserve) is expected


def test_history_is_most_recent_first(ledger, lot, clock):
    for i, amount in enumerate((10_250, 10_500, 10_750)):
        clock.advance(1)
        ledger.place_bid("lot-a", f"u{i}", amount)
    history = ledger.get_bid_history("lot-a")
    assert [b.amount for b in history] == [10_750, 10_500, 10_250]
    assert [b.amount for b in ledger.get_bid_history("lot-a", limit=2)] == [10_750, 10_500]
    assert ledger.get_bid_history("lot-a", limit=0) == []


def test_placed_at_strictly_increases_with_frozen_clock(ledger, lot):
    ledger.place_bid("lot-a", "u1", 10_250)
    ledger.place_bid("lot-a", "u2", 10_500)
    newest, oldest = ledger.get_bid_history("lot-a")
    assert newest.placed_at > oldest.placed_at
    assert newest.amount == 10_500


def test_events_published(ledger, lot, clock, events):
    ledger.place_bid("lot-a", "u1", 10_250)
    clock.set(lot.end_at - timedelta(seconds=5))
    ledger.place_bid("lot-a", "u2", 10_500)
    kinds = [(e["type"], lid) for e, lid in events]
    assert kinds == [
        ("bid:placed", "lot-a"),
        ("bid:placed", "lot-a"),
        ("auction:extended", "lot-a"),
    ]
    assert events[0][0]["price"] == 10_250
    assert events[1][0]["bidCount"] == 2
    assert events[2][0]["endAt"].startswith("2026-01-01T12:16:")


def test_failing_publisher_does_not_abort_bid(engine, clock):
    def publish(event, listing_id=None):
        raise RuntimeError("socket exploded")

    ledger = AuctionLedger(engine, AuctionCfg(), publish=publish, clock=clock)
    ledger.create_listing("lot-x", starting_price=100, end_at=clock() + timedelta(minutes=5))
    assert ledger.place_bid("lot-x", "u1", 351).current_price == 351
    assert ledger.get_listing("lot-x").current_price == 351


def test_concurrent_equal_bids_accept_exactly_one(ledger, lot):
    def attempt(i):
        try:
            ledger.place_bid("lot-a", f"u{i}", 10_250)
            return "ok"
        except BidTooLow:
            return "low"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(16)))
    assert outcomes.count("ok") == 1
    assert outcomes.count("low") == 15
    assert ledger.get_listing("lot-a").bid_count == 1


def test_close_expired_writes_terminal_state_once(ledger, lot, clock, events):
    clock.set(lot.end_at - timedelta(seconds=1))
    assert ledger.close_expired() == []
    clock.set(lot.end_at)
    assert ledger.close_expired() == ["lot-a"]
    assert ledger.close_expired() == []
    listing = ledger.get_listing("lot-a")
    assert listing.status == "closed"
    assert listing.closed_at == lot.end_at
    assert events[-1][0] == {
        "type": "auction:closed",
        "listingId": "lot-a",
        "finalPrice": 10_000,
        "reserveState": "not_met",
        "endStatus": "unsold",
        "winningBidderId": None,
        "extensionCount": 0,
    }


def test_closed_listing_rejects_even_if_clock_goes_back(ledger, lot, clock):
    clock.set(lot.end_at + timedelta(seconds=1))
    ledger.close_expired()
    clock.set(lot.end_at - timedelta(seconds=60))
    with pytest.raises(AuctionEnded):
        ledger.place_bid("lot-a", "u1", 20_000)


def test_extended_listing_is_not_closed_at_original_end(ledger, lot, clock):
    clock.set(lot.end_at - timedelta(seconds=10))
    ledger.place_bid("lot-a", "u1", 10_250)
    clock.set(lot.end_at)
    assert ledger.close_expired() == []
    assert ledger.get_listing("lot-a").status == "open"


def test_create_listing_is_idempotent(ledger, lot, clock):
    again = ledger.create_listing("lot-a", starting_price=1, end_at=clock())
    assert again.current_price == 10_000
    assert again.end_at == lot.end_at


def test_create_listing_rejects_zero_increment(ledger, clock):
    with pytest.raises(ValueError):
        ledger.create_listing("lot-z", starting_price=1, end_at=clock(), min_increment=0)


def test_seed_creates_demo_only_on_empty_ledger(ledger, clock):
    created = ledger.seed(Settings())
    assert [row.id for row in created] == [DEMO_LISTING_ID]
    demo = ledger.get_listing(DEMO_LISTING_ID)
    assert demo.current_price == 10_000
    assert demo.min_increment == 250
    assert demo.end_at == clock() + timedelta(minutes=15)
    assert ledger.seed(Settings()) == []


def test_seed_from_settings(ledger, settings, clock):
    ledger.seed(settings)
    ids = [row.id for row in ledger.list_listings()]
    assert ids == ["lot-a", "lot-b"]
    assert ledger.get_listing("lot-b").reserve_state is ReserveState.NONE


def test_close_with_reserve_met_is_sold_to_high_bidder(ledger, lot, clock, events):
    ledger.place_bid("lot-a", "u1", 11_000)
    ledger.place_bid("lot-a", "u2", 12_500)
    clock.set(lot.end_at)
    assert ledger.close_expired() == ["lot-a"]
    listing = ledger.get_listing("lot-a")
    assert listing.end_status == "sold"
    assert listing.winning_bidder_id == "u2"
    assert events[-1][0]["endStatus"] == "sold"
    assert events[-1][0]["winningBidderId"] == "u2"


def test_close_with_reserve_not_met_has_no_winner(ledger, lot, clock):
    ledger.place_bid("lot-a", "u1", 11_000)
    clock.set(lot.end_at)
    ledger.close_expired()
    listing = ledger.get_listing("lot-a")
    assert listing.end_status == "unsold"
    assert listing.winning_bidder_id is None
    assert listing.high_bidder_id == "u1"


def test_close_without_reserve_sells_to_any_bid(ledger, clock):
    ledger.create_listing("lot-n", starting_price=100, end_at=clock() + timedelta(minutes=1))
    ledger.place_bid("lot-n", "u9", 101)
    clock.advance(60)
    ledger.close_expired()
    assert ledger.get_listing("lot-n").winning_bidder_id == "u9"


def test_close_without_bids_is_unsold(ledger, clock):
    ledger.create_listing("lot-n", starting_price=100, end_at=clock() + timedelta(minutes=1))
    clock.advance(60)
    ledger.close_expired()
    listing = ledger.get_listing("lot-n")
    assert listing.end_status == "unsold"
    assert listing.winning_bidder_id is None


def test_extension_count_tracks_each_extension(ledger, lot, clock):
    ledger.place_bid("lot-a", "u1", 10_250)
    assert ledger.get_listing("lot-a").extension_count == 0
    clock.set(lot.end_at - timedelta(seconds=10))
    ledger.place_bid("lot-a", "u2", 10_500)
    clock.advance(100)
    ledger.place_bid("lot-a", "u1", 10_750)
    listing = ledger.get_listing("lot-a")
    assert listing.extension_count == 2
    assert listing.high_bidder_id == "u1"


class RivalClock:
    """Clock that lets another ledger commit a bid the first time it is read."""

    def __init__(self, clock, rival: AuctionLedger, amount: int):
        self.clock = clock
        self.rival = rival
        self.amount = amount
        self.fired = False

    def __call__(self):
        if not self.fired:
            self.fired = True
            self.rival.place_bid("lot-a", "rival", self.amount)
        return self.clock()


def test_stale_write_from_another_process_is_revalidated(engine, lot, clock):
    rival = AuctionLedger(engine, AuctionCfg(), clock=clock)
    ledger = AuctionLedger(engine, AuctionCfg(), clock=RivalClock(clock, rival, 10_250))
    with pytest.raises(BidTooLow) as exc_info:
        ledger.place_bid("lot-a", "u1", 10_250)
    assert exc_info.value.minimum == 10_500
    listing = rival.get_listing("lot-a")
    assert listing.current_price == 10_250
    assert listing.bid_count == 1
    assert listing.high_bidder_id == "rival"


def test_stale_write_retries_and_lands_on_fresh_state(engine, lot, clock):
    rival = AuctionLedger(engine, AuctionCfg(), clock=clock)
    ledger = AuctionLedger(engine, AuctionCfg(), clock=RivalClock(clock, rival, 10_250))
    result = ledger.place_bid("lot-a", "u1", 10_600)
    assert result.current_price == 10_600
    listing = ledger.get_listing("lot-a")
    assert listing.bid_count == 2
    assert listing.high_bidder_id == "u1"
    assert [b.amount for b in ledger.get_bid_history("lot-a")] == [10_600, 10_250]


def test_retries_exhausted_raise_conflict(engine, lot, clock):
    class AlwaysRival:
        def __init__(self):
            self.rival = AuctionLedger(engine, AuctionCfg(), clock=clock)
            self.price = 10_000

        def __call__(self):
            self.price += 250
            self.rival.place_bid("lot-a", "rival", self.price)
            return clock()

    ledger = AuctionLedger(engine, AuctionCfg(max_retries=2), clock=AlwaysRival())
    with pytest.raises(BidConflict) as exc_info:
        ledger.place_bid("lot-a", "u1", 1_000_000)
    assert exc_info.value.status_code == 409
    assert ledger.get_listing("lot-a").high_bidder_id == "rival"


def test_two_ledgers_on_one_database_accept_exactly_one(engine, lot, clock):
    ledgers = [AuctionLedger(engine, AuctionCfg(max_retries=10), clock=clock) for _ in range(2)]

    def attempt(i):
        try:
            ledgers[i % 2].place_bid("lot-a", f"u{i}", 10_250)
            return "ok"
        except (BidTooLow, BidConflict):
            return "lost"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(16)))
    assert outcomes.count("ok") == 1
    listing = ledgers[0].get_listing("lot-a")
    assert listing.bid_count == 1
    assert len(ledgers[1].get_bid_history("lot-a")) == 1
