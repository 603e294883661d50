from datetime import datetime, timedelta, timezone

import pytest

from sgarage.db import init_db, make_engine
from sgarage.ledger import AuctionLedger
from sgarage.realtime import Hub
from sgarage.settings import AuctionCfg, DatabaseCfg, ListingCfg, Settings

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current

    def set(self, when: datetime) -> datetime:
        self.current = when
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'sgarage.sqlite'}"


@pytest.fixture
def engine(db_url):
    eng = make_engine(db_url)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def events():
    return []


@pytest.fixture
def ledger(engine, clock, events):
    def publish(event, listing_id=None):
        events.append((event, listing_id))

    return AuctionLedger(engine, AuctionCfg(), publish=publish, clock=clock)


@pytest.fixture
def lot(ledger, clock):
    """10,000 start, 250 increment, 12,000 reserve, closes in 15 minutes."""
    return ledger.create_listing(
        "lot-a",
        starting_price=10_000,
        end_at=clock() + timedelta(seconds=900),
        min_increment=250,
        reserve_price=12_000,
        title="1991 Toyota MR2 Turbo",
    )


@pytest.fixture
def hub():
    return Hub(queue_size=10)


@pytest.fixture
def settings(db_url):
    return Settings(
        auction=AuctionCfg(close_sweep_seconds=0, auto_bid_seconds=0),
        database=DatabaseCfg(url=db_url),
        seed_demo=False,
        listing=[
            ListingCfg(id="lot-a", title="1991 Toyota MR2 Turbo", starting_price=10_000,
                       min_increment=250, duration_seconds=900, reserve_price=12_000),
            ListingCfg(id="lot-b", title="1986 Mazda RX-7", starting_price=50_000,
                       min_increment=1_000, duration_seconds=3600),
        ],
    )
