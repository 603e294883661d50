# sgarage/db.py
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, create_engine

from sgarage.core import (
    AutoBidStatus,
    ListingStatus,
    ReserveState,
    reserve_state_for,
    utcnow,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in Python, plain UTC in the column.

    SQLite has no timezone storage, so values are normalised to UTC on the way
    in and get ``tzinfo=UTC`` back on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime {value!r} for a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Listing(SQLModel, table=True):
    __tablename__ = "listing"
    id: str = Field(primary_key=True)
    title: str = ""
    starting_price: int
    current_price: int = Field(description="Latest accepted bid, or starting price")
    min_increment: int = Field(default=1, ge=1)
    end_at: datetime = Field(sa_type=UTCDateTime, index=True, description="Scheduled close")
    reserve_price: Optional[int] = None
    status: str = Field(default=ListingStatus.OPEN.value, index=True)
    bid_count: int = 0
    extension_count: int = 0
    high_bidder_id: Optional[str] = None
    last_bid_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    closed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    # settlement, written once by the close sweep
    end_status: Optional[str] = None
    winning_bidder_id: Optional[str] = None

    @property
    def reserve_state(self) -> ReserveState:
        return reserve_state_for(self.current_price, self.reserve_price)

    def is_ended(self, now: datetime) -> bool:
        return self.status == ListingStatus.CLOSED.value or now >= self.end_at


class Bid(SQLModel, table=True):
    __tablename__ = "bid"
    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: str = Field(foreign_key="listing.id", index=True)
    bidder_id: str = Field(index=True)
    amount: int
    placed_at: datetime = Field(sa_type=UTCDateTime, index=True, description="Acceptance time")


class AutoBid(SQLModel, table=True):
    """A snipe order: bid the current minimum once the close is near."""

    __tablename__ = "auto_bid"
    id: Optional[int] = Field(default=None, primary_key=True)
    listing_id: str = Field(foreign_key="listing.id", index=True)
    bidder_id: str = Field(index=True)
    max_amount: int
    trigger_seconds: int = Field(default=60, description="Fire this long before the close")
    status: str = Field(default=AutoBidStatus.SCHEDULED.value, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    executed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    bid_id: Optional[int] = Field(default=None, foreign_key="bid.id")


def make_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        database = make_url(url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
