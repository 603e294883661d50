from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol


class ReserveState(str, Enum):
    NONE = "none"
    MET = "met"
    NOT_MET = "not_met"


class ListingStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class EndStatus(str, Enum):
    SOLD = "sold"
    UNSOLD = "unsold"


class AutoBidStatus(str, Enum):
    SCHEDULED = "scheduled"
    FIRING = "firing"
    EXECUTED = "executed"
    EXPIRED = "expired"


def reserve_state_for(current_price: int, reserve_price: Optional[int]) -> ReserveState:
    if reserve_price is None:
        return ReserveState.NONE
    return ReserveState.MET if current_price >= reserve_price else ReserveState.NOT_MET


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


MAX_AMOUNT = 2**63 - 1


class Publisher(Protocol):
    def __call__(self, event: dict, listing_id: Optional[str] = None) -> object: ...


class AuctionError(Exception):
    """Base for every recoverable bidding failure."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ListingNotFound(AuctionError):
    status_code = 404

    def __init__(self, listing_id: str):
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class AuctionEnded(AuctionError):
    def __init__(self, listing_id: str):
        super().__init__("Auction has ended")
        self.listing_id = listing_id


class BidTooLow(AuctionError):
    def __init__(self, minimum: int):
        super().__init__(f"Minimum bid is ¥{minimum:,}")
        self.minimum = minimum


class BidConflict(AuctionError):
    """Another writer kept changing the listing between read and write."""

    status_code = 409

    def __init__(self, listing_id: str):
        super().__init__("Concurrent update conflict, please retry")
        self.listing_id = listing_id


class InvalidAmount(AuctionError):
    """Raised for amounts that are not positive whole currency units."""

    def __init__(self, amount: object):
        super().__init__(f"Invalid bid amount: {amount!r}")
        self.amount = amount


def coerce_amount(amount: object) -> int:
    # bool is an int subclass; True is not a bid
    if isinstance(amount, bool):
        raise InvalidAmount(amount)
    if isinstance(amount, int):
        value = amount
    elif isinstance(amount, float) and amount.is_integer():
        value = int(amount)
    else:
        raise InvalidAmount(amount)
    # must fit a signed 64-bit INTEGER column
    if value <= 0 or value > MAX_AMOUNT:
        raise InvalidAmount(amount)
    return value
