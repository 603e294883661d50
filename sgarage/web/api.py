# sgarage/web/api.py
from __future__ import annotations
import logging
from typing import Any, List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from sgarage.core import AuctionError, isoformat
from sgarage.db import AutoBid, Bid, Listing
from sgarage.fees import calc_fees, fee_structure, parse_price
from sgarage.ledger import AuctionLedger
from sgarage.settings import Settings

log = logging.getLogger("sgarage.web")

router = APIRouter(tags=["auction"])


class BidIn(BaseModel):
    listing_id: str = Field(alias="listingId")
    # validated by the ledger so malformed amounts surface as InvalidAmount
    amount: Any = None


class ListingOut(BaseModel):
    id: str
    title: str
    endAt: str
    currentPrice: int
    reserveState: str
    minIncrement: int
    status: str
    bidCount: int
    extensionCount: int = 0
    endStatus: Optional[str] = None
    winningBidderId: Optional[str] = None


class BidOut(BaseModel):
    id: int
    listingId: str
    bidderId: str
    amount: int
    placedAt: str


class BidAccepted(BaseModel):
    ok: bool = True
    bidId: int
    currentPrice: int
    endAt: str
    reserveState: str
    extended: bool


class AutoBidIn(BaseModel):
    listing_id: str = Field(alias="listingId")
    max_amount: Any = Field(None, alias="maxAmount")
    trigger_seconds: int = Field(60, alias="triggerSeconds", ge=1)


class AutoBidOut(BaseModel):
    id: int
    listingId: str
    bidderId: str
    maxAmount: int
    triggerSeconds: int
    status: str


class FeeEstimateOut(BaseModel):
    price: int
    buyersPremium: int
    documentationFee: int
    totalFees: int
    totalWithFees: int
    total: int


def get_ledger(request: Request) -> AuctionLedger:
    return request.app.state.ledger


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_bidder(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Bidder identity as supplied by the auth layer in front of this service."""
    return x_user_id or "anonymous"


def _to_listing_out(row: Listing, ledger: AuctionLedger) -> ListingOut:
    ended = row.is_ended(ledger.now())
    return ListingOut(
        id=row.id,
        title=row.title,
        endAt=isoformat(row.end_at),
        currentPrice=row.current_price,
        reserveState=row.reserve_state.value,
        minIncrement=row.min_increment,
        status="closed" if ended else "open",
        bidCount=row.bid_count,
        extensionCount=row.extension_count,
        endStatus=row.end_status,
        winningBidderId=row.winning_bidder_id,
    )


def _to_bid_out(b: Bid) -> BidOut:
    return BidOut(
        id=b.id,
        listingId=b.listing_id,
        bidderId=b.bidder_id,
        amount=b.amount,
        placedAt=isoformat(b.placed_at),
    )


def _to_auto_bid_out(row: AutoBid) -> AutoBidOut:
    return AutoBidOut(
        id=row.id,
        listingId=row.listing_id,
        bidderId=row.bidder_id,
        maxAmount=row.max_amount,
        triggerSeconds=row.trigger_seconds,
        status=row.status,
    )


def _http_error(exc: AuctionError) -> HTTPException:
    return HTTPException(exc.status_code, exc.message)


@router.get("/listings", response_model=List[ListingOut])
def listings(ledger: AuctionLedger = Depends(get_ledger)):
    return [_to_listing_out(row, ledger) for row in ledger.list_listings()]


@router.get("/listings/{listing_id}", response_model=ListingOut)
def listing(listing_id: str, ledger: AuctionLedger = Depends(get_ledger)):
    try:
        row = ledger.get_listing(listing_id)
    except AuctionError as exc:
        raise _http_error(exc) from exc
    return _to_listing_out(row, ledger)


@router.get("/listings/{listing_id}/bids", response_model=List[BidOut])
def bid_history(
    listing_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    ledger: AuctionLedger = Depends(get_ledger),
):
    try:
        rows = ledger.get_bid_history(listing_id, limit=limit)
    except AuctionError as exc:
        raise _http_error(exc) from exc
    return [_to_bid_out(b) for b in rows]


@router.post("/bids", response_model=BidAccepted)
def place_bid(
    payload: BidIn,
    bidder_id: str = Depends(current_bidder),
    ledger: AuctionLedger = Depends(get_ledger),
):
    try:
        result = ledger.place_bid(payload.listing_id, bidder_id, payload.amount)
    except AuctionError as exc:
        log.info("Bid on %s by %s rejected: %s", payload.listing_id, bidder_id, exc.message)
        raise _http_error(exc) from exc
    return BidAccepted(
        bidId=result.bid.id,
        currentPrice=result.current_price,
        endAt=isoformat(result.end_at),
        reserveState=result.reserve_state.value,
        extended=result.extended,
    )


@router.post("/auto-bids", response_model=AutoBidOut, status_code=201)
def schedule_auto_bid(
    payload: AutoBidIn,
    bidder_id: str = Depends(current_bidder),
    ledger: AuctionLedger = Depends(get_ledger),
):
    try:
        row = ledger.schedule_auto_bid(
            payload.listing_id, bidder_id, payload.max_amount, payload.trigger_seconds
        )
    except AuctionError as exc:
        raise _http_error(exc) from exc
    return _to_auto_bid_out(row)


@router.get("/fees/estimate", response_model=FeeEstimateOut)
def fees_estimate(
    price: Optional[str] = Query(None), settings: Settings = Depends(get_settings)
):
    return calc_fees(parse_price(price), settings.fees).as_dict()


@router.get("/fees/structure")
def fees_structure(settings: Settings = Depends(get_settings)):
    return fee_structure(settings.fees)
