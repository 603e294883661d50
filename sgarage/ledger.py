"""
Authoritative listing state and the soft-close bidding engine.

Every mutation of a listing goes through :meth:`AuctionLedger.place_bid` (or the
one-way settlement performed by :meth:`AuctionLedger.close_expired`). Writes are
optimistic: the listing row is only updated if it still holds the price, bid
count and end time the bid was validated against, otherwise the whole attempt
is re-read and re-validated with exponential backoff (10 ms, 20 ms, 40 ms, …).
That keeps bids serialised across processes sharing the database; inside one
process a per-listing lock additionally keeps writers from spinning on each
other and keeps published events in bid order.

Accepted bids and extensions are handed to ``publish`` (normally
:meth:`sgarage.realtime.Hub.broadcast`). Publishing is fire-and-forget; a
failing publisher is logged and never undoes an accepted bid.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from sgarage.core import (
    AuctionEnded,
    AutoBidStatus,
    BidConflict,
    BidTooLow,
    EndStatus,
    ListingNotFound,
    ListingStatus,
    Publisher,
    ReserveState,
    coerce_amount,
    isoformat,
    reserve_state_for,
    utcnow,
)
from sgarage.db import AutoBid, Bid, Listing
from sgarage.settings import AuctionCfg, Settings

log = logging.getLogger("sgarage.ledger")

DEMO_LISTING_ID = "demo-1"

T = TypeVar("T")


@dataclass(frozen=True)
class BidResult:
    bid: Bid
    current_price: int
    end_at: datetime
    reserve_state: ReserveState
    extended: bool


def _is_locked(exc: OperationalError) -> bool:
    return "locked" in str(exc.orig).lower()


class AuctionLedger:
    def __init__(
        self,
        engine: Engine,
        auction: Optional[AuctionCfg] = None,
        publish: Optional[Publisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._cfg = auction or AuctionCfg()
        self._publish = publish
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, listing_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(listing_id)
            if lock is None:
                lock = self._locks[listing_id] = threading.Lock()
            return lock

    # ---- optimistic write helpers ----------------------------------------

    def _retry(self, listing_id: str, attempt: Callable[[], Optional[T]]) -> T:
        """Run ``attempt`` until it returns something other than None."""
        backoff_ms = 10
        for n in range(self._cfg.max_retries + 1):
            outcome = attempt()
            if outcome is not None:
                return outcome
            if n < self._cfg.max_retries:
                log.debug("Write conflict on %s, retrying in %d ms", listing_id, backoff_ms)
                time.sleep(backoff_ms / 1000)
                backoff_ms *= 2
        raise BidConflict(listing_id)

    @staticmethod
    def _compare_and_set(s: Session, seen: Listing, **values) -> bool:
        """Update the listing only if it still matches the row we validated."""
        stmt = (
            update(Listing)
            .where(
                Listing.id == seen.id,
                Listing.status == ListingStatus.OPEN.value,
                Listing.current_price == seen.current_price,
                Listing.bid_count == seen.bid_count,
                Listing.end_at == seen.end_at,
            )
            .values(**values)
        )
        try:
            swapped = s.connection().execute(stmt).rowcount == 1
        except OperationalError as exc:
            if not _is_locked(exc):
                raise
            swapped = False
        if not swapped:
            s.rollback()
        return swapped

    @staticmethod
    def _commit(s: Session) -> bool:
        try:
            s.commit()
        except OperationalError as exc:
            if not _is_locked(exc):
                raise
            s.rollback()
            return False
        return True

    # ---- seeding -------------------------------------------------------

    def create_listing(
        self,
        listing_id: str,
        starting_price: int,
        end_at: datetime,
        min_increment: int = 250,
        reserve_price: Optional[int] = None,
        title: str = "",
    ) -> Listing:
        if min_increment < 1:
            raise ValueError("min_increment must be at least 1")
        with self._lock_for(listing_id), Session(self._engine) as s:
            existing = s.get(Listing, listing_id)
            if existing:
                log.debug("Listing %s already exists, leaving it untouched", listing_id)
                return existing
            row = Listing(
                id=listing_id,
                title=title,
                starting_price=starting_price,
                current_price=starting_price,
                min_increment=min_increment,
                end_at=end_at,
                reserve_price=reserve_price,
            )
            s.add(row)
            s.commit()
            s.refresh(row)
            log.info("Created listing %s ending %s", listing_id, isoformat(row.end_at))
            return row

    def seed(self, settings: Settings) -> List[Listing]:
        now = self._clock()
        created = [
            self.create_listing(
                cfg.id,
                starting_price=cfg.starting_price,
                end_at=now + timedelta(seconds=cfg.duration_seconds),
                min_increment=cfg.min_increment,
                reserve_price=cfg.reserve_price,
                title=cfg.title,
            )
            for cfg in settings.listing
        ]
        if settings.seed_demo and not self.list_listings():
            created.append(
                self.create_listing(
                    DEMO_LISTING_ID,
                    starting_price=10_000,
                    end_at=now + timedelta(minutes=15),
                    min_increment=250,
                    reserve_price=12_000,
                    title="1990 Nissan Skyline GT-R (R32)",
                )
            )
        return created

    # ---- reads ---------------------------------------------------------

    def get_listing(self, listing_id: str) -> Listing:
        with Session(self._engine) as s:
            listing = s.get(Listing, listing_id)
            if listing is None:
                raise ListingNotFound(listing_id)
            return listing

    def list_listings(self) -> List[Listing]:
        with Session(self._engine) as s:
            return list(s.exec(select(Listing).order_by(Listing.end_at)).all())

    def get_bid_history(self, listing_id: str, limit: Optional[int] = None) -> List[Bid]:
        """Bids for a listing, most recent first."""
        with Session(self._engine) as s:
            if s.get(Listing, listing_id) is None:
                raise ListingNotFound(listing_id)
            stmt = (
                select(Bid)
                .where(Bid.listing_id == listing_id)
                .order_by(Bid.placed_at.desc(), Bid.id)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(s.exec(stmt).all())

    def now(self) -> datetime:
        return self._clock()

    # ---- bidding -------------------------------------------------------

    def place_bid(self, listing_id: str, bidder_id: str, amount: object) -> BidResult:
        value = coerce_amount(amount)
        with self._lock_for(listing_id):
            result, events = self._retry(
                listing_id, lambda: self._try_place(listing_id, bidder_id, value)
            )
            # still under the lock so subscribers see events in bid order
            for event in events:
                self._emit(event, listing_id)
        return result

    def _try_place(
        self, listing_id: str, bidder_id: str, value: int
    ) -> Optional[Tuple[BidResult, List[dict]]]:
        with Session(self._engine) as s:
            listing = s.get(Listing, listing_id)
            if listing is None:
                raise ListingNotFound(listing_id)

            # one timestamp for the ended check, placed_at and the extension
            now = self._clock()
            if listing.is_ended(now):
                raise AuctionEnded(listing_id)

            minimum = listing.current_price + listing.min_increment
            if value < minimum:
                raise BidTooLow(minimum)

            placed_at = now
            if listing.last_bid_at is not None and placed_at <= listing.last_bid_at:
                placed_at = listing.last_bid_at + timedelta(microseconds=1)

            end_at = listing.end_at
            extended = False
            seconds_left = (listing.end_at - now).total_seconds()
            if seconds_left <= self._cfg.extend_window_seconds:
                new_end = now + timedelta(seconds=self._cfg.extend_amount_seconds)
                if new_end > end_at:
                    end_at = new_end
                    extended = True

            reserve_price = listing.reserve_price
            bid_count = listing.bid_count + 1
            if not self._compare_and_set(
                s,
                listing,
                current_price=value,
                bid_count=bid_count,
                end_at=end_at,
                extension_count=listing.extension_count + int(extended),
                last_bid_at=placed_at,
                high_bidder_id=bidder_id,
            ):
                return None

            bid = Bid(listing_id=listing_id, bidder_id=bidder_id, amount=value, placed_at=placed_at)
            s.add(bid)
            if not self._commit(s):
                return None
            s.refresh(bid)

        reserve_state = reserve_state_for(value, reserve_price)
        log.info(
            "Bid %s on %s by %s accepted: ¥%s%s",
            bid.id,
            listing_id,
            bidder_id,
            f"{value:,}",
            f" (extended to {isoformat(end_at)})" if extended else "",
        )
        events = [
            {
                "type": "bid:placed",
                "listingId": listing_id,
                "price": value,
                "endAt": isoformat(end_at),
                "reserveState": reserve_state.value,
                "bidCount": bid_count,
            }
        ]
        if extended:
            events.append(
                {"type": "auction:extended", "listingId": listing_id, "endAt": isoformat(end_at)}
            )
        result = BidResult(
            bid=bid,
            current_price=value,
            end_at=end_at,
            reserve_state=reserve_state,
            extended=extended,
        )
        return result, events

    # ---- settlement ----------------------------------------------------

    def close_expired(self) -> List[str]:
        """Write the terminal ``closed`` state and sold/unsold outcome of ended listings."""
        now = self._clock()
        with Session(self._engine) as s:
            due = s.exec(
                select(Listing.id).where(
                    Listing.status == ListingStatus.OPEN.value, Listing.end_at <= now
                )
            ).all()
        closed: List[str] = []
        for listing_id in due:
            with self._lock_for(listing_id):
                try:
                    events = self._retry(listing_id, lambda: self._try_close(listing_id, now))
                except BidConflict:
                    log.warning("Could not close %s this round, will retry", listing_id)
                    continue
                if events:
                    closed.append(listing_id)
                for event in events:
                    self._emit(event, listing_id)
        return closed

    def _try_close(self, listing_id: str, now: datetime) -> Optional[List[dict]]:
        with Session(self._engine) as s:
            listing = s.get(Listing, listing_id)
            # a late bid may have extended it since the scan
            if listing is None or listing.status != ListingStatus.OPEN.value:
                return []
            if listing.end_at > now:
                return []
            reserve_state = listing.reserve_state
            sold = listing.bid_count > 0 and reserve_state is not ReserveState.NOT_MET
            end_status = EndStatus.SOLD if sold else EndStatus.UNSOLD
            winner = listing.high_bidder_id if sold else None
            final_price = listing.current_price
            extension_count = listing.extension_count
            if not self._compare_and_set(
                s,
                listing,
                status=ListingStatus.CLOSED.value,
                closed_at=now,
                end_status=end_status.value,
                winning_bidder_id=winner,
            ):
                return None
            if not self._commit(s):
                return None

        log.info(
            "Closed %s %s at ¥%s (reserve %s, winner %s)",
            listing_id,
            end_status.value,
            f"{final_price:,}",
            reserve_state.value,
            winner or "-",
        )
        return [
            {
                "type": "auction:closed",
                "listingId": listing_id,
                "finalPrice": final_price,
                "reserveState": reserve_state.value,
                "endStatus": end_status.value,
                "winningBidderId": winner,
                "extensionCount": extension_count,
            }
        ]

    # ---- auto-bids -----------------------------------------------------

    def schedule_auto_bid(
        self,
        listing_id: str,
        bidder_id: str,
        max_amount: object,
        trigger_seconds: int = 60,
    ) -> AutoBid:
        """Arm a snipe: bid the current minimum, up to ``max_amount``, near the close."""
        value = coerce_amount(max_amount)
        if trigger_seconds < 1:
            raise ValueError("trigger_seconds must be at least 1")
        with Session(self._engine) as s:
            listing = s.get(Listing, listing_id)
            if listing is None:
                raise ListingNotFound(listing_id)
            if listing.is_ended(self._clock()):
                raise AuctionEnded(listing_id)
            minimum = listing.current_price + listing.min_increment
            if value < minimum:
                raise BidTooLow(minimum)
            row = AutoBid(
                listing_id=listing_id,
                bidder_id=bidder_id,
                max_amount=value,
                trigger_seconds=trigger_seconds,
                created_at=self._clock(),
            )
            s.add(row)
            s.commit()
            s.refresh(row)
            log.info(
                "Auto-bid %s armed on %s by %s up to ¥%s, %ss before close",
                row.id,
                listing_id,
                bidder_id,
                f"{value:,}",
                trigger_seconds,
            )
            return row

    def get_auto_bid(self, auto_bid_id: int) -> Optional[AutoBid]:
        with Session(self._engine) as s:
            return s.get(AutoBid, auto_bid_id)

    def list_auto_bids(self, listing_id: str) -> List[AutoBid]:
        with Session(self._engine) as s:
            stmt = select(AutoBid).where(AutoBid.listing_id == listing_id).order_by(AutoBid.id)
            return list(s.exec(stmt).all())

    def fire_due_auto_bids(self) -> List[BidResult]:
        """Place every armed auto-bid whose listing is inside its trigger window."""
        now = self._clock()
        with Session(self._engine) as s:
            rows = s.exec(
                select(AutoBid, Listing)
                .where(
                    AutoBid.listing_id == Listing.id,
                    AutoBid.status == AutoBidStatus.SCHEDULED.value,
                )
                .order_by(AutoBid.id)
            ).all()
            due = [
                auto.id
                for auto, listing in rows
                if listing.is_ended(now)
                or listing.end_at - timedelta(seconds=auto.trigger_seconds) <= now
            ]
        results: List[BidResult] = []
        for auto_bid_id in due:
            result = self._fire(auto_bid_id)
            if result is not None:
                results.append(result)
        return results

    def _claim(self, auto_bid_id: int) -> Optional[AutoBid]:
        """Move an auto-bid from scheduled to firing; None if someone else has it."""
        with Session(self._engine) as s:
            stmt = (
                update(AutoBid)
                .where(
                    AutoBid.id == auto_bid_id,
                    AutoBid.status == AutoBidStatus.SCHEDULED.value,
                )
                .values(status=AutoBidStatus.FIRING.value)
            )
            try:
                claimed = s.connection().execute(stmt).rowcount == 1
            except OperationalError as exc:
                if not _is_locked(exc):
                    raise
                claimed = False
            if not claimed or not self._commit(s):
                return None
            return s.get(AutoBid, auto_bid_id)

    def _fire(self, auto_bid_id: int) -> Optional[BidResult]:
        auto = self._claim(auto_bid_id)
        if auto is None:
            return None
        outcome = AutoBidStatus.SCHEDULED
        result: Optional[BidResult] = None
        try:
            listing = self.get_listing(auto.listing_id)
            minimum = listing.current_price + listing.min_increment
            if listing.is_ended(self._clock()):
                outcome = AutoBidStatus.EXPIRED
            elif listing.high_bidder_id == auto.bidder_id:
                # already leading; stay armed in case of an outbid before the close
                pass
            elif minimum > auto.max_amount:
                log.info("Auto-bid %s priced out at ¥%s", auto.id, f"{minimum:,}")
                outcome = AutoBidStatus.EXPIRED
            else:
                result = self.place_bid(auto.listing_id, auto.bidder_id, minimum)
                outcome = AutoBidStatus.EXECUTED
        except AuctionEnded:
            outcome = AutoBidStatus.EXPIRED
        except (BidTooLow, BidConflict) as exc:
            log.info("Auto-bid %s lost a race (%s), re-arming", auto.id, exc.message)
        finally:
            self._finish(auto.id, outcome, result)
        return result

    def _finish(
        self, auto_bid_id: int, outcome: AutoBidStatus, result: Optional[BidResult]
    ) -> None:
        with Session(self._engine) as s:
            row = s.get(AutoBid, auto_bid_id)
            if row is None:
                return
            row.status = outcome.value
            if result is not None:
                row.bid_id = result.bid.id
                row.executed_at = result.bid.placed_at
            s.add(row)
            s.commit()

    def _emit(self, event: dict, listing_id: str) -> None:
        if self._publish is None:
            return
        try:
            self._publish(event, listing_id)
        except Exception:
            log.exception("Publishing %s for %s failed", event.get("type"), listing_id)
