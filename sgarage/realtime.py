# sgarage/realtime.py
from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Dict, Optional, Set

log = logging.getLogger("sgarage.realtime")


class ConnState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Subscriber:
    """One viewer connection with its own bounded outbound queue."""

    def __init__(self, conn_id: str, queue_size: int = 100):
        self.id = conn_id
        self.state = ConnState.CONNECTING
        self.listing_id: Optional[str] = None
        self.queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=queue_size)

    def deliver(self, message: dict) -> bool:
        if self.state is not ConnState.OPEN:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # drop oldest until we can insert (simple backpressure)
            try:
                self.queue.get_nowait()
                self.queue.put_nowait(message)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                return False
        return True

    async def next_message(self) -> dict:
        return await self.queue.get()


class Hub:
    """Per-listing publish/subscribe registry for live viewers.

    ``_listing_of`` maps connection id to its (single) listing and
    ``_by_listing`` is the reverse index used for targeted broadcasts.
    """

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._ids = itertools.count(1)
        self._subs: Dict[str, Subscriber] = {}
        self._listing_of: Dict[str, Optional[str]] = {}
        self._by_listing: Dict[str, Set[str]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        """Event loop that owns the subscriber queues."""
        self._loop = loop

    # ---- connection lifecycle ---------------------------------------------

    def connect(self) -> Subscriber:
        sub = Subscriber(f"conn-{next(self._ids)}", self._queue_size)
        self._subs[sub.id] = sub
        self._listing_of[sub.id] = None
        return sub

    def open(self, sub: Subscriber) -> None:
        if sub.state is ConnState.CONNECTING:
            sub.state = ConnState.OPEN
            log.info("Realtime client connected. Total clients: %d", len(self._subs))

    def disconnect(self, sub: Subscriber) -> None:
        if sub.state is ConnState.CLOSED:
            return
        sub.state = ConnState.CLOSED
        self._detach(sub.id)
        self._subs.pop(sub.id, None)
        self._listing_of.pop(sub.id, None)
        sub.listing_id = None
        log.info("Realtime client disconnected. Total clients: %d", len(self._subs))

    def client_count(self) -> int:
        return len(self._subs)

    # ---- subscriptions ----------------------------------------------------

    def subscribe(self, sub: Subscriber, listing_id: str) -> None:
        if sub.id not in self._subs:
            return
        self._detach(sub.id)
        self._listing_of[sub.id] = listing_id
        self._by_listing.setdefault(listing_id, set()).add(sub.id)
        sub.listing_id = listing_id

    def unsubscribe(self, sub: Subscriber, listing_id: str) -> None:
        if self._listing_of.get(sub.id) != listing_id:
            return
        self._detach(sub.id)
        self._listing_of[sub.id] = None
        sub.listing_id = None

    def subscribers_of(self, listing_id: str) -> Set[str]:
        return set(self._by_listing.get(listing_id, ()))

    def _detach(self, conn_id: str) -> None:
        current = self._listing_of.get(conn_id)
        if current is None:
            return
        members = self._by_listing.get(current)
        if members is not None:
            members.discard(conn_id)
            if not members:
                del self._by_listing[current]

    # ---- fan-out ----------------------------------------------------------

    def broadcast(self, event: dict, listing_id: Optional[str] = None) -> int:
        """Queue ``event`` for the listing's subscribers (everyone if no id).

        Never blocks and never raises; returns how many queues took it, or 0
        when the send was handed over to the bound loop from another thread.
        """
        loop = self._loop
        if loop is not None and not loop.is_closed() and not self._on_loop(loop):
            try:
                loop.call_soon_threadsafe(self._fanout, event, listing_id)
            except RuntimeError:
                log.warning("Event loop gone, dropping %s", event.get("type"))
            return 0
        return self._fanout(event, listing_id)

    @staticmethod
    def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _fanout(self, event: dict, listing_id: Optional[str]) -> int:
        if listing_id is None:
            targets = list(self._subs.values())
        else:
            targets = [
                self._subs[c] for c in self._by_listing.get(listing_id, ()) if c in self._subs
            ]
        delivered = 0
        for sub in targets:
            try:
                if sub.deliver(event):
                    delivered += 1
            except Exception as exc:
                log.warning("Delivery to %s failed: %s", sub.id, exc)
        return delivered
