# sgarage/web/streams.py
from __future__ import annotations
import asyncio, json, logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from sgarage.core import AuctionError, isoformat
from sgarage.ledger import AuctionLedger
from sgarage.realtime import Hub, Subscriber
from .api import get_ledger

log = logging.getLogger("sgarage.web.streams")

ws_router = APIRouter()
sse_router = APIRouter(tags=["auction"])


def get_hub(request: Request) -> Hub:
    return request.app.state.hub


def sse_message(event: dict) -> str:
    """One Server-Sent Events frame; the event name is the message type."""
    lines = []
    if event.get("type"):
        lines.append(f"event: {event['type']}")
    lines.append(f"data: {json.dumps(event, separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


# ---- WebSocket -------------------------------------------------------------


async def _pump(websocket: WebSocket, sub: Subscriber, hub: Hub):
    """Single writer for the socket: drains the subscriber queue."""
    try:
        while True:
            msg = await sub.next_message()
            await websocket.send_json(msg)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.warning("Dropping realtime client %s: %s", sub.id, exc)
        hub.disconnect(sub)


async def _handle(hub: Hub, sub: Subscriber, message: dict, ledger: AuctionLedger):
    kind = message.get("type")
    listing_id = message.get("listingId")
    if kind in ("subscribe", "subscribe_listing") and isinstance(listing_id, str):
        hub.subscribe(sub, listing_id)
        reply = {"type": "subscribed", "listingId": listing_id}
        try:
            listing = await asyncio.to_thread(ledger.get_listing, listing_id)
        except AuctionError:
            pass
        else:
            reply.update(
                price=listing.current_price,
                endAt=isoformat(listing.end_at),
                reserveState=listing.reserve_state.value,
            )
        sub.deliver(reply)
    elif kind in ("unsubscribe", "unsubscribe_listing") and isinstance(listing_id, str):
        hub.unsubscribe(sub, listing_id)
        sub.deliver({"type": "unsubscribed", "listingId": listing_id})
    elif kind == "ping":
        sub.deliver({"type": "pong"})
    else:
        log.debug("Ignoring realtime message %r from %s", kind, sub.id)


@ws_router.websocket("/ws")
async def realtime_ws(websocket: WebSocket):
    hub: Hub = websocket.app.state.hub
    ledger: AuctionLedger = websocket.app.state.ledger
    sub = hub.connect()
    writer = None
    try:
        await websocket.accept()
        hub.open(sub)
        await websocket.send_json(
            {"type": "connection_established", "timestamp": isoformat(ledger.now())}
        )
        writer = asyncio.create_task(_pump(websocket, sub, hub))
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                log.warning("Realtime message parsing error from %s", sub.id)
                continue
            if isinstance(message, dict):
                await _handle(hub, sub, message, ledger)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(sub)
        if writer is not None:
            writer.cancel()


# ---- Server-Sent Events ----------------------------------------------------


def snapshot_event(listing) -> dict:
    return {
        "type": "snapshot",
        "listingId": listing.id,
        "price": listing.current_price,
        "endAt": isoformat(listing.end_at),
        "reserveState": listing.reserve_state.value,
    }


async def _event_generator(hub: Hub, listing_id: str, snapshot: dict) -> AsyncIterator[str]:
    # registered only once the response starts streaming, released when it stops
    sub = hub.connect()
    try:
        hub.open(sub)
        hub.subscribe(sub, listing_id)
        # current state first so the client can render before the next bid
        yield sse_message(snapshot)
        while True:
            yield sse_message(await sub.next_message())
    finally:
        hub.disconnect(sub)


@sse_router.get("/listings/{listing_id}/events")
async def listing_events(
    listing_id: str,
    hub: Hub = Depends(get_hub),
    ledger: AuctionLedger = Depends(get_ledger),
):
    try:
        listing = await asyncio.to_thread(ledger.get_listing, listing_id)
    except AuctionError as exc:
        raise HTTPException(exc.status_code, exc.message) from exc

    return StreamingResponse(
        _event_generator(hub, listing_id, snapshot_event(listing)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
