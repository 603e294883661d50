import logging
from logging.handlers import RotatingFileHandler
from typing import Annotated, Optional
import os
import typer

from sgarage.core import AuctionError, isoformat
from sgarage.db import init_db, make_engine
from sgarage.fees import calc_fees
from sgarage.ledger import AuctionLedger
from sgarage.settings import load_settings

if os.getenv("DEBUG_CLI", "0") == "1":
    import debugpy

    debugpy.listen(("0.0.0.0", 5679))
    if os.getenv("DEBUGPY_WAIT", "0") == "1":
        debugpy.wait_for_client()


# ---------------------------------------------------------------------------
# Global logging configuration - set once at import time
# ---------------------------------------------------------------------------
LOG_LEVEL = logging.DEBUG if os.getenv("SGARAGE_DEBUG", "0") == "1" else logging.INFO
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s -- %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
file_handler = RotatingFileHandler(
    "./sgarage.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8", delay=True
)
file_handler.setLevel(LOG_LEVEL)
file_handler.setFormatter(
    logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s -- %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
)

root = logging.getLogger()  # root logger
root.addHandler(file_handler)


app = typer.Typer(help="sgarage CLI")


def _ledger() -> AuctionLedger:
    settings = load_settings()
    engine = make_engine(settings.database.url)
    init_db(engine)
    return AuctionLedger(engine, settings.auction)


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option(help="Bind address.")] = None,
    port: Annotated[Optional[int], typer.Option(help="Bind port.")] = None,
):
    """Run the HTTP + realtime server."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "sgarage.web.app:create_app",
        factory=True,
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_config=None,
    )


@app.command()
def seed():
    """Create the configured listings (and the demo lot on an empty ledger)."""
    created = _ledger().seed(load_settings())
    for row in created:
        print(f"{row.id:12} | ends {isoformat(row.end_at)} | ¥{row.current_price:,}")


@app.command()
def ls():
    """Show every listing with its current price."""
    ledger = _ledger()
    now = ledger.now()
    for row in ledger.list_listings():
        state = "closed" if row.is_ended(now) else "open"
        print(
            f"{row.id:12} | {row.title[:32]:32} | ¥{row.current_price:>12,} | "
            f"{row.reserve_state.value:7} | {state:6} | {isoformat(row.end_at)}"
        )


@app.command()
def history(
    listing_id: str,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of bids.")] = 20,
):
    """Show recent bids on a listing."""
    try:
        bids = _ledger().get_bid_history(listing_id, limit=limit)
    except AuctionError as exc:
        typer.echo(exc.message, err=True)
        raise typer.Exit(1)
    for b in bids:
        print(f"{b.placed_at:%H:%M:%S} | {b.bidder_id[:20]:20} | ¥{b.amount:,}")


@app.command()
def bid(
    listing_id: str,
    amount: int,
    bidder: Annotated[str, typer.Option("--bidder", "-b", help="Bidder id.")] = "cli",
):
    """Place a bid directly against the ledger (no realtime fan-out)."""
    try:
        result = _ledger().place_bid(listing_id, bidder, amount)
    except AuctionError as exc:
        typer.echo(exc.message, err=True)
        raise typer.Exit(1)
    suffix = " (soft close: extended)" if result.extended else ""
    print(
        f"accepted ¥{result.current_price:,} | ends {isoformat(result.end_at)} | "
        f"reserve {result.reserve_state.value}{suffix}"
    )


@app.command()
def autobid(
    listing_id: str,
    max_amount: int,
    bidder: Annotated[str, typer.Option("--bidder", "-b", help="Bidder id.")] = "cli",
    trigger: Annotated[int, typer.Option("--trigger", "-t", help="Seconds before close.")] = 60,
):
    """Arm a snipe that bids the current minimum shortly before the close."""
    try:
        row = _ledger().schedule_auto_bid(listing_id, bidder, max_amount, trigger)
    except (AuctionError, ValueError) as exc:
        typer.echo(getattr(exc, "message", str(exc)), err=True)
        raise typer.Exit(1)
    print(f"auto-bid #{row.id} armed | up to ¥{row.max_amount:,} | {row.trigger_seconds}s before close")


@app.command()
def settle():
    """Fire due auto-bids, then close every ended auction."""
    ledger = _ledger()
    placed = ledger.fire_due_auto_bids()
    for result in placed:
        print(f"auto-bid placed ¥{result.current_price:,} on {result.bid.listing_id}")
    for listing_id in ledger.close_expired():
        row = ledger.get_listing(listing_id)
        print(f"{listing_id:12} | {row.end_status:6} | ¥{row.current_price:,} | {row.winning_bidder_id or '-'}")


@app.command()
def fees(price: int):
    """Estimate buyer's premium and fees for a hammer price."""
    est = calc_fees(price, load_settings().fees)
    print(f"Price              ¥{est.price:>12,}")
    print(f"Buyer's premium    ¥{est.buyers_premium:>12,}")
    print(f"Documentation fee  ¥{est.documentation_fee:>12,}")
    print(f"Total              ¥{est.total_with_fees:>12,}")


if __name__ == "__main__":
    app()
