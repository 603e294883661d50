import asyncio
import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from sgarage.ledger import AuctionLedger
from sgarage.settings import AuctionCfg

log = logging.getLogger("sgarage.scheduler")

CLOSE_SWEEP_JOB_ID = "close-sweep"
AUTO_BID_JOB_ID = "auto-bid"


def make_close_sweep(ledger: AuctionLedger):
    async def sweep():
        try:
            closed = await asyncio.to_thread(ledger.close_expired)
        except Exception:
            log.exception("Close sweep failed")
            return
        if closed:
            log.info("Close sweep finished %d auction(s): %s", len(closed), ", ".join(closed))

    return sweep


def make_auto_bid_runner(ledger: AuctionLedger):
    async def fire():
        try:
            placed = await asyncio.to_thread(ledger.fire_due_auto_bids)
        except Exception:
            log.exception("Auto-bid run failed")
            return
        if placed:
            log.info("Auto-bid run placed %d bid(s)", len(placed))

    return fire


def _add_interval(scheduler: AsyncIOScheduler, func, seconds: int, job_id: str) -> None:
    scheduler.add_job(
        func,
        "interval",
        seconds=seconds,
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=1),
        id=job_id,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=30,
    )


def start_scheduler(ledger: AuctionLedger, cfg: AuctionCfg) -> AsyncIOScheduler | None:
    """Start the interval jobs that fire auto-bids and settle ended auctions.

    Must be called from inside the running event loop. A job whose interval is
    0 is not registered; returns None when both are disabled.
    """
    if cfg.close_sweep_seconds <= 0 and cfg.auto_bid_seconds <= 0:
        log.info("Scheduler disabled")
        return None
    scheduler = AsyncIOScheduler(timezone="UTC")
    if cfg.auto_bid_seconds > 0:
        _add_interval(scheduler, make_auto_bid_runner(ledger), cfg.auto_bid_seconds, AUTO_BID_JOB_ID)
    if cfg.close_sweep_seconds > 0:
        _add_interval(scheduler, make_close_sweep(ledger), cfg.close_sweep_seconds, CLOSE_SWEEP_JOB_ID)
    scheduler.start()
    log.info(
        "APScheduler started (close sweep %ss, auto-bids %ss)",
        cfg.close_sweep_seconds,
        cfg.auto_bid_seconds,
    )
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
