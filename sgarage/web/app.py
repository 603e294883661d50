"""sgarage web service

Run:

    uvicorn sgarage.web.app:create_app --factory --reload

or ``sgarage serve``. Configuration comes from ``sgarage.toml`` (override the
path with ``SGARAGE_CONFIG``).
"""

from __future__ import annotations
import asyncio, logging, os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine
from starlette.middleware.cors import CORSMiddleware

from sgarage.core import utcnow
from sgarage.db import init_db, make_engine
from sgarage.ledger import AuctionLedger
from sgarage.realtime import Hub
from sgarage.scheduler import start_scheduler, stop_scheduler
from sgarage.settings import Settings, load_settings
from .api import router as api_router
from .streams import sse_router, ws_router

if os.getenv("DEBUG_WEB", "0") == "1":
    import debugpy

    debugpy.listen(("0.0.0.0", 5679))
    if os.getenv("DEBUGPY_WAIT", "0") == "1":
        debugpy.wait_for_client()

LOG_LEVEL = os.getenv("SGARAGE_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s -- %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sgarage.web")


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or load_settings()
    engine = engine or make_engine(settings.database.url)
    hub = Hub(queue_size=settings.realtime.queue_size)
    ledger = AuctionLedger(engine, settings.auction, publish=hub.broadcast, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        ledger.seed(settings)
        hub.bind(asyncio.get_running_loop())
        scheduler = start_scheduler(ledger, settings.auction)
        logger.info("sgarage web started")
        yield
        stop_scheduler(scheduler)
        hub.bind(None)

    app = FastAPI(
        title="sgarage API",
        version="1.0.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    prefix = settings.server.api_prefix.rstrip("/")
    app.include_router(api_router, prefix=prefix)
    app.include_router(sse_router, prefix=prefix)
    app.include_router(ws_router)
    return app
