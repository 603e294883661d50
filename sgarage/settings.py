from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field
import tomllib
import os


class AuctionCfg(BaseModel):
    extend_window_seconds: int = Field(30, ge=0)
    extend_amount_seconds: int = Field(120, ge=0)
    # 0 disables the background close sweep / auto-bid runner
    close_sweep_seconds: int = Field(5, ge=0)
    auto_bid_seconds: int = Field(5, ge=0)
    # optimistic write retries before giving up with a conflict
    max_retries: int = Field(5, ge=0)


class FeeTierCfg(BaseModel):
    up_to: Optional[int] = None
    rate_bps: int = Field(ge=0)


class FeesCfg(BaseModel):
    documentation_fee: int = Field(5000, ge=0)
    tiers: List[FeeTierCfg] = Field(
        default_factory=lambda: [
            FeeTierCfg(up_to=250_000, rate_bps=1000),
            FeeTierCfg(up_to=1_000_000, rate_bps=500),
            FeeTierCfg(up_to=None, rate_bps=200),
        ]
    )


class RealtimeCfg(BaseModel):
    queue_size: int = Field(100, ge=1)


class DatabaseCfg(BaseModel):
    url: str = "sqlite:///./data/sgarage.sqlite"


class ServerCfg(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    api_prefix: str = "/api"
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])


class ListingCfg(BaseModel):
    id: str
    title: str = ""
    starting_price: int = Field(ge=0)
    min_increment: int = Field(250, ge=1)
    duration_seconds: int = Field(900, ge=1)
    reserve_price: Optional[int] = Field(None, ge=0)


class Settings(BaseModel):
    auction: AuctionCfg = AuctionCfg()
    fees: FeesCfg = FeesCfg()
    realtime: RealtimeCfg = RealtimeCfg()
    database: DatabaseCfg = DatabaseCfg()
    server: ServerCfg = ServerCfg()
    seed_demo: bool = True
    listing: List[ListingCfg] = Field(default_factory=list)


def load_settings() -> Settings:
    cfg_path = Path(os.getenv("SGARAGE_CONFIG", "sgarage.toml"))
    raw = tomllib.loads(cfg_path.read_text()) if cfg_path.exists() else {}
    return Settings.model_validate(raw)
