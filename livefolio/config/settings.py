import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field


def _split_symbols(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


class Settings(BaseModel):
    API_BASE_URL: str
    PRICE_SOURCE: Literal["stream", "polling"] = "stream"
    STREAM_TRANSPORT: Literal["sse", "websocket"] = "sse"
    STREAM_SYMBOLS: list[str] = Field(default_factory=list)
    ACCESS_TOKEN: str | None = None
    MARKET_TIMEZONE: str = "America/New_York"
    RECONNECT_INITIAL_MS: float = Field(default=800.0, gt=0)
    RECONNECT_MULTIPLIER: float = Field(default=1.5, ge=1.0)
    RECONNECT_MAX_MS: float = Field(default=5000.0, gt=0)
    HEARTBEAT_TIMEOUT_SEC: float | None = 30.0
    ANIMATION_WINDOW_MS: float = Field(default=1500.0, gt=0)
    POLL_INTERVAL_SEC: float = Field(default=15.0, gt=0)

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "API_BASE_URL": os.getenv("LIVEFOLIO_API_BASE_URL"),
            "PRICE_SOURCE": os.getenv("LIVEFOLIO_PRICE_SOURCE"),
            "STREAM_TRANSPORT": os.getenv("LIVEFOLIO_STREAM_TRANSPORT"),
            "STREAM_SYMBOLS": _split_symbols(os.getenv("LIVEFOLIO_STREAM_SYMBOLS")),
            "ACCESS_TOKEN": os.getenv("LIVEFOLIO_ACCESS_TOKEN") or None,
            "MARKET_TIMEZONE": os.getenv("LIVEFOLIO_MARKET_TIMEZONE"),
            "RECONNECT_INITIAL_MS": os.getenv("LIVEFOLIO_RECONNECT_INITIAL_MS"),
            "RECONNECT_MULTIPLIER": os.getenv("LIVEFOLIO_RECONNECT_MULTIPLIER"),
            "RECONNECT_MAX_MS": os.getenv("LIVEFOLIO_RECONNECT_MAX_MS"),
            "HEARTBEAT_TIMEOUT_SEC": os.getenv("LIVEFOLIO_HEARTBEAT_TIMEOUT_SEC"),
            "ANIMATION_WINDOW_MS": os.getenv("LIVEFOLIO_ANIMATION_WINDOW_MS"),
            "POLL_INTERVAL_SEC": os.getenv("LIVEFOLIO_POLL_INTERVAL_SEC"),
        }
        # unset optional vars fall back to field defaults
        return cls.model_validate({k: v for k, v in raw.items() if v is not None})


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
