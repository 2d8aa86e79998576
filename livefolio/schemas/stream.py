from typing import Literal

from pydantic import BaseModel, Field

ReadyState = Literal["CONNECTING", "OPEN", "CLOSED"]


class PriceEvent(BaseModel):
    type: Literal["price"] = "price"
    symbol: str = Field(min_length=1)
    price: float = Field(ge=0, allow_inf_nan=False)
    percent_change: float = Field(default=0.0, allow_inf_nan=False)
    timestamp: int | None = None


class HeartbeatEvent(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"


class StreamSession(BaseModel):
    backoff_ms: float
    attempt: int = 0
    subscribed: set[str] = Field(default_factory=set)


class SubscribeRequest(BaseModel):
    symbols: list[str]
