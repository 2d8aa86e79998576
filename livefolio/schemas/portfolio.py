from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Transaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["BUY", "SELL"]
    symbol: str
    quantity: float = Field(gt=0)
    price_per_share: float = Field(ge=0, alias="pricePerShare")
    executed_at: datetime = Field(alias="executedAt")

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return str(value).upper()

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


class PurchaseLot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float = Field(gt=0)
    price_per_share: float = Field(ge=0)
    purchased_at: datetime
    market_has_opened_since: bool = False


class HoldingSummary(BaseModel):
    symbol: str
    total_quantity: float
    total_cost: float
    avg_cost_basis: float
    last_price: float
    market_value: float
    pnl: float
    pnl_percent: float
    shares_with_session_signal: float
    todays_change_contribution: float


class PortfolioSummary(BaseModel):
    total_value: float
    total_cost: float
    total_pnl: float
    total_pnl_percent: float
    total_change: float
    today_change_percent: float
    cash_balance: float = 0.0
    total_portfolio_value: float


class MarketStatus(BaseModel):
    is_open: bool
    minutes_until_open: int | None = None
    minutes_until_close: int | None = None


class ValuationRequest(BaseModel):
    transactions: list[Transaction]
    cash_balance: float = 0.0
    sell_policy: Literal["ignore", "average", "fifo"] = "ignore"


class ValuationResponse(BaseModel):
    holdings: list[HoldingSummary]
    summary: PortfolioSummary
