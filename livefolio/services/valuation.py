from __future__ import annotations

from typing import Iterable, Mapping

from livefolio.schemas.portfolio import HoldingSummary, PortfolioSummary, PurchaseLot
from livefolio.schemas.quote import Quote
from livefolio.services.price_cache import PriceCache


def _percent(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator * 100


def compute_holding_summary(
    symbol: str,
    lots: Iterable[PurchaseLot],
    quote: Quote | None,
) -> HoldingSummary | None:
    """Value one symbol's lots at the cached quote; None when no shares are held.

    Only lots whose purchase has seen a market session contribute to today's
    change, since the feed's percent change covers the whole session.
    """
    lots = list(lots)
    total_quantity = sum(lot.quantity for lot in lots)
    if total_quantity <= 0:
        return None

    total_cost = sum(lot.quantity * lot.price_per_share for lot in lots)
    last = quote.last if quote is not None else 0.0
    percent_change = quote.percent_change if quote is not None else 0.0
    market_value = last * total_quantity
    pnl = market_value - total_cost

    session_shares = sum(lot.quantity for lot in lots if lot.market_has_opened_since)
    todays_change = last * session_shares * percent_change / 100 if session_shares > 0 else 0.0

    return HoldingSummary(
        symbol=symbol,
        total_quantity=total_quantity,
        total_cost=total_cost,
        avg_cost_basis=total_cost / total_quantity,
        last_price=last,
        market_value=market_value,
        pnl=pnl,
        pnl_percent=_percent(pnl, total_cost) if total_cost > 0 else 0.0,
        shares_with_session_signal=session_shares,
        todays_change_contribution=todays_change,
    )


def compute_portfolio_summary(
    holdings: Iterable[HoldingSummary | None],
    cash_balance: float = 0.0,
) -> PortfolioSummary:
    rows = [h for h in holdings if h is not None and h.total_quantity > 0]

    total_value = sum(h.market_value for h in rows)
    total_cost = sum(h.total_cost for h in rows)
    total_change = sum(h.todays_change_contribution for h in rows)
    total_pnl = total_value - total_cost

    return PortfolioSummary(
        total_value=total_value,
        total_cost=total_cost,
        total_pnl=total_pnl,
        total_pnl_percent=_percent(total_pnl, total_cost) if total_cost > 0 else 0.0,
        total_change=total_change,
        today_change_percent=_percent(total_change, total_value),
        cash_balance=cash_balance,
        total_portfolio_value=total_value + cash_balance,
    )


def value_portfolio(
    lots_by_symbol: Mapping[str, Iterable[PurchaseLot]],
    prices: PriceCache | Mapping[str, Quote],
    cash_balance: float = 0.0,
) -> tuple[list[HoldingSummary], PortfolioSummary]:
    """Snapshot valuation over every symbol in the ledger, sorted by symbol."""
    quotes = prices.snapshot() if isinstance(prices, PriceCache) else prices
    holdings = []
    for symbol in sorted(lots_by_symbol):
        summary = compute_holding_summary(symbol, lots_by_symbol[symbol], quotes.get(symbol))
        if summary is not None:
            holdings.append(summary)
    return holdings, compute_portfolio_summary(holdings, cash_balance=cash_balance)
