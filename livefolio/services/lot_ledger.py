from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Any, Callable, Iterable, Literal

from livefolio.schemas.portfolio import PurchaseLot, Transaction
from livefolio.services.market_hours import market_has_opened_since

SellPolicy = Literal["ignore", "average", "fifo"]
SELL_POLICIES = ("ignore", "average", "fifo")

LotsBySymbol = dict[str, list[PurchaseLot]]


def _lot_from(transaction: Transaction, now: datetime | None, opened_since: Callable[..., bool]) -> PurchaseLot:
    return PurchaseLot(
        symbol=transaction.symbol,
        quantity=transaction.quantity,
        price_per_share=transaction.price_per_share,
        purchased_at=transaction.executed_at,
        market_has_opened_since=opened_since(transaction.executed_at, now),
    )


def _consume_fifo(lots: list[PurchaseLot], quantity: float) -> list[PurchaseLot]:
    remaining = quantity
    queue = deque(lots)
    while queue and remaining > 0:
        head = queue[0]
        if head.quantity <= remaining:
            remaining -= head.quantity
            queue.popleft()
        else:
            queue[0] = head.model_copy(update={"quantity": head.quantity - remaining})
            remaining = 0
    return list(queue)


def _reduce_at_average_cost(lots: list[PurchaseLot], quantity: float) -> list[PurchaseLot]:
    held = sum(lot.quantity for lot in lots)
    sold = min(quantity, held)
    remaining = held - sold
    if remaining <= 0:
        return []
    # every lot shrinks by the same fraction, so the average cost is unchanged
    return [lot.model_copy(update={"quantity": lot.quantity * remaining / held}) for lot in lots]


def build_lots(
    transactions: Iterable[Transaction],
    *,
    now: datetime | None = None,
    sell_policy: SellPolicy = "ignore",
    opened_since: Callable[..., bool] = market_has_opened_since,
) -> LotsBySymbol:
    """Group BUY transactions into purchase lots per symbol.

    With ``sell_policy="ignore"`` SELLs are skipped and input order is irrelevant.
    With ``"average"`` each SELL (clamped to the shares held) removes its
    quantity at the average cost basis by scaling every lot of the symbol.
    With ``"fifo"`` each SELL consumes the oldest lots of its symbol first,
    splitting a partially sold lot. Under both, symbols left without lots
    are dropped.
    """
    if sell_policy not in SELL_POLICIES:
        raise ValueError(f"unknown sell policy: {sell_policy}")

    rows = list(transactions)
    if sell_policy != "ignore":
        # a SELL only consumes lots bought at or before it
        rows.sort(key=lambda t: (t.executed_at, 0 if t.type == "BUY" else 1))

    lots: LotsBySymbol = {}
    for transaction in rows:
        if transaction.type == "BUY":
            lots.setdefault(transaction.symbol, []).append(_lot_from(transaction, now, opened_since))
        elif sell_policy != "ignore" and transaction.symbol in lots:
            reduce = _consume_fifo if sell_policy == "fifo" else _reduce_at_average_cost
            left = reduce(lots[transaction.symbol], transaction.quantity)
            if left:
                lots[transaction.symbol] = left
            else:
                del lots[transaction.symbol]
    return lots


class LotLedger:
    """Purchase lots derived from a user's trade history."""

    def __init__(
        self,
        *,
        sell_policy: SellPolicy = "ignore",
        opened_since: Callable[..., bool] = market_has_opened_since,
    ) -> None:
        if sell_policy not in SELL_POLICIES:
            raise ValueError(f"unknown sell policy: {sell_policy}")
        self.sell_policy = sell_policy
        self._opened_since = opened_since
        self.lots: LotsBySymbol = {}

    def build(self, transactions: Iterable[Transaction], now: datetime | None = None) -> LotsBySymbol:
        self.lots = build_lots(
            transactions,
            now=now,
            sell_policy=self.sell_policy,
            opened_since=self._opened_since,
        )
        return self.lots

    def load(self, rest_client: Any, user_id: int | str, now: datetime | None = None) -> LotsBySymbol:
        transactions = rest_client.get_transaction_history(user_id)
        lots = self.build(transactions, now=now)
        print(
            f"[LEDGER][load] user_id={user_id} transactions={len(transactions)} symbols={len(lots)}",
            flush=True,
        )
        return lots

    def refresh(self, now: datetime | None = None) -> LotsBySymbol:
        """Recompute session flags, e.g. after the market opens on a ledger built overnight."""
        self.lots = {
            symbol: [
                lot.model_copy(update={"market_has_opened_since": self._opened_since(lot.purchased_at, now)})
                for lot in lots
            ]
            for symbol, lots in self.lots.items()
        }
        return self.lots
