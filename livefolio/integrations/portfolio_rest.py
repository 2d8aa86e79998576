from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import requests

from livefolio.errors import PriceSourceUnavailableError
from livefolio.schemas.portfolio import Transaction


class PortfolioRestClient:
    """Read-only client for the simulator backend: prices, trade history, symbols."""

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Optional[Callable[[], str | None]] = None,
        session: Optional[Any] = None,
        timeout_sec: float = 5.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.session = session or requests
        self.timeout_sec = timeout_sec

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        token = self.token_provider() if self.token_provider is not None else None
        if token:
            headers["authorization"] = f"Bearer {token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self.session.get(
                f"{self.base_url}{path}",
                headers=self._headers(),
                params=params,
                timeout=self.timeout_sec,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise PriceSourceUnavailableError(f"GET {path} failed: {exc}") from exc

    @staticmethod
    def _to_float(value: Any) -> float | None:
        try:
            if value is None or value == "" or isinstance(value, bool):
                return None
            return float(value)
        except (TypeError, ValueError):
            return None

    def get_current_prices(self) -> Dict[str, Dict[str, float | None]]:
        payload = self._get("/api/prices/current")
        if not isinstance(payload, dict):
            raise PriceSourceUnavailableError("unexpected prices payload")

        out: Dict[str, Dict[str, float | None]] = {}
        for symbol, row in payload.items():
            if not isinstance(row, dict):
                continue
            out[str(symbol).upper()] = {
                "price": self._to_float(row.get("price")),
                "change_pct": self._to_float(row.get("changePercent")),
            }
        return out

    def get_transaction_history(self, user_id: int | str) -> List[Transaction]:
        payload = self._get(f"/api/trades/{user_id}/history")
        if not isinstance(payload, list):
            raise PriceSourceUnavailableError("unexpected transaction history payload")
        return [Transaction.model_validate(row) for row in payload]

    def list_symbols(self, *, page: int = 0, size: int = 50) -> List[str]:
        payload = self._get("/api/symbols", params={"page": page, "size": size})
        rows = payload.get("content", []) if isinstance(payload, dict) else payload
        return [str(row["symbol"]).upper() for row in rows if isinstance(row, dict) and row.get("symbol")]
