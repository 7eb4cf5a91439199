"""Price oracle adapters returning reference-currency prices and their age."""
from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from threading import Lock
from typing import Dict, Optional, Tuple
import logging
import time

import requests

logger = logging.getLogger(__name__)


class OracleUnavailable(RuntimeError):
    """Raised when the oracle cannot answer at all."""


class PriceOracle(ABC):

    @abstractmethod
    def get_price(self, asset_key: str) -> Tuple[Decimal, float]:
        """Return (price per whole token, staleness in seconds)."""


class HttpPriceOracle(PriceOracle):
    """Oracle gateway answering ``GET /price/{key}``."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info("Price oracle using %s", self.base_url)

    def get_price(self, asset_key: str) -> Tuple[Decimal, float]:
        try:
            resp = self.session.get(f"{self.base_url}/price/{asset_key}", timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise OracleUnavailable(f"Price poll failed for {asset_key}: {exc}") from exc

        price = data.get("price")
        if price is None:
            raise OracleUnavailable(f"Price response missing price field: {data}")

        if data.get("staleness") is not None:
            staleness = float(data["staleness"])
        else:
            updated_at = float(data.get("updatedAt") or time.time())
            staleness = max(time.time() - updated_at, 0.0)
        return Decimal(str(price)), staleness


class MockPriceOracle(PriceOracle):
    """Settable in-memory prices; ``outage`` makes every read fail."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self._prices: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self._staleness: Dict[str, float] = {}
        self.outage = False
        self._lock = Lock()

    def set_price(self, asset_key: str, price, staleness: float = 0.0) -> None:
        with self._lock:
            self._prices[asset_key] = Decimal(str(price))
            self._staleness[asset_key] = float(staleness)

    def price_of(self, asset_key: str) -> Decimal:
        with self._lock:
            return self._prices[asset_key]

    def get_price(self, asset_key: str) -> Tuple[Decimal, float]:
        if self.outage:
            raise OracleUnavailable("Oracle outage")
        with self._lock:
            if asset_key not in self._prices:
                raise OracleUnavailable(f"No price for {asset_key}")
            return self._prices[asset_key], self._staleness.get(asset_key, 0.0)
