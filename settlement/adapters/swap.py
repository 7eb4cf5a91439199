"""Swap venue adapters used to source liquidity for the vault."""
from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_DOWN
from threading import Lock
from typing import List, Optional, Set, Tuple
import logging
import time

import requests

from settlement.errors import SlippageExceeded, SwapFailed

logger = logging.getLogger(__name__)


class SwapVenue(ABC):

    @abstractmethod
    def swap(self, from_asset: str, to_asset: str, amount_in: int, min_amount_out: int, recipient: str) -> int:
        """
        Execute a swap and return the native amount received.

        Raises:
            SlippageExceeded: if the venue would deliver less than ``min_amount_out``
            SwapFailed: for any other venue failure
        """


class HttpSwapVenue(SwapVenue):
    """Swap aggregator reached through ``POST /swap``."""

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info("Swap venue using %s", self.base_url)

    def swap(self, from_asset: str, to_asset: str, amount_in: int, min_amount_out: int, recipient: str) -> int:
        payload = {
            "fromAsset": from_asset,
            "toAsset": to_asset,
            "amountIn": str(amount_in),
            "minAmountOut": str(min_amount_out),
            "recipient": recipient,
        }
        try:
            resp = self.session.post(f"{self.base_url}/swap", json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise SwapFailed(f"Swap request {from_asset}->{to_asset} failed: {exc}") from exc

        if not resp.ok:
            body = {}
            try:
                body = resp.json()
            except ValueError:
                pass
            if body.get("error") == "slippage_exceeded":
                raise SlippageExceeded(int(body.get("amountOut", 0)), min_amount_out)
            raise SwapFailed(f"Swap {from_asset}->{to_asset} rejected ({resp.status_code}): {resp.text}")

        amount_out = int(resp.json()["amountOut"])
        if amount_out < min_amount_out:
            raise SlippageExceeded(amount_out, min_amount_out)
        return amount_out


class MockSwapVenue(SwapVenue):
    """
    Fills at oracle prices against a ``MockLedger``.

    ``execution_slippage_bps`` worsens every fill, ``failing_assets`` makes
    swaps out of those assets fail and ``delay_seconds`` simulates a slow venue.
    """

    def __init__(
        self,
        ledger,
        oracle,
        execution_slippage_bps: int = 0,
        delay_seconds: float = 0.0,
        failing_assets: Optional[Set[str]] = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.execution_slippage_bps = execution_slippage_bps
        self.delay_seconds = delay_seconds
        self.failing_assets = set(failing_assets or ())
        self.calls: List[Tuple[str, str, int, int]] = []
        self._lock = Lock()

    def quote(self, from_asset: str, to_asset: str, amount_in: int) -> int:
        config = {a.key: a for a in self.ledger.get_asset_config()}
        src, dst = config[from_asset], config[to_asset]
        value = Decimal(amount_in).scaleb(-src.decimals) * self.oracle.price_of(from_asset)
        out = (value / self.oracle.price_of(to_asset)).scaleb(dst.decimals)
        out = out * (10000 - self.execution_slippage_bps) / 10000
        return int(out.to_integral_value(rounding=ROUND_DOWN))

    def swap(self, from_asset: str, to_asset: str, amount_in: int, min_amount_out: int, recipient: str) -> int:
        with self._lock:
            self.calls.append((from_asset, to_asset, amount_in, min_amount_out))
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if from_asset in self.failing_assets:
            raise SwapFailed(f"No route for {from_asset}")
        amount_out = self.quote(from_asset, to_asset, amount_in)
        if amount_out < min_amount_out:
            raise SlippageExceeded(amount_out, min_amount_out)
        self.ledger.apply_swap(from_asset, to_asset, amount_in, amount_out)
        logger.info("MockSwapVenue %s %s -> %s %s", amount_in, from_asset, amount_out, to_asset)
        return amount_out
