"""Ledger adapter: authoritative balances, share supply, burns and payouts."""
from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_DOWN
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple
import logging

import requests

from settlement.errors import LedgerError
from settlement.models import AssetEntry, quantum

logger = logging.getLogger(__name__)


class LedgerAdapter(ABC):
    """Narrow interface onto the custody ledger."""

    @abstractmethod
    def get_asset_balances(self) -> Dict[str, int]:
        """Native-unit balance per asset key."""

    @abstractmethod
    def get_asset_config(self) -> List[AssetEntry]:
        """Basket constituents with their target weights."""

    @abstractmethod
    def get_circulating_shares(self) -> int:
        """Total share supply in raw share units."""

    @abstractmethod
    def burn(self, account: str, shares: int) -> Decimal:
        """Burn shares and pay the account; returns the reference amount paid."""

    @abstractmethod
    def transfer_out(self, asset: str, amount: int, to: str) -> None:
        """Send ``amount`` native units of ``asset`` out of the vault."""


class HttpLedgerAdapter(LedgerAdapter):
    """
    Ledger reached over its JSON HTTP gateway.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info("Ledger adapter using %s", self.base_url)

    def _get(self, path: str) -> dict:
        try:
            resp = self.session.get(f"{self.base_url}{path}", timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            raise LedgerError(f"Ledger read {path} failed: {exc}") from exc

    def _post(self, path: str, payload: dict) -> dict:
        try:
            resp = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json() if resp.content else {}
        except requests.RequestException as exc:
            raise LedgerError(f"Ledger write {path} failed: {exc}") from exc

    def get_asset_balances(self) -> Dict[str, int]:
        data = self._get("/assets/balances")
        return {row["key"]: int(row["balance"]) for row in data.get("balances", [])}

    def get_asset_config(self) -> List[AssetEntry]:
        data = self._get("/assets/config")
        return [
            AssetEntry(
                key=row["key"],
                token_ref=row.get("tokenRef", row["key"]),
                decimals=int(row["decimals"]),
                target_weight_bps=int(row["targetWeightBps"]),
                active=bool(row.get("active", True)),
            )
            for row in data.get("assets", [])
        ]

    def get_circulating_shares(self) -> int:
        data = self._get("/shares/circulating")
        return int(data["circulating"])

    def burn(self, account: str, shares: int) -> Decimal:
        data = self._post("/shares/burn", {"account": account, "shares": str(shares)})
        return Decimal(str(data["referencePaid"]))

    def transfer_out(self, asset: str, amount: int, to: str) -> None:
        self._post("/assets/transfer", {"asset": asset, "amount": str(amount), "to": to})
        logger.info("Ledger transfer_out %s %s -> %s", amount, asset, to)


class MockLedger(LedgerAdapter):
    """
    In-process ledger used for local runs and tests.

    Burns pay the pro-rata basket value out of the liquid asset; prices come
    from ``price_lookup`` (normally ``MockPriceOracle.price_of``).
    """

    def __init__(
        self,
        assets: List[AssetEntry],
        balances: Optional[Dict[str, int]] = None,
        circulating_shares: int = 0,
        liquid_asset_key: str = "STABLE",
        price_lookup: Optional[Callable[[str], Decimal]] = None,
        reference_decimals: int = 6,
    ):
        self._assets = {a.key: a for a in assets}
        self._balances: Dict[str, int] = {a.key: 0 for a in assets}
        self._balances.update(balances or {})
        self._circulating = int(circulating_shares)
        self.liquid_asset_key = liquid_asset_key
        self.price_lookup = price_lookup or (lambda key: Decimal(1))
        self.reference_decimals = reference_decimals
        self.transfers: List[Tuple[str, int, str]] = []
        self.burns: List[Tuple[str, int, Decimal]] = []
        self.fail_reads = False
        self._lock = Lock()

    # -- test helpers -------------------------------------------------------
    def set_balance(self, key: str, balance: int) -> None:
        with self._lock:
            self._balances[key] = int(balance)

    def set_asset(self, entry: AssetEntry) -> None:
        with self._lock:
            self._assets[entry.key] = entry
            self._balances.setdefault(entry.key, 0)

    def set_circulating_shares(self, shares: int) -> None:
        with self._lock:
            self._circulating = int(shares)

    def apply_swap(self, from_asset: str, to_asset: str, amount_in: int, amount_out: int) -> None:
        with self._lock:
            if self._balances.get(from_asset, 0) < amount_in:
                raise LedgerError(f"Insufficient {from_asset} for swap: {amount_in}")
            self._balances[from_asset] -= amount_in
            self._balances[to_asset] = self._balances.get(to_asset, 0) + amount_out

    # -- adapter interface --------------------------------------------------
    def _check_reads(self) -> None:
        if self.fail_reads:
            raise LedgerError("Ledger unavailable")

    def get_asset_balances(self) -> Dict[str, int]:
        self._check_reads()
        with self._lock:
            return dict(self._balances)

    def get_asset_config(self) -> List[AssetEntry]:
        self._check_reads()
        with self._lock:
            return list(self._assets.values())

    def get_circulating_shares(self) -> int:
        self._check_reads()
        with self._lock:
            return self._circulating

    def burn(self, account: str, shares: int) -> Decimal:
        with self._lock:
            if shares <= 0 or shares > self._circulating:
                raise LedgerError(f"Invalid burn of {shares} shares")
            total = Decimal(0)
            for key, entry in self._assets.items():
                if not entry.active:
                    continue
                total += Decimal(self._balances.get(key, 0)).scaleb(-entry.decimals) * self.price_lookup(key)
            paid = (total * Decimal(shares) / Decimal(self._circulating)).quantize(
                quantum(self.reference_decimals), rounding=ROUND_DOWN
            )
            liquid = self._assets[self.liquid_asset_key]
            native = int((paid / self.price_lookup(liquid.key)).scaleb(liquid.decimals)
                         .to_integral_value(rounding=ROUND_DOWN))
            if self._balances.get(liquid.key, 0) < native:
                raise LedgerError("Insufficient liquid reserve for burn")
            self._balances[liquid.key] -= native
            self._circulating -= shares
            self.burns.append((account, shares, paid))
        logger.info("MockLedger burn %s shares for %s paid %s", shares, account, paid)
        return paid

    def transfer_out(self, asset: str, amount: int, to: str) -> None:
        with self._lock:
            if self._balances.get(asset, 0) < amount:
                raise LedgerError(f"Insufficient {asset} for transfer of {amount}")
            self._balances[asset] -= amount
            self.transfers.append((asset, amount, to))
        logger.info("MockLedger transfer_out %s %s -> %s", amount, asset, to)
