"""Adapters for the external ledger, price oracle and swap venue."""

from .ledger import LedgerAdapter, HttpLedgerAdapter, MockLedger
from .oracle import PriceOracle, HttpPriceOracle, MockPriceOracle, OracleUnavailable
from .swap import SwapVenue, HttpSwapVenue, MockSwapVenue

__all__ = [
    "LedgerAdapter",
    "HttpLedgerAdapter",
    "MockLedger",
    "PriceOracle",
    "HttpPriceOracle",
    "MockPriceOracle",
    "OracleUnavailable",
    "SwapVenue",
    "HttpSwapVenue",
    "MockSwapVenue",
]
