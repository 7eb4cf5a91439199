"""
Settlement: redemption routing, queueing and rebalancing for a multi-asset vault.

Shares of the vault represent a pro-rata claim on a basket of assets held in
custody. Redemptions are paid instantly from the liquid reserve when it covers
them, and otherwise wait in a FIFO queue that a periodic rebalance cycle pays
after selling basket assets into the liquid one.
"""

__version__ = '0.1.0'

# Make key imports available at package level
from settlement.config import (
    LIQUID_ASSET_KEY,
    REFERENCE_DECIMALS,
    SHARE_DECIMALS,
    DB_CONFIG,
    SettlementSettings
)

__all__ = [
    '__version__',
    'LIQUID_ASSET_KEY',
    'REFERENCE_DECIMALS',
    'SHARE_DECIMALS',
    'DB_CONFIG',
    'SettlementSettings'
]
