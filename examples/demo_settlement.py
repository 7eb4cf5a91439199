#!/usr/bin/env python3
"""
Settlement Demo: Queued Redemption Paid by a Liquidation Cycle

This script walks a redemption larger than the liquid reserve through
the engine using in-memory collaborators:
1. Basket valuation and drift
2. Routing (queued with a shortfall)
3. Enrollment at the current price per share
4. A rebalance cycle that liquidates and pays the queue
"""

import sys
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from settlement.config import SettlementSettings
from settlement.service import build_service

import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SHARE_UNIT = 10 ** 18


def demo_settlement():
    """Run the queued redemption demo."""
    logger.info("=" * 80)
    logger.info("Settlement Demo")
    logger.info("=" * 80)

    settings = replace(SettlementSettings(), dry_run=False, swap_settle_seconds=1.0)
    service = build_service(settings, storage_backend='memory', mock_externals=True)

    # Step 1: Basket
    logger.info("\n" + "-" * 80)
    logger.info("STEP 1: Basket Snapshot")
    logger.info("-" * 80)
    snapshot = service.basket()
    logger.info(f"  Total value: {snapshot.total_value}")
    logger.info(f"  Price per share: {snapshot.price_per_share}")
    for asset in snapshot.assets:
        logger.info(
            f"  {asset.key:6s} value={asset.value} actual={asset.actual_weight_bps}bps "
            f"target={asset.target_weight_bps}bps drift={asset.drift_bps}bps"
        )

    # Step 2: Route
    account = 'alice'
    shares = 1_200_000 * SHARE_UNIT
    logger.info("\n" + "-" * 80)
    logger.info("STEP 2: Routing 1,200,000 shares")
    logger.info("-" * 80)
    availability = service.check_availability(account, shares)
    logger.info(f"  Instant: {availability.can_redeem_instantly}")
    logger.info(f"  Owed: {availability.reference_owed}")
    logger.info(f"  Reserve: {availability.liquid_reserve}")
    logger.info(f"  Shortfall: {availability.shortfall}")

    # Step 3: Enroll
    logger.info("\n" + "-" * 80)
    logger.info("STEP 3: Enrolling in the redemption queue")
    logger.info("-" * 80)
    request = service.enroll(account, shares)
    logger.info(f"  Request {request.id} owed {request.reference_owed} ({request.status.value})")

    # Step 4: Cycle
    logger.info("\n" + "-" * 80)
    logger.info("STEP 4: Running a rebalance cycle")
    logger.info("-" * 80)
    report = service.trigger_now()
    for leg in report.legs:
        logger.info(
            f"  {leg.leg.asset_in} -> {leg.leg.asset_out}: value={leg.leg.value} "
            f"min_out={leg.leg.min_amount_out} status={leg.status}"
        )
    logger.info(f"  Fulfilled: {report.fulfilled}")

    request = service.get_request(request.id)
    paid = sum(
        (Decimal(amount).scaleb(-6) for _, amount, to in service.ledger.transfers if to == account),
        Decimal(0),
    )
    logger.info(f"\n  Request {request.id} is {request.status.value}; paid {paid}")

    after = service.basket()
    logger.info(f"  Basket after cycle: total={after.total_value} max_drift={after.max_drift_bps}bps")

    logger.info("\n" + "=" * 80)
    logger.info("Demo completed")
    logger.info("=" * 80)


if __name__ == '__main__':
    demo_settlement()
