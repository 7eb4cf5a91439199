"""CLI entrypoint to run the rebalance trigger without the HTTP API."""
import argparse
import json
import logging
import threading
from dataclasses import replace

from settlement import config
from settlement.config import SettlementSettings, setup_logging
from settlement.service import build_service

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the basket rebalance trigger")
    parser.add_argument(
        "--interval",
        type=float,
        default=config.REBALANCE_INTERVAL_SECONDS,
        help="Seconds between rebalance cycles",
    )
    parser.add_argument(
        "--storage",
        choices=("memory", "postgres"),
        default=config.STORAGE_BACKEND,
        help="Queue and guard storage backend",
    )
    parser.add_argument(
        "--live-externals",
        action="store_true",
        help="Use the HTTP ledger, oracle and swap venue instead of in-memory mocks",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan and log swaps and payouts without executing them",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle, print its report and exit",
    )
    args = parser.parse_args()

    setup_logging()

    settings = replace(
        SettlementSettings(),
        rebalance_interval_seconds=args.interval,
        dry_run=args.dry_run or config.DRY_RUN,
    )
    service = build_service(
        settings,
        storage_backend=args.storage,
        mock_externals=not args.live_externals and config.MOCK_EXTERNALS,
    )

    if args.once:
        try:
            report = service.trigger_now()
        finally:
            service.close()
        print(json.dumps(report.to_dict(), indent=2))
        return

    stop_event = threading.Event()
    service.start()
    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Shutting down rebalance trigger...")
    finally:
        service.stop()
        service.close()


if __name__ == "__main__":  # pragma: no cover
    main()
