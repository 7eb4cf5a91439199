"""Settlement engine configuration loaded from environment variables."""
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)

# ============================================================================
# Database Configuration
# ============================================================================

DB_CONFIG = {
    'host': os.getenv('DB_HOST', 'localhost'),
    'port': int(os.getenv('DB_PORT', '5432')),
    'database': os.getenv('DB_NAME', 'settlement'),
    'user': os.getenv('DB_USER', 'settlement_user'),
    'password': os.getenv('DB_PASSWORD', '')
}

DB_MIN_CONNECTIONS = int(os.getenv('DB_MIN_CONNECTIONS', '1'))
DB_MAX_CONNECTIONS = int(os.getenv('DB_MAX_CONNECTIONS', '10'))

# "memory" keeps the queue, cooldowns and pause flag in process;
# "postgres" uses the tables created by scripts/setup_database.py
STORAGE_BACKEND = os.getenv('STORAGE_BACKEND', 'memory').lower()

# ============================================================================
# External Collaborators
# ============================================================================

LEDGER_URL = os.getenv('LEDGER_URL', 'http://127.0.0.1:8100')
ORACLE_URL = os.getenv('ORACLE_URL', 'http://127.0.0.1:8200')
SWAP_VENUE_URL = os.getenv('SWAP_VENUE_URL', 'http://127.0.0.1:8300')
HTTP_TIMEOUT_SECONDS = float(os.getenv('HTTP_TIMEOUT_SECONDS', '5'))
VAULT_ADDRESS = os.getenv('VAULT_ADDRESS', 'vault')

# ============================================================================
# Basket Configuration
# ============================================================================

LIQUID_ASSET_KEY = os.getenv('LIQUID_ASSET_KEY', 'STABLE')
REFERENCE_DECIMALS = int(os.getenv('REFERENCE_DECIMALS', '6'))
SHARE_DECIMALS = int(os.getenv('SHARE_DECIMALS', '18'))
ORACLE_MAX_STALENESS_SECONDS = int(os.getenv('ORACLE_MAX_STALENESS_SECONDS', '3600'))

# ============================================================================
# Routing & Cooldowns
# ============================================================================

LIQUID_BUFFER_BPS = int(os.getenv('LIQUID_BUFFER_BPS', '0'))
DEPOSIT_COOLDOWN_SECONDS = int(os.getenv('DEPOSIT_COOLDOWN_SECONDS', '0'))
REDEEM_COOLDOWN_SECONDS = int(os.getenv('REDEEM_COOLDOWN_SECONDS', '0'))

# ============================================================================
# Rebalance Configuration
# ============================================================================

REBALANCE_ENABLED = bool(int(os.getenv('REBALANCE_ENABLED', '1')))
REBALANCE_INTERVAL_SECONDS = float(os.getenv('REBALANCE_INTERVAL_SECONDS', '60'))
DRIFT_THRESHOLD_BPS = int(os.getenv('DRIFT_THRESHOLD_BPS', '500'))
REBALANCE_STEP_BPS = int(os.getenv('REBALANCE_STEP_BPS', '5000'))
SWAP_SLIPPAGE_BPS = int(os.getenv('SWAP_SLIPPAGE_BPS', '150'))
SWAP_TIMEOUT_SECONDS = float(os.getenv('SWAP_TIMEOUT_SECONDS', '30'))
SWAP_SETTLE_SECONDS = float(os.getenv('SWAP_SETTLE_SECONDS', '10'))
LIQUIDATION_ROUNDING_BPS = int(os.getenv('LIQUIDATION_ROUNDING_BPS', '10'))
MIN_LEG_VALUE = Decimal(os.getenv('MIN_LEG_VALUE', '1'))
DRY_RUN = bool(int(os.getenv('DRY_RUN', '0')))

# ============================================================================
# API Configuration
# ============================================================================

ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', '')
NAV_HISTORY_MAXLEN = int(os.getenv('NAV_HISTORY_MAXLEN', '5000'))

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FILE = os.getenv('LOG_FILE', '')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'detailed')

# ============================================================================
# Development & Testing
# ============================================================================

MOCK_EXTERNALS = bool(int(os.getenv('MOCK_EXTERNALS', '1')))


@dataclass(frozen=True)
class SettlementSettings:
    """Values handed to engine components; defaults mirror the environment."""

    liquid_asset_key: str = LIQUID_ASSET_KEY
    reference_decimals: int = REFERENCE_DECIMALS
    share_decimals: int = SHARE_DECIMALS
    oracle_max_staleness_seconds: int = ORACLE_MAX_STALENESS_SECONDS
    liquid_buffer_bps: int = LIQUID_BUFFER_BPS
    deposit_cooldown_seconds: int = DEPOSIT_COOLDOWN_SECONDS
    redeem_cooldown_seconds: int = REDEEM_COOLDOWN_SECONDS
    rebalance_interval_seconds: float = REBALANCE_INTERVAL_SECONDS
    drift_threshold_bps: int = DRIFT_THRESHOLD_BPS
    rebalance_step_bps: int = REBALANCE_STEP_BPS
    swap_slippage_bps: int = SWAP_SLIPPAGE_BPS
    swap_timeout_seconds: float = SWAP_TIMEOUT_SECONDS
    swap_settle_seconds: float = SWAP_SETTLE_SECONDS
    liquidation_rounding_bps: int = LIQUIDATION_ROUNDING_BPS
    min_leg_value: Decimal = MIN_LEG_VALUE
    dry_run: bool = DRY_RUN
    vault_address: str = VAULT_ADDRESS
    admin_token: str = ADMIN_TOKEN
    nav_history_maxlen: int = NAV_HISTORY_MAXLEN


# ============================================================================
# Validation
# ============================================================================

def _is_bps(value: int) -> bool:
    return 0 <= value <= 10000


def validate_config() -> None:
    """Validate configuration values."""
    errors = []

    if STORAGE_BACKEND not in ('memory', 'postgres'):
        errors.append("STORAGE_BACKEND must be 'memory' or 'postgres'")

    if REFERENCE_DECIMALS < 0 or SHARE_DECIMALS < 0:
        errors.append("REFERENCE_DECIMALS and SHARE_DECIMALS must be non-negative")

    for name, value in (
        ('LIQUID_BUFFER_BPS', LIQUID_BUFFER_BPS),
        ('DRIFT_THRESHOLD_BPS', DRIFT_THRESHOLD_BPS),
        ('REBALANCE_STEP_BPS', REBALANCE_STEP_BPS),
        ('SWAP_SLIPPAGE_BPS', SWAP_SLIPPAGE_BPS),
        ('LIQUIDATION_ROUNDING_BPS', LIQUIDATION_ROUNDING_BPS),
    ):
        if not _is_bps(value):
            errors.append(f"{name} must be between 0 and 10000")

    if DEPOSIT_COOLDOWN_SECONDS < 0 or REDEEM_COOLDOWN_SECONDS < 0:
        errors.append("Cooldown windows must be non-negative")

    if REBALANCE_INTERVAL_SECONDS <= 0:
        errors.append("REBALANCE_INTERVAL_SECONDS must be positive")

    if SWAP_TIMEOUT_SECONDS <= 0:
        errors.append("SWAP_TIMEOUT_SECONDS must be positive")

    if MIN_LEG_VALUE < 0:
        errors.append("MIN_LEG_VALUE must be non-negative")

    if errors:
        raise ValueError(f"Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))


# ============================================================================
# Logging Setup
# ============================================================================

def setup_logging() -> None:
    """Configure logging based on config settings."""
    import logging
    import sys

    level = getattr(logging, LOG_LEVEL, logging.INFO)

    if LOG_FORMAT == 'json':
        format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
    elif LOG_FORMAT == 'detailed':
        format_string = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:  # simple
        format_string = '%(levelname)s: %(message)s'

    handlers = []

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(format_string))
    handlers.append(stdout_handler)

    if LOG_FILE:
        file_handler = logging.FileHandler(LOG_FILE)
        file_handler.setFormatter(logging.Formatter(format_string))
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=True
    )

    logging.getLogger('settlement').setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('psycopg2').setLevel(logging.WARNING)


# ============================================================================
# Initialization
# ============================================================================

# Validate config on import
validate_config()
