"""Database query functions for the settlement engine."""
from datetime import datetime
from typing import Dict, List, Optional
import logging

from psycopg2.extras import Json

from settlement.db.connection import get_cursor

logger = logging.getLogger(__name__)

# ============================================================================
# REDEMPTION REQUESTS
# ============================================================================

def insert_redemption_request(data: Dict) -> Dict:
    """
    Insert a pending redemption request.

    Args:
        data: {
            'account': str,
            'shares_requested': int,
            'reference_owed': Decimal,
            'created_at': datetime
        }

    Returns:
        The inserted row, including its assigned id.
    """
    query = """
        INSERT INTO redemption_requests
        (account, shares_requested, reference_owed, created_at, status)
        VALUES (%(account)s, %(shares_requested)s, %(reference_owed)s,
                %(created_at)s, 'pending')
        RETURNING *;
    """
    with get_cursor() as cursor:
        cursor.execute(query, data)
        row = cursor.fetchone()
    logger.debug(f"Inserted redemption_request {row['id']} for {data['account']}")
    return row


def get_redemption_request(request_id: int) -> Optional[Dict]:
    query = """
        SELECT * FROM redemption_requests
        WHERE id = %s;
    """
    with get_cursor() as cursor:
        cursor.execute(query, (request_id,))
        return cursor.fetchone()


def get_pending_redemption_for_account(account: str) -> Optional[Dict]:
    query = """
        SELECT * FROM redemption_requests
        WHERE account = %s AND status = 'pending'
        LIMIT 1;
    """
    with get_cursor() as cursor:
        cursor.execute(query, (account,))
        return cursor.fetchone()


def get_pending_redemptions() -> List[Dict]:
    """Pending requests in FIFO order."""
    query = """
        SELECT * FROM redemption_requests
        WHERE status = 'pending'
        ORDER BY created_at ASC, id ASC;
    """
    with get_cursor() as cursor:
        cursor.execute(query)
        return cursor.fetchall()


def transition_redemption(request_id: int, target_status: str, at: datetime) -> Optional[Dict]:
    """
    Move a pending request to ``target_status``.

    Returns:
        The updated row, or None when the request is missing or not pending.
    """
    column = 'fulfilled_at' if target_status == 'fulfilled' else 'cancelled_at'
    query = f"""
        UPDATE redemption_requests
        SET status = %s, {column} = %s
        WHERE id = %s AND status = 'pending'
        RETURNING *;
    """
    with get_cursor() as cursor:
        cursor.execute(query, (target_status, at, request_id))
        row = cursor.fetchone()
    if row:
        logger.debug(f"redemption_request {request_id} -> {target_status}")
    return row


# ============================================================================
# COOLDOWNS
# ============================================================================

def get_account_cooldown(account: str) -> Optional[Dict]:
    query = """
        SELECT * FROM account_cooldowns
        WHERE account = %s;
    """
    with get_cursor() as cursor:
        cursor.execute(query, (account,))
        return cursor.fetchone()


def write_account_cooldown(account: str, kind: str, next_allowed_at: datetime) -> None:
    """Upsert the next-allowed timestamp for ``kind`` ('deposit' or 'redeem')."""
    if kind not in ('deposit', 'redeem'):
        raise ValueError(f"Unknown cooldown kind: {kind}")
    column = f"next_{kind}_allowed_at"
    query = f"""
        INSERT INTO account_cooldowns (account, {column})
        VALUES (%s, %s)
        ON CONFLICT (account) DO UPDATE SET
            {column} = EXCLUDED.{column};
    """
    with get_cursor() as cursor:
        cursor.execute(query, (account, next_allowed_at))
    logger.debug(f"Wrote account_cooldowns: {account} {kind} until {next_allowed_at}")


# ============================================================================
# SYSTEM STATE
# ============================================================================

def write_system_state(key: str, value: dict) -> None:
    """
    Insert or update system state configuration.

    Args:
        key: Configuration key
        value: JSON-serializable dict
    """
    query = """
        INSERT INTO system_state (key, value, updated_at)
        VALUES (%(key)s, %(value)s, NOW())
        ON CONFLICT (key) DO UPDATE SET
            value = EXCLUDED.value,
            updated_at = NOW();
    """
    with get_cursor() as cursor:
        cursor.execute(query, {'key': key, 'value': Json(value)})
    logger.debug(f"Wrote system_state: {key}")


def get_system_state(key: str) -> Optional[dict]:
    """
    Get system configuration value.

    Returns:
        Configuration value as dict, or None if not found
    """
    query = """
        SELECT value FROM system_state
        WHERE key = %s;
    """
    with get_cursor() as cursor:
        cursor.execute(query, (key,))
        result = cursor.fetchone()
        return result['value'] if result else None


# ============================================================================
# NAV HISTORY & REBALANCE LEGS
# ============================================================================

def write_nav_snapshot(data: Dict) -> None:
    """Insert a NAV point recorded by the rebalance cycle."""
    query = """
        INSERT INTO nav_snapshots
        (recorded_at, total_value, price_per_share, circulating_shares,
         max_drift_bps, actual_weights_bps)
        VALUES (%(recorded_at)s, %(total_value)s, %(price_per_share)s,
                %(circulating_shares)s, %(max_drift_bps)s, %(actual_weights_bps)s);
    """
    payload = dict(data)
    payload['actual_weights_bps'] = Json(payload.get('actual_weights_bps') or {})
    with get_cursor() as cursor:
        cursor.execute(query, payload)
    logger.debug(f"Wrote nav_snapshot at {data['recorded_at']}")


def get_nav_history(limit: int = 500) -> List[Dict]:
    """Most recent NAV points, oldest first."""
    query = """
        SELECT * FROM (
            SELECT * FROM nav_snapshots
            ORDER BY recorded_at DESC
            LIMIT %s
        ) recent
        ORDER BY recorded_at ASC;
    """
    with get_cursor() as cursor:
        cursor.execute(query, (limit,))
        return cursor.fetchall()


def write_rebalance_leg(data: Dict) -> None:
    """Record the outcome of one swap leg."""
    query = """
        INSERT INTO rebalance_legs
        (executed_at, purpose, asset_in, asset_out, amount_in, min_amount_out,
         amount_out, status, error)
        VALUES (%(executed_at)s, %(purpose)s, %(asset_in)s, %(asset_out)s,
                %(amount_in)s, %(min_amount_out)s, %(amount_out)s,
                %(status)s, %(error)s);
    """
    with get_cursor() as cursor:
        cursor.execute(query, data)
    logger.info(f"Rebalance leg {data['asset_in']}->{data['asset_out']} {data['status']}")
