"""Exception taxonomy for the settlement engine."""
from typing import Optional


class SettlementError(Exception):
    """Base class; ``code`` is the stable identifier surfaced by the API."""

    code = "settlement_error"

    def __init__(self, message: str = ""):
        self.message = message or self.code
        super().__init__(self.message)


class Paused(SettlementError):
    code = "paused"

    def __init__(self, message: str = "Vault is paused"):
        super().__init__(message)


class CooldownActive(SettlementError):
    code = "cooldown_active"

    def __init__(self, account: str, kind: str, remaining_seconds: int):
        self.account = account
        self.kind = kind
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"{kind} cooldown active for {account}: {remaining_seconds}s remaining"
        )


class RedemptionAlreadyPending(SettlementError):
    code = "redemption_already_pending"

    def __init__(self, account: str, request_id: Optional[int] = None):
        self.account = account
        self.request_id = request_id
        super().__init__(
            f"Account {account} already has pending redemption {request_id}"
        )


class NotFound(SettlementError):
    code = "not_found"


class InvalidTransition(SettlementError):
    code = "invalid_transition"

    def __init__(self, request_id: int, current: str, target: str):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(
            f"Redemption {request_id} cannot move from {current} to {target}"
        )


class ValuationFailed(SettlementError):
    code = "valuation_failed"


class OracleStale(ValuationFailed):
    code = "oracle_stale"

    def __init__(self, asset_key: str, staleness_seconds: float, max_seconds: float):
        self.asset_key = asset_key
        self.staleness_seconds = staleness_seconds
        super().__init__(
            f"Price for {asset_key} is {staleness_seconds:.0f}s old (max {max_seconds:.0f}s)"
        )


class LedgerError(SettlementError):
    code = "ledger_error"


class SwapFailed(SettlementError):
    code = "swap_failed"


class SlippageExceeded(SwapFailed):
    code = "slippage_exceeded"

    def __init__(self, amount_out: int, min_amount_out: int):
        self.amount_out = amount_out
        self.min_amount_out = min_amount_out
        super().__init__(
            f"Swap output {amount_out} below minimum {min_amount_out}"
        )


class Unauthorized(SettlementError):
    code = "unauthorized"


class RedemptionRoutedInstant(SettlementError):
    """Enrollment refused because the liquid reserve already covers it."""

    code = "redemption_routed_instant"


class InsufficientLiquidity(SettlementError):
    code = "insufficient_liquidity"

    def __init__(self, shortfall):
        self.shortfall = shortfall
        super().__init__(f"Liquid reserve short by {shortfall}; enroll in the queue instead")
