"""Immutable value types shared by the settlement engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Dict, List, Optional, Tuple

BPS = 10000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def quantum(decimals: int) -> Decimal:
    """Smallest representable step for a fixed-point amount with ``decimals`` places."""
    return Decimal(1).scaleb(-decimals)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


class RedemptionStatus(Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class RouteMode(Enum):
    INSTANT = "instant"
    QUEUED = "queued"


class ActionKind(Enum):
    DEPOSIT = "deposit"
    REDEEM = "redeem"


@dataclass(frozen=True)
class AssetEntry:
    key: str
    token_ref: str
    decimals: int
    target_weight_bps: int
    active: bool = True


@dataclass(frozen=True)
class AssetValuation:
    key: str
    token_ref: str
    decimals: int
    balance: int
    price: Decimal
    value: Decimal
    target_weight_bps: int
    actual_weight_bps: int
    drift_bps: int

    @property
    def excess_bps(self) -> int:
        """Signed distance from target; positive means over-weight."""
        return self.actual_weight_bps - self.target_weight_bps

    def to_native(self, value: Decimal) -> int:
        """Convert a reference-currency value into this asset's native units (floor)."""
        if self.price <= 0:
            return 0
        native = (value / self.price).scaleb(self.decimals)
        return int(native.to_integral_value(rounding=ROUND_DOWN))

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "tokenRef": self.token_ref,
            "balance": str(self.balance),
            "price": str(self.price),
            "value": str(self.value),
            "targetWeightBps": self.target_weight_bps,
            "actualWeightBps": self.actual_weight_bps,
            "driftBps": self.drift_bps,
        }


@dataclass(frozen=True)
class BasketSnapshot:
    assets: Tuple[AssetValuation, ...]
    total_value: Decimal
    price_per_share: Optional[Decimal]
    circulating_shares: int
    taken_at: datetime
    reference_decimals: int
    share_decimals: int

    def asset(self, key: str) -> Optional[AssetValuation]:
        for entry in self.assets:
            if entry.key == key:
                return entry
        return None

    @property
    def max_drift_bps(self) -> int:
        return max((a.drift_bps for a in self.assets), default=0)

    @property
    def total_target_bps(self) -> int:
        return sum(a.target_weight_bps for a in self.assets)

    def value_of_shares(self, shares: int) -> Optional[Decimal]:
        """Reference value of ``shares`` raw share units, or None at genesis."""
        if self.circulating_shares <= 0:
            return None
        owed = self.total_value * Decimal(shares) / Decimal(self.circulating_shares)
        return owed.quantize(quantum(self.reference_decimals), rounding=ROUND_DOWN)

    def to_dict(self) -> dict:
        return {
            "takenAt": _iso(self.taken_at),
            "totalValue": str(self.total_value),
            "pricePerShare": str(self.price_per_share) if self.price_per_share is not None else None,
            "circulatingShares": str(self.circulating_shares),
            "maxDriftBps": self.max_drift_bps,
            "assets": [a.to_dict() for a in self.assets],
        }


@dataclass(frozen=True)
class RedemptionRequest:
    id: int
    account: str
    shares_requested: int
    reference_owed: Decimal
    created_at: datetime
    status: RedemptionStatus = RedemptionStatus.PENDING
    fulfilled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status is RedemptionStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "requestId": self.id,
            "account": self.account,
            "sharesRequested": str(self.shares_requested),
            "referenceCurrencyOwed": str(self.reference_owed),
            "referenceOwed": str(self.reference_owed),
            "createdAt": _iso(self.created_at),
            "status": self.status.value,
            "fulfilled": self.status is RedemptionStatus.FULFILLED,
            "fulfilledAt": _iso(self.fulfilled_at),
            "cancelledAt": _iso(self.cancelled_at),
        }


@dataclass(frozen=True)
class RouteDecision:
    mode: RouteMode
    reference_owed: Decimal
    liquid_reserve: Decimal
    shortfall: Optional[Decimal] = None

    @property
    def instant(self) -> bool:
        return self.mode is RouteMode.INSTANT


@dataclass(frozen=True)
class Availability:
    can_redeem_instantly: bool
    shortfall: Optional[Decimal]
    reference_owed: Optional[Decimal] = None
    liquid_reserve: Optional[Decimal] = None
    degraded: bool = False

    def to_dict(self) -> dict:
        def _s(v):
            return str(v) if v is not None else None

        return {
            "canRedeemInstantly": self.can_redeem_instantly,
            "shortfall": _s(self.shortfall),
            "referenceOwed": _s(self.reference_owed),
            "liquidReserve": _s(self.liquid_reserve),
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class CooldownState:
    account: str
    next_deposit_allowed_at: Optional[datetime] = None
    next_redeem_allowed_at: Optional[datetime] = None

    def next_allowed(self, kind: ActionKind) -> Optional[datetime]:
        if kind is ActionKind.DEPOSIT:
            return self.next_deposit_allowed_at
        return self.next_redeem_allowed_at

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "nextDepositAllowedAt": _iso(self.next_deposit_allowed_at),
            "nextRedeemAllowedAt": _iso(self.next_redeem_allowed_at),
        }


@dataclass(frozen=True)
class NavPoint:
    timestamp: datetime
    total_value: Decimal
    price_per_share: Optional[Decimal]
    circulating_shares: int
    max_drift_bps: int
    actual_weights_bps: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: BasketSnapshot) -> "NavPoint":
        return cls(
            timestamp=snapshot.taken_at,
            total_value=snapshot.total_value,
            price_per_share=snapshot.price_per_share,
            circulating_shares=snapshot.circulating_shares,
            max_drift_bps=snapshot.max_drift_bps,
            actual_weights_bps={a.key: a.actual_weight_bps for a in snapshot.assets},
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": _iso(self.timestamp),
            "totalValue": str(self.total_value),
            "pricePerShare": str(self.price_per_share) if self.price_per_share is not None else None,
            "circulatingShares": str(self.circulating_shares),
            "maxDriftBps": self.max_drift_bps,
            "actualWeightsBps": dict(self.actual_weights_bps),
        }


def sort_fifo(requests: List[RedemptionRequest]) -> List[RedemptionRequest]:
    """Oldest first; id breaks ties between identical timestamps."""
    return sorted(requests, key=lambda r: (r.created_at, r.id))
