"""Settlement HTTP API (FastAPI adapter over SettlementService)."""
from typing import Optional
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from settlement.errors import (
    CooldownActive,
    InsufficientLiquidity,
    InvalidTransition,
    LedgerError,
    NotFound,
    OracleStale,
    Paused,
    RedemptionAlreadyPending,
    RedemptionRoutedInstant,
    SettlementError,
    SwapFailed,
    Unauthorized,
    ValuationFailed,
)
from settlement.service import SettlementService

logger = logging.getLogger(__name__)

SERVICE: Optional[SettlementService] = None

router = APIRouter()

# Checked in order; subclasses before their bases.
_STATUS_BY_ERROR = (
    (Paused, 423),
    (CooldownActive, 429),
    (RedemptionAlreadyPending, 409),
    (InsufficientLiquidity, 409),
    (RedemptionRoutedInstant, 400),
    (NotFound, 404),
    (InvalidTransition, 409),
    (OracleStale, 503),
    (ValuationFailed, 503),
    (LedgerError, 502),
    (SwapFailed, 502),
    (Unauthorized, 403),
)


class RedemptionBody(BaseModel):
    account: str
    shares: int


class PauseBody(BaseModel):
    paused: bool


class DepositBody(BaseModel):
    account: str


def register_service(service: SettlementService) -> None:
    global SERVICE
    SERVICE = service
    logger.info("Registered settlement service")


def get_service() -> SettlementService:
    if SERVICE is None:
        raise HTTPException(status_code=503, detail={"error": "unavailable", "message": "Service not ready"})
    return SERVICE


def _http_error(exc: SettlementError) -> HTTPException:
    status = 500
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            status = code
            break
    detail = {"error": exc.code, "message": exc.message}
    if isinstance(exc, CooldownActive):
        detail["remainingSeconds"] = exc.remaining_seconds
    if isinstance(exc, RedemptionAlreadyPending) and exc.request_id is not None:
        detail["requestId"] = exc.request_id
    return HTTPException(status_code=status, detail=detail)


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "invalid_request", "message": str(exc)})


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Operator endpoints: disabled unless ADMIN_TOKEN is configured."""
    expected = get_service().settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise _http_error(Unauthorized("Operator token missing or invalid"))


# -------------------------
# Redemption endpoints
# -------------------------
@router.get("/redeem-check")
def redeem_check(
    account: str = Query(..., min_length=1),
    shares: int = Query(..., gt=0),
):
    service = get_service()
    try:
        return service.check_availability(account, shares).to_dict()
    except SettlementError as exc:
        raise _http_error(exc)
    except ValueError as exc:
        raise _bad_request(exc)


@router.post("/redemption")
def create_redemption(body: RedemptionBody):
    service = get_service()
    try:
        request = service.enroll(body.account, body.shares)
    except SettlementError as exc:
        raise _http_error(exc)
    except ValueError as exc:
        raise _bad_request(exc)
    return {"requestId": request.id, "referenceCurrencyOwed": str(request.reference_owed)}


@router.post("/redeem")
def redeem_instant(body: RedemptionBody):
    service = get_service()
    try:
        paid = service.redeem_instant(body.account, body.shares)
    except SettlementError as exc:
        raise _http_error(exc)
    except ValueError as exc:
        raise _bad_request(exc)
    return {"account": body.account, "referencePaid": str(paid)}


@router.get("/redemption/{request_id}")
def get_redemption(request_id: int):
    try:
        return get_service().get_request(request_id).to_dict()
    except SettlementError as exc:
        raise _http_error(exc)


@router.get("/user-pending/{account}")
def get_user_pending(account: str):
    request = get_service().pending_for_account(account)
    return {
        "account": account,
        "hasPending": request is not None,
        "request": request.to_dict() if request else None,
    }


@router.get("/pending-redemptions")
def get_pending_redemptions():
    return get_service().list_pending()


@router.post("/redemption/{request_id}/cancel", dependencies=[Depends(require_admin)])
def cancel_redemption(request_id: int):
    try:
        return get_service().cancel(request_id).to_dict()
    except SettlementError as exc:
        raise _http_error(exc)
    except TimeoutError as exc:
        raise HTTPException(status_code=409, detail={"error": "cycle_busy", "message": str(exc)})


# -------------------------
# Guards
# -------------------------
@router.post("/deposit/authorize")
def authorize_deposit(body: DepositBody):
    try:
        next_allowed = get_service().authorize_deposit(body.account)
    except SettlementError as exc:
        raise _http_error(exc)
    return {"account": body.account, "authorized": True, "nextDepositAllowedAt": next_allowed.isoformat()}


@router.get("/cooldown/{account}")
def get_cooldown(account: str):
    return get_service().cooldown(account).to_dict()


@router.post("/admin/pause", dependencies=[Depends(require_admin)])
def set_pause(body: PauseBody):
    return {"paused": get_service().set_paused(body.paused)}


# -------------------------
# Basket, NAV, rebalancing
# -------------------------
@router.get("/basket")
def get_basket():
    try:
        return get_service().basket().to_dict()
    except SettlementError as exc:
        raise _http_error(exc)


@router.get("/nav/history")
def get_nav_history(limit: int = Query(500, ge=1, le=5000)):
    return [point.to_dict() for point in get_service().nav_history(limit)]


@router.get("/nav/stats")
def get_nav_stats(limit: Optional[int] = Query(None, ge=1, le=5000)):
    stats = get_service().nav_stats(limit)
    if stats is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "No NAV history"})
    return stats


@router.get("/rebalance/stats")
def get_rebalance_stats():
    service = get_service()
    if service.trigger is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "No rebalance trigger"})
    stats = service.trigger.snapshot_stats()
    last = service.trigger.history[-1] if service.trigger.history else None
    stats["lastCycle"] = last.to_dict() if last else None
    stats["paused"] = service.is_paused()
    return stats


@router.post("/rebalance/trigger", dependencies=[Depends(require_admin)])
def trigger_rebalance():
    service = get_service()
    if service.trigger is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "No rebalance trigger"})
    return service.trigger_now().to_dict()


def attach_to_app(app) -> None:
    """Include settlement routes on an existing FastAPI app."""
    app.include_router(router)
