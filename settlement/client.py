"""Client-side helpers polling the settlement API."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

import requests

from settlement.errors import (
    CooldownActive,
    NotFound,
    Paused,
    RedemptionAlreadyPending,
    RedemptionRoutedInstant,
    SettlementError,
    Unauthorized,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("fulfilled", "cancelled")

_ERRORS_BY_CODE = {
    cls.code: cls for cls in (NotFound, Paused, RedemptionRoutedInstant, Unauthorized)
}


def rejection_error(account: str, resp) -> SettlementError:
    """Rebuild the SettlementError behind a 4xx response from its ``detail`` body."""
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = None
    if not isinstance(detail, dict):
        detail = {"message": str(detail or resp.text)}
    code = detail.get("error")
    message = detail.get("message", "")

    if code == CooldownActive.code:
        return CooldownActive(account, "redeem", int(detail.get("remainingSeconds", 0)))
    if code == RedemptionAlreadyPending.code:
        return RedemptionAlreadyPending(account, detail.get("requestId"))
    error = _ERRORS_BY_CODE.get(code, SettlementError)(message)
    if code and error.code != code:
        error.code = code
    return error


class RedemptionStatusPoller:
    """
    Poll ``GET /redemption/{id}`` until the request is fulfilled or cancelled.

    Polling is read-only. An unreachable server is logged and retried on the
    next tick without limit; only ``max_wait`` (if set) ends the wait early.
    """

    def __init__(
        self,
        base_url: str,
        poll_seconds: float = 5.0,
        timeout: float = 5.0,
        max_wait: Optional[float] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_seconds = poll_seconds
        self.timeout = timeout
        self.max_wait = max_wait
        self.session = session or requests.Session()
        self.sleep = sleep
        self.clock = clock
        self.failures = 0

    def fetch(self, request_id: int) -> Optional[Dict]:
        """One status read; None when the server could not answer."""
        try:
            resp = self.session.get(f"{self.base_url}/redemption/{request_id}", timeout=self.timeout)
        except requests.RequestException as exc:
            self.failures += 1
            logger.warning("Status poll failed for redemption %s: %s", request_id, exc)
            return None

        if resp.status_code == 404:
            raise NotFound(f"Redemption request {request_id} not found")
        if not resp.ok:
            self.failures += 1
            logger.debug("Status poll not ok (%s): %s", resp.status_code, resp.text)
            return None
        return resp.json()

    def wait_for_terminal(self, request_id: int) -> Dict:
        """
        Block until the request reaches a terminal status.

        Raises:
            NotFound: the server does not know the request
            TimeoutError: ``max_wait`` elapsed first
        """
        started = self.clock()
        logger.info("Polling redemption %s every %.1fs", request_id, self.poll_seconds)
        while True:
            status = self.fetch(request_id)
            if status is not None and status.get("status") in TERMINAL_STATUSES:
                logger.info("Redemption %s is %s", request_id, status["status"])
                return status

            if self.max_wait is not None and self.clock() - started >= self.max_wait:
                raise TimeoutError(f"Redemption {request_id} not settled after {self.max_wait}s")
            self.sleep(self.poll_seconds)

    def check_redeem(self, account: str, shares: int) -> Dict:
        """
        Ask whether a redemption can be paid instantly.

        If the server cannot answer (unreachable or 5xx) the caller is told to
        attempt the instant path (``degraded`` set) rather than being blocked.

        Raises:
            SettlementError: the server answered and refused the redemption
                (paused, cooldown, already pending, bad request)
        """
        try:
            resp = self.session.get(
                f"{self.base_url}/redeem-check",
                params={"account": account, "shares": str(shares)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Redeem check failed for %s: %s", account, exc)
            return self._degraded()

        if resp.ok:
            return resp.json()
        if resp.status_code < 500:
            error = rejection_error(account, resp)
            logger.info("Redeem check refused for %s: %s", account, error)
            raise error
        logger.warning("Redeem check unavailable (%s): %s", resp.status_code, resp.text)
        return self._degraded()

    @staticmethod
    def _degraded() -> Dict:
        return {"canRedeemInstantly": True, "shortfall": None, "degraded": True}
