"""Pause flag and per-account cooldown guards consulted before every mutation."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Optional
import logging
import math

from settlement.errors import CooldownActive, Paused
from settlement.models import ActionKind, CooldownState, utc_now

logger = logging.getLogger(__name__)

PAUSE_STATE_KEY = "paused"


class GuardStore(ABC):
    """Storage for the pause flag and cooldown timestamps."""

    @abstractmethod
    def get_paused(self) -> bool: ...

    @abstractmethod
    def set_paused(self, paused: bool) -> None: ...

    @abstractmethod
    def get_cooldown(self, account: str) -> CooldownState: ...

    @abstractmethod
    def set_next_allowed(self, account: str, kind: ActionKind, when: datetime) -> None: ...


class InMemoryGuardStore(GuardStore):

    def __init__(self):
        self._paused = False
        self._cooldowns: Dict[str, CooldownState] = {}
        self._lock = Lock()

    def get_paused(self) -> bool:
        with self._lock:
            return self._paused

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = bool(paused)

    def get_cooldown(self, account: str) -> CooldownState:
        with self._lock:
            return self._cooldowns.get(account, CooldownState(account=account))

    def set_next_allowed(self, account: str, kind: ActionKind, when: datetime) -> None:
        with self._lock:
            state = self._cooldowns.get(account, CooldownState(account=account))
            if kind is ActionKind.DEPOSIT:
                state = replace(state, next_deposit_allowed_at=when)
            else:
                state = replace(state, next_redeem_allowed_at=when)
            self._cooldowns[account] = state


class PostgresGuardStore(GuardStore):
    """Pause flag in ``system_state``, cooldowns in ``account_cooldowns``."""

    def get_paused(self) -> bool:
        from settlement.db.queries import get_system_state

        value = get_system_state(PAUSE_STATE_KEY)
        return bool(value and value.get("paused"))

    def set_paused(self, paused: bool) -> None:
        from settlement.db.queries import write_system_state

        write_system_state(PAUSE_STATE_KEY, {"paused": bool(paused)})

    def get_cooldown(self, account: str) -> CooldownState:
        from settlement.db.queries import get_account_cooldown

        row = get_account_cooldown(account)
        if row is None:
            return CooldownState(account=account)
        return CooldownState(
            account=account,
            next_deposit_allowed_at=row["next_deposit_allowed_at"],
            next_redeem_allowed_at=row["next_redeem_allowed_at"],
        )

    def set_next_allowed(self, account: str, kind: ActionKind, when: datetime) -> None:
        from settlement.db.queries import write_account_cooldown

        write_account_cooldown(account, kind.value, when)


class CooldownSupervisor:
    """
    Guard functions for the pause flag and cooldown windows.

    Checks only compare stored timestamps with ``clock()``; the sole write is
    ``record_action`` (and the operator's ``set_paused``).
    """

    def __init__(
        self,
        store: Optional[GuardStore] = None,
        deposit_window_seconds: int = 0,
        redeem_window_seconds: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store or InMemoryGuardStore()
        self.windows = {
            ActionKind.DEPOSIT: int(deposit_window_seconds),
            ActionKind.REDEEM: int(redeem_window_seconds),
        }
        self.clock = clock

    def check_pause(self) -> None:
        if self.store.get_paused():
            raise Paused()

    def is_paused(self) -> bool:
        return self.store.get_paused()

    def set_paused(self, paused: bool) -> None:
        self.store.set_paused(paused)
        logger.warning("Vault %s by operator", "PAUSED" if paused else "UNPAUSED")

    def check_cooldown(self, account: str, kind: ActionKind) -> None:
        next_allowed = self.store.get_cooldown(account).next_allowed(kind)
        if next_allowed is None:
            return
        now = self.clock()
        if now < next_allowed:
            remaining = math.ceil((next_allowed - now).total_seconds())
            raise CooldownActive(account, kind.value, remaining)

    def record_action(self, account: str, kind: ActionKind, window: Optional[int] = None) -> datetime:
        """Start the cooldown for ``kind``; returns the next allowed time."""
        seconds = self.windows[kind] if window is None else int(window)
        when = self.clock() + timedelta(seconds=seconds)
        self.store.set_next_allowed(account, kind, when)
        logger.debug("Cooldown %s for %s until %s", kind.value, account, when.isoformat())
        return when

    def cooldown_state(self, account: str) -> CooldownState:
        return self.store.get_cooldown(account)
