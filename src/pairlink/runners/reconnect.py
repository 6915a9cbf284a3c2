"""Reconnection supervisor.

    Idle -> ReconnectRequested -> (backoff) -> Activating -> Activated | Error

One re-activation attempt per trigger. A deactivation schedules it on its
own; reconnect() also drops the transport session handle and resets the
session first. Nothing retries after Error.
"""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Optional

from ..contracts.v1 import ActivationState, SessionState
from ..kernel.loop import KeyedTimers
from ..kernel.session import SessionLifecycleManager
from ..kernel.settings import ConnectorSettings
from ..ports.transport.base import PeerTransport


logger = logging.getLogger("pairlink.reconnect")


class ReconnectState(str, Enum):
    IDLE = "idle"
    RECONNECT_REQUESTED = "reconnect_requested"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    ERROR = "error"


class ReconnectionSupervisor:
    _TIMER_KEY = "reconnect.attempt"

    def __init__(
        self,
        session: SessionLifecycleManager,
        transport: PeerTransport,
        timers: KeyedTimers,
        *,
        settings: Optional[ConnectorSettings] = None,
    ) -> None:
        self._session = session
        self._transport = transport
        self._timers = timers
        self._settings = settings or ConnectorSettings()
        self._lock = threading.Lock()
        self._state = ReconnectState.IDLE
        self._attempts = 0
        self._last_reason = ""
        session.set_deactivation_hook(self.on_deactivated)
        session.add_listener(self._on_session_transition)

    @property
    def state(self) -> ReconnectState:
        with self._lock:
            return self._state

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    def snapshot(self) -> dict:
        with self._lock:
            return {"state": self._state.value, "attempts": self._attempts, "last_reason": self._last_reason}

    def on_deactivated(self) -> None:
        self._request("deactivated")

    def reconnect(self) -> None:
        """Explicit request: drop the current handle, reset, then re-activate after the backoff."""
        self._set(ReconnectState.RECONNECT_REQUESTED, "explicit")
        self._transport.teardown()
        self._session.reset()
        self._schedule()

    # ------------------------------------------------------------------

    def _request(self, reason: str) -> None:
        self._set(ReconnectState.RECONNECT_REQUESTED, reason)
        self._schedule()

    def _schedule(self) -> None:
        delay = self._settings.reconnect_delay_seconds
        logger.info("re-activation scheduled in %.2fs", delay, extra={"role": self._session.role.value})
        self._timers.schedule(self._TIMER_KEY, delay, self._attempt)

    def _attempt(self) -> None:
        if self._session.state.activated:
            self._set(ReconnectState.ACTIVATED)
            return
        with self._lock:
            self._attempts += 1
        self._set(ReconnectState.ACTIVATING)
        self._session.activate()

    def _on_session_transition(self, old: SessionState, new: SessionState) -> None:
        if self.state != ReconnectState.ACTIVATING:
            return
        if new.activation == ActivationState.ACTIVATED:
            self._set(ReconnectState.ACTIVATED)
        elif new.activation != ActivationState.ACTIVATING:
            self._set(ReconnectState.ERROR)
            logger.warning(
                "re-activation ended in %s; waiting for an explicit reconnect",
                new.activation.value,
                extra={"role": self._session.role.value, "activation": new.activation.value},
            )

    def _set(self, state: ReconnectState, reason: Optional[str] = None) -> None:
        with self._lock:
            old = self._state
            self._state = state
            if reason is not None:
                self._last_reason = reason
        if old != state:
            logger.debug("reconnect %s -> %s", old.value, state.value, extra={"role": self._session.role.value})
