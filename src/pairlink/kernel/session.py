"""Session lifecycle manager.

Single source of truth for transport state on one peer. Transport callbacks
arrive through the EventChannel (already marshaled onto the owner loop) and
are translated into SessionState snapshots:

    NotActivated -> Activating -> Activated | Inactive | NotActivated | Error
    Activated --deactivated--> Inactive (reconnect supervisor takes over)

Invariant: reachable is only ever true while activated.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from ..contracts.v1 import ActivationState, PeerRole, SessionState
from ..ports.transport.base import PeerTransport, TransportError
from .events import EventChannel, SessionEvent, SessionEventKind
from .status import derive_session_text


logger = logging.getLogger("pairlink.session")

StateListener = Callable[[SessionState, SessionState], None]

_RESULT_STATES = {
    ActivationState.ACTIVATED,
    ActivationState.INACTIVE,
    ActivationState.NOT_ACTIVATED,
    ActivationState.ERROR,
}


def _coerce_result(raw: Any) -> ActivationState:
    try:
        state = ActivationState(raw)
    except ValueError:
        return ActivationState.ERROR
    # "activating" is not a completion result.
    return state if state in _RESULT_STATES else ActivationState.ERROR


class SessionLifecycleManager:
    def __init__(self, transport: PeerTransport, events: EventChannel, *, role: PeerRole) -> None:
        self._transport = transport
        self._events = events
        self._role = role
        self._lock = threading.Lock()
        self._state = SessionState()
        self._listeners: List[StateListener] = []
        self._deactivation_hook: Optional[Callable[[], None]] = None

        events.subscribe(SessionEventKind.ACTIVATION_COMPLETE, self._on_activation_event)
        events.subscribe(SessionEventKind.REACHABILITY_CHANGED, self._on_reachability_event)
        events.subscribe(SessionEventKind.DEACTIVATED, self._on_deactivated_event)

    @property
    def role(self) -> PeerRole:
        return self._role

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def add_listener(self, fn: StateListener) -> None:
        """fn(old, new) runs after every committed transition."""
        self._listeners.append(fn)

    def set_deactivation_hook(self, hook: Optional[Callable[[], None]]) -> None:
        self._deactivation_hook = hook

    def derive_status_text(self) -> str:
        return derive_session_text(self.state, self._role)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def activate(self) -> None:
        """Idempotent; the outcome arrives later as an ActivationComplete event."""
        current = self.state.activation
        if current in (ActivationState.ACTIVATING, ActivationState.ACTIVATED):
            return
        if not self._transport.is_supported():
            logger.warning("transport not supported on this host", extra={"role": self._role.value})
            self._commit(activation=ActivationState.ERROR, reachable=False, error="not supported")
            return
        self._commit(activation=ActivationState.ACTIVATING, reachable=False, error="")
        try:
            self._transport.activate()
        except TransportError as e:
            self.on_activation_complete(ActivationState.ERROR, error=str(e))

    def reset(self) -> None:
        """Back to NotActivated; only used by an explicit reconnect request."""
        self._commit(activation=ActivationState.NOT_ACTIVATED, peer_installed=False, reachable=False, error="")

    def on_activation_complete(
        self,
        result: Any,
        *,
        peer_installed: bool = False,
        reachable: bool = False,
        error: str = "",
    ) -> None:
        state = _coerce_result(result)
        if state == ActivationState.ACTIVATED:
            self._commit(
                activation=state,
                peer_installed=bool(peer_installed),
                reachable=bool(reachable),
                error="",
            )
            logger.info(
                "activation complete",
                extra={"role": self._role.value, "activation": state.value},
            )
            return
        msg = str(error or "")
        if state == ActivationState.ERROR and not msg:
            msg = f"unexpected activation result {result!r}"
        self._commit(activation=state, reachable=False, error=msg)
        logger.warning(
            "activation did not succeed: %s",
            msg or state.value,
            extra={"role": self._role.value, "activation": state.value},
        )

    def on_reachability_changed(self, reachable: bool, *, peer_installed: Optional[bool] = None) -> None:
        current = self.state
        if not current.activated:
            logger.debug(
                "reachability change ignored while %s",
                current.activation.value,
                extra={"role": self._role.value},
            )
            return
        update = {"reachable": bool(reachable)}
        if peer_installed is not None:
            update["peer_installed"] = bool(peer_installed)
        self._commit(**update)

    def on_deactivated(self) -> None:
        self._commit(activation=ActivationState.INACTIVE, reachable=False)
        logger.info("session deactivated", extra={"role": self._role.value})
        hook = self._deactivation_hook
        if hook is not None:
            hook()

    # ------------------------------------------------------------------
    # Event adapters
    # ------------------------------------------------------------------

    def _on_activation_event(self, event: SessionEvent) -> None:
        d = event.data
        self.on_activation_complete(
            d.get("state"),
            peer_installed=bool(d.get("peer_installed", False)),
            reachable=bool(d.get("reachable", False)),
            error=str(d.get("error") or ""),
        )

    def _on_reachability_event(self, event: SessionEvent) -> None:
        installed = event.data.get("peer_installed")
        self.on_reachability_changed(
            bool(event.data.get("reachable", False)),
            peer_installed=None if installed is None else bool(installed),
        )

    def _on_deactivated_event(self, event: SessionEvent) -> None:
        self.on_deactivated()

    # ------------------------------------------------------------------

    def _commit(self, **update: Any) -> None:
        with self._lock:
            old = self._state
            fields = old.model_dump()
            fields.update(update)
            if fields["activation"] != ActivationState.ACTIVATED:
                fields["reachable"] = False
            new = SessionState(**fields)
            if new == old:
                return
            self._state = new
        for fn in list(self._listeners):
            try:
                fn(old, new)
            except Exception:
                logger.exception("session listener failed", extra={"role": self._role.value})
