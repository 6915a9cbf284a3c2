"""Human-facing status text.

Derived text is a pure lookup over SessionState (and, on the responder,
background liveness). Transient texts ("queued for delivery", "vibration
performed") are flashed on a StatusBoard and revert to the derived text when
their timer fires.
"""
from __future__ import annotations

import threading
from typing import Callable, List, Optional

from ..contracts.v1 import ActivationState, LivenessState, PeerRole, SessionState
from .loop import KeyedTimers


TEXT_NOT_ACTIVATED = "Session not activated"
TEXT_ACTIVATING = "Setting up connection..."
TEXT_READY = "Ready"
TEXT_INACTIVE = "Session inactive"

TEXT_SENT = "Vibration command sent ✓"
TEXT_QUEUED = "Queued for delivery"
TEXT_PERFORMED = "Vibration performed ✓"
TEXT_NOT_READY = "Session not ready: command not sent"
TEXT_REJECTED_BY_PEER = "Responder did not recognize the command"


def derive_session_text(state: SessionState, role: PeerRole) -> str:
    counterpart = "Responder" if role is PeerRole.CONTROLLER else "Controller"
    a = state.activation
    if a == ActivationState.NOT_ACTIVATED:
        return TEXT_NOT_ACTIVATED
    if a == ActivationState.ACTIVATING:
        return TEXT_ACTIVATING
    if a == ActivationState.INACTIVE:
        return TEXT_INACTIVE
    if a == ActivationState.ERROR:
        return f"Session error: {state.error}" if state.error else "Session error"
    if not state.peer_installed:
        return f"{counterpart} app not installed"
    if state.reachable:
        return TEXT_READY
    if role is PeerRole.CONTROLLER:
        return "Responder not reachable (commands will be queued)"
    return "Ready (controller away)"


def derive_responder_text(state: SessionState, liveness: LivenessState) -> str:
    text = derive_session_text(state, PeerRole.RESPONDER)
    if liveness == LivenessState.ACTIVE:
        return f"{text} · background on"
    if liveness == LivenessState.DENIED:
        return f"{text} · background denied"
    if liveness == LivenessState.FAILED:
        return f"{text} · background failed"
    return text


def failure_text(message: str) -> str:
    return f"Error: {message}"


class StatusBoard:
    """Display text of one peer: derived baseline plus timed flashes."""

    _REVERT_KEY = "status.revert"

    def __init__(self, timers: KeyedTimers, derive: Callable[[], str]) -> None:
        self._timers = timers
        self._derive = derive
        self._lock = threading.Lock()
        self._text = derive()
        self._listeners: List[Callable[[str], None]] = []

    @property
    def text(self) -> str:
        with self._lock:
            return self._text

    def add_listener(self, fn: Callable[[str], None]) -> None:
        self._listeners.append(fn)

    def show(self, text: str) -> None:
        """Set text until the next refresh or flash; pending reverts become stale."""
        self._timers.invalidate(self._REVERT_KEY)
        self._set(text)

    def flash(self, text: str, revert_after: float, *, revert_to: Optional[Callable[[], str]] = None) -> None:
        self._set(text)
        derive = revert_to or self._derive
        self._timers.schedule(self._REVERT_KEY, revert_after, lambda: self._set(derive()))

    def refresh(self) -> None:
        """Re-derive from current state (e.g. after a session transition)."""
        self._timers.invalidate(self._REVERT_KEY)
        self._set(self._derive())

    def _set(self, text: str) -> None:
        with self._lock:
            changed = text != self._text
            self._text = text
        if changed:
            for fn in list(self._listeners):
                fn(text)
