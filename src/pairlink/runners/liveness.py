"""Background liveness lease for the responder.

The lease keeps the responder eligible to receive messages while it is not
in the foreground. It is independent of the session state and reported
alongside it:

    NotRequested -> Requesting -> Granted -> Active | Failed
                              \\-> Denied
    Active <-> Paused, Active -> Ended | Failed (platform notifications)
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from ..contracts.v1 import ConnectorError, ErrorCode, LivenessState, connector_error
from ..kernel.loop import Loop
from ..kernel.settings import LivenessSettings
from ..ports.capabilities import LivenessCapability


logger = logging.getLogger("pairlink.liveness")

LivenessListener = Callable[[LivenessState, LivenessState], None]

_NOTIFIED_STATES = {LivenessState.ENDED, LivenessState.PAUSED, LivenessState.ACTIVE, LivenessState.FAILED}
_HELD_STATES = {LivenessState.GRANTED, LivenessState.ACTIVE, LivenessState.PAUSED}


class BackgroundLiveness:
    def __init__(self, capability: LivenessCapability, loop: Loop, settings: Optional[LivenessSettings] = None) -> None:
        self._capability = capability
        self._loop = loop
        self._settings = settings or LivenessSettings()
        self._lock = threading.Lock()
        self._state = LivenessState.NOT_REQUESTED
        self._last_error: Optional[ConnectorError] = None
        self._listeners: List[LivenessListener] = []
        capability.set_notifier(lambda s: self._loop.post(self._on_notification, s))

    @property
    def state(self) -> LivenessState:
        with self._lock:
            return self._state

    @property
    def is_live(self) -> bool:
        return self.state == LivenessState.ACTIVE

    @property
    def last_error(self) -> Optional[ConnectorError]:
        with self._lock:
            return self._last_error

    def add_listener(self, fn: LivenessListener) -> None:
        self._listeners.append(fn)

    def acquire(self) -> None:
        """Request and start the lease. Results arrive asynchronously."""
        if not self._settings.enabled:
            logger.info("background liveness disabled by settings")
            return
        if self.state in (LivenessState.REQUESTING, LivenessState.GRANTED, LivenessState.ACTIVE):
            return
        self._set(LivenessState.REQUESTING)
        config = {"kind": self._settings.kind, **self._settings.options}
        self._capability.request(config, lambda granted: self._loop.post(self._on_request_result, granted))

    def release(self) -> None:
        state = self.state
        if state in _HELD_STATES:
            self._capability.end()
        if state in _HELD_STATES or state == LivenessState.REQUESTING:
            self._set(LivenessState.ENDED)

    # ------------------------------------------------------------------

    def _on_request_result(self, granted: bool) -> None:
        if self.state != LivenessState.REQUESTING:
            return
        if not granted:
            err = connector_error(ErrorCode.AUTHORIZATION_DENIED, "background liveness was not authorized")
            with self._lock:
                self._last_error = err
            self._set(LivenessState.DENIED)
            logger.warning(err.message, extra={"liveness": LivenessState.DENIED.value})
            return
        self._set(LivenessState.GRANTED)
        self._capability.begin(lambda started: self._loop.post(self._on_begin_result, started))

    def _on_begin_result(self, started: bool) -> None:
        if self.state != LivenessState.GRANTED:
            return
        if started:
            self._set(LivenessState.ACTIVE)
            return
        err = connector_error(ErrorCode.ACTIVATION_FAILED, "background liveness session did not start")
        with self._lock:
            self._last_error = err
        self._set(LivenessState.FAILED)
        logger.warning(err.message, extra={"liveness": LivenessState.FAILED.value})

    def _on_notification(self, state: LivenessState) -> None:
        if state not in _NOTIFIED_STATES:
            logger.debug("ignoring liveness notification %s", state)
            return
        current = self.state
        if current in (LivenessState.NOT_REQUESTED, LivenessState.REQUESTING, LivenessState.DENIED):
            return
        self._set(state)

    def _set(self, state: LivenessState) -> None:
        with self._lock:
            old = self._state
            if old == state:
                return
            self._state = state
        logger.info("liveness %s -> %s", old.value, state.value, extra={"liveness": state.value})
        for fn in list(self._listeners):
            try:
                fn(old, state)
            except Exception:
                logger.exception("liveness listener failed")
