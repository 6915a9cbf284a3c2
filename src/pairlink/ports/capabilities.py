"""
Local capabilities consumed by the responder.

- EffectCapability: the physical effect (a haptic pulse); fire-and-forget
- LivenessCapability: the platform lease that keeps the responder eligible to
  receive messages in the background

Both are opaque to the connector; the defaults here run on any host.
"""

from __future__ import annotations

import logging
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, TextIO

from ..contracts.v1 import LivenessState


logger = logging.getLogger("pairlink.capabilities")

ResultCallback = Callable[[bool], None]
StateCallback = Callable[[LivenessState], None]


class EffectCapability(ABC):
    @abstractmethod
    def perform(self, *, secondary: bool = False) -> None:
        """Run the effect once. Assumed to always succeed."""


class LoggingEffect(EffectCapability):
    """Logs each pulse; optionally rings the terminal bell."""

    def __init__(self, *, bell: bool = False, stream: Optional[TextIO] = None) -> None:
        self._bell = bell
        self._stream = stream
        self._lock = threading.Lock()
        self.performed = 0
        self.secondary = 0

    def perform(self, *, secondary: bool = False) -> None:
        with self._lock:
            if secondary:
                self.secondary += 1
            else:
                self.performed += 1
        logger.info("effect performed%s", " (secondary)" if secondary else "")
        if self._bell:
            out = self._stream or sys.stdout
            try:
                out.write("\a")
                out.flush()
            except (OSError, ValueError):
                pass


class LivenessCapability(ABC):
    """
    Background liveness lease.

    request() asks for authorization, begin() starts the lease; both report
    through callbacks that may run on any thread. State changes after that
    (ended, paused, resumed, failed) go to the notifier.
    """

    def __init__(self) -> None:
        self._notifier: Optional[StateCallback] = None

    def set_notifier(self, fn: Optional[StateCallback]) -> None:
        self._notifier = fn

    def notify(self, state: LivenessState) -> None:
        fn = self._notifier
        if fn is not None:
            fn(state)

    @abstractmethod
    def request(self, config: Dict[str, Any], on_result: ResultCallback) -> None:
        ...

    @abstractmethod
    def begin(self, on_result: ResultCallback) -> None:
        ...

    @abstractmethod
    def end(self) -> None:
        ...


class LocalLiveness(LivenessCapability):
    """In-process lease: grants and starts per configuration, immediately."""

    def __init__(self, *, grant: bool = True, start: bool = True) -> None:
        super().__init__()
        self.grant = grant
        self.start = start
        self.held = False
        self.last_config: Dict[str, Any] = {}

    def request(self, config: Dict[str, Any], on_result: ResultCallback) -> None:
        self.last_config = dict(config)
        on_result(bool(self.grant))

    def begin(self, on_result: ResultCallback) -> None:
        self.held = bool(self.start)
        on_result(self.held)

    def end(self) -> None:
        if self.held:
            self.held = False
            self.notify(LivenessState.ENDED)
