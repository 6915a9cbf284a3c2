"""Session event channel.

Transports publish a narrow, enumerated set of events from whatever thread
they run on; the channel marshals every delivery onto the owning loop so
subscribers always run on the single logical thread that owns peer state.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..util.time import unix_now
from .loop import Loop


logger = logging.getLogger("pairlink.events")


class SessionEventKind(str, Enum):
    ACTIVATION_COMPLETE = "activation_complete"
    REACHABILITY_CHANGED = "reachability_changed"
    MESSAGE_RECEIVED = "message_received"
    DEACTIVATED = "deactivated"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    data: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=unix_now)


Subscriber = Callable[[SessionEvent], None]


class EventChannel:
    def __init__(self, loop: Loop) -> None:
        self._loop = loop
        self._lock = threading.Lock()
        self._subs: List[Tuple[Optional[SessionEventKind], Subscriber]] = []

    @property
    def loop(self) -> Loop:
        return self._loop

    def subscribe(self, kind: Optional[SessionEventKind], callback: Subscriber) -> Callable[[], None]:
        """Register for one kind (or every kind with None). Returns an unsubscribe function."""
        entry = (kind, callback)
        with self._lock:
            self._subs.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subs:
                    self._subs.remove(entry)

        return _unsubscribe

    def publish(self, kind: SessionEventKind, **data: Any) -> SessionEvent:
        event = SessionEvent(kind=kind, data=data)
        self._loop.post(self._deliver, event)
        return event

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Marshal an arbitrary callback (e.g. a live reply) onto the owner loop."""
        self._loop.post(fn, *args)

    def _deliver(self, event: SessionEvent) -> None:
        with self._lock:
            targets = [cb for k, cb in self._subs if k is None or k == event.kind]
        for cb in targets:
            try:
                cb(event)
            except Exception:
                logger.exception("subscriber failed for %s", event.kind.value)
