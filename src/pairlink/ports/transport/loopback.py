"""
In-process paired transport.

Both endpoints share one LoopbackLink; the link models what the platform
would report: whether each role is installed, whether the live channel is
usable, and whether an endpoint is activated. Queued payloads are held in a
FIFO outbox until the receiving endpoint is activated.

Fault knobs (for tests and the simulator):
- set_reachable(): flips the live channel and notifies activated endpoints
- fail_next_live(): the next live send fails before reaching the peer
- fail_next_activation(): the next activate() reports Error
- deactivate(): platform-initiated deactivation of one endpoint
- redeliver_queued: every queued payload is delivered twice (at-least-once)
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from ...contracts.v1 import ActivationState, Channel, PeerRole
from ...kernel.events import SessionEventKind
from .base import ErrorCallback, PeerTransport, ReplyCallback, TransportError


logger = logging.getLogger("pairlink.transport")


class LoopbackTransport(PeerTransport):
    transport_name = "loopback"

    def __init__(self, link: "LoopbackLink", role: PeerRole) -> None:
        super().__init__(role)
        self._link = link
        self.activated = False
        self.handle: Optional[str] = None
        self.activation_count = 0
        self.live_sent: List[Dict[str, Any]] = []
        self.enqueued: List[Dict[str, Any]] = []

    @property
    def peer(self) -> "LoopbackTransport":
        return self._link.endpoint(self.role.counterpart)

    def is_supported(self) -> bool:
        return self._link.supported

    def activate(self) -> None:
        self.activation_count += 1
        error = self._link._take_activation_failure(self.role)
        if error:
            self._emit(SessionEventKind.ACTIVATION_COMPLETE, state=ActivationState.ERROR.value, error=error)
            return
        self.handle = f"{self.role.value}-{self.activation_count}"
        self.activated = True
        self._emit(
            SessionEventKind.ACTIVATION_COMPLETE,
            state=ActivationState.ACTIVATED.value,
            peer_installed=self._link.installed(self.role.counterpart),
            reachable=self._link.live_usable(),
        )
        self._link._notify_reachability()
        self._link._flush_outbox(self.role)

    def teardown(self) -> None:
        self.activated = False
        self.handle = None
        self._link._notify_reachability()

    def send_live(self, payload: Dict[str, Any], *, on_reply: ReplyCallback, on_error: ErrorCallback) -> None:
        self.live_sent.append(dict(payload))
        failure = self._link._take_live_failure()
        if failure:
            self._marshal(on_error, failure)
            return
        peer = self.peer
        if not self.activated or not self._link.live_usable():
            self._marshal(on_error, "peer not reachable")
            return

        replied = threading.Event()

        def _reply(ack: Dict[str, Any]) -> None:
            if replied.is_set():
                return
            replied.set()
            if self._link.drop_replies:
                self._marshal(on_error, "reply lost")
            else:
                self._marshal(on_reply, dict(ack))

        peer._emit(
            SessionEventKind.MESSAGE_RECEIVED,
            payload=dict(payload),
            channel=Channel.LIVE.value,
            reply=_reply,
        )

    def enqueue(self, payload: Dict[str, Any]) -> None:
        if not self._link.installed(self.role.counterpart):
            raise TransportError(f"{self.role.counterpart.value} is not installed")
        if self._link.reject_queued:
            raise TransportError("queued channel rejected the payload")
        self.enqueued.append(dict(payload))
        self._link._outbox(self.role.counterpart).append(dict(payload))
        self._link._flush_outbox(self.role.counterpart)


class LoopbackLink:
    """Shared medium for a controller/responder pair in one process."""

    def __init__(self, *, reachable: bool = True, controller_installed: bool = True, responder_installed: bool = True) -> None:
        self.supported = True
        self.drop_replies = False
        self.reject_queued = False
        self.redeliver_queued = False
        self._reachable = reachable
        self._installed = {
            PeerRole.CONTROLLER: controller_installed,
            PeerRole.RESPONDER: responder_installed,
        }
        self._outboxes: Dict[PeerRole, Deque[Dict[str, Any]]] = {
            PeerRole.CONTROLLER: deque(),
            PeerRole.RESPONDER: deque(),
        }
        self._live_failures: Deque[str] = deque()
        self._activation_failures: Dict[PeerRole, Deque[str]] = {
            PeerRole.CONTROLLER: deque(),
            PeerRole.RESPONDER: deque(),
        }
        self.controller = LoopbackTransport(self, PeerRole.CONTROLLER)
        self.responder = LoopbackTransport(self, PeerRole.RESPONDER)

    def endpoint(self, role: PeerRole) -> LoopbackTransport:
        return self.controller if role is PeerRole.CONTROLLER else self.responder

    def installed(self, role: PeerRole) -> bool:
        return bool(self._installed[role])

    def live_usable(self) -> bool:
        return self._reachable and self.controller.activated and self.responder.activated

    # Knobs

    def set_reachable(self, reachable: bool) -> None:
        self._reachable = bool(reachable)
        self._notify_reachability()

    def set_installed(self, role: PeerRole, installed: bool) -> None:
        self._installed[role] = bool(installed)
        self._notify_reachability()

    def fail_next_live(self, reason: str = "peer became unreachable") -> None:
        self._live_failures.append(reason)

    def fail_next_activation(self, role: PeerRole, error: str = "activation refused") -> None:
        self._activation_failures[role].append(error)

    def deactivate(self, role: PeerRole) -> None:
        ep = self.endpoint(role)
        ep.activated = False
        ep._emit(SessionEventKind.DEACTIVATED)
        self._notify_reachability()

    def pending_queued(self, role: PeerRole) -> int:
        return len(self._outboxes[role])

    # Internals

    def _notify_reachability(self) -> None:
        usable = self.live_usable()
        for ep in (self.controller, self.responder):
            if ep.activated:
                ep._emit(
                    SessionEventKind.REACHABILITY_CHANGED,
                    reachable=usable,
                    peer_installed=self.installed(ep.role.counterpart),
                )

    def _take_live_failure(self) -> str:
        return self._live_failures.popleft() if self._live_failures else ""

    def _take_activation_failure(self, role: PeerRole) -> str:
        q = self._activation_failures[role]
        return q.popleft() if q else ""

    def _outbox(self, role: PeerRole) -> Deque[Dict[str, Any]]:
        return self._outboxes[role]

    def _flush_outbox(self, role: PeerRole) -> None:
        target = self.endpoint(role)
        box = self._outboxes[role]
        while target.activated and box:
            payload = box.popleft()
            copies = 2 if self.redeliver_queued else 1
            for _ in range(copies):
                target._emit(SessionEventKind.MESSAGE_RECEIVED, payload=dict(payload), channel=Channel.QUEUED.value)
        if box:
            logger.debug("%d queued payload(s) held for %s", len(box), role.value)
