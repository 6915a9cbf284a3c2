"""Controller and responder facades.

Each facade owns the pieces of one peer process: the loop, the event
channel, the session, the status board and the reconnection supervisor.
The controller adds the dispatcher; the responder adds the action handler
and the background liveness lease.

Nothing here is global: construct one facade per peer and pass it around.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .contracts.v1 import Ack, Command, PeerRole, SendOutcome, SessionState
from .daemon.delivery import DualChannelDispatcher
from .daemon.handler import ResponderActionHandler, ResponderCounters
from .kernel.events import EventChannel, SessionEventKind
from .kernel.loop import KeyedTimers, Loop, ThreadLoop
from .kernel.session import SessionLifecycleManager
from .kernel.settings import ConnectorSettings
from .kernel.status import StatusBoard, derive_responder_text
from .ports.capabilities import EffectCapability, LivenessCapability, LocalLiveness, LoggingEffect
from .ports.transport.base import PeerTransport
from .runners.liveness import BackgroundLiveness
from .runners.reconnect import ReconnectionSupervisor


logger = logging.getLogger("pairlink.peers")


class _Peer:
    role: PeerRole

    def __init__(
        self,
        transport: PeerTransport,
        *,
        loop: Optional[Loop] = None,
        settings: Optional[ConnectorSettings] = None,
    ) -> None:
        self.settings = settings or ConnectorSettings()
        self._owns_loop = loop is None
        self.loop: Loop = loop if loop is not None else ThreadLoop(f"pairlink-{self.role.value}").start()
        self.transport = transport
        self.events = EventChannel(self.loop)
        transport.bind(self.events)
        self.timers = KeyedTimers(self.loop, supersede=self.settings.supersede_stale_timers)
        self.session = SessionLifecycleManager(transport, self.events, role=self.role)
        self.supervisor = ReconnectionSupervisor(self.session, transport, self.timers, settings=self.settings)

    def _make_board(self) -> StatusBoard:
        board = StatusBoard(self.timers, self._derive_text)
        self.session.add_listener(lambda old, new: board.refresh())
        return board

    def _derive_text(self) -> str:
        return self.session.derive_status_text()

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def status_text(self) -> str:
        return self.board.text

    def reconnect(self) -> None:
        self.loop.post(self.supervisor.reconnect)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "transport": self.transport.transport_name,
            "session": self.state.model_dump(mode="json"),
            "status": self.status_text,
            "reconnect": self.supervisor.snapshot(),
        }

    def close(self) -> None:
        self.transport.close()
        if self._owns_loop and isinstance(self.loop, ThreadLoop):
            self.loop.stop()


class Controller(_Peer):
    role = PeerRole.CONTROLLER

    def __init__(
        self,
        transport: PeerTransport,
        *,
        loop: Optional[Loop] = None,
        settings: Optional[ConnectorSettings] = None,
    ) -> None:
        super().__init__(transport, loop=loop, settings=settings)
        self.board = self._make_board()
        self.dispatcher = DualChannelDispatcher(self.session, transport, self.board, settings=self.settings)

    def start(self) -> None:
        self.loop.post(self.session.activate)

    def can_send(self) -> bool:
        return self.dispatcher.can_send()

    def send_command(self, command: Optional[Command] = None) -> SendOutcome:
        """Issue on the calling thread; the ack or fallback lands on the owner loop."""
        return self.dispatcher.send_command(command)

    @property
    def last_ack(self) -> Optional[Ack]:
        return self.dispatcher.last_ack

    def snapshot(self) -> Dict[str, Any]:
        out = super().snapshot()
        ack = self.last_ack
        out["last_ack"] = ack.to_wire() if ack is not None else None
        out["delivery"] = self.dispatcher.stats()
        out["records"] = self.dispatcher.records()
        return out


class Responder(_Peer):
    role = PeerRole.RESPONDER

    def __init__(
        self,
        transport: PeerTransport,
        *,
        effect: Optional[EffectCapability] = None,
        liveness: Optional[LivenessCapability] = None,
        loop: Optional[Loop] = None,
        settings: Optional[ConnectorSettings] = None,
    ) -> None:
        super().__init__(transport, loop=loop, settings=settings)
        self.effect = effect or LoggingEffect()
        self.liveness = BackgroundLiveness(liveness or LocalLiveness(), self.loop, self.settings.liveness)
        self.board = self._make_board()
        self.liveness.add_listener(lambda old, new: self.board.refresh())
        self.handler = ResponderActionHandler(
            self.effect,
            self.board,
            self.timers,
            background_live=lambda: self.liveness.is_live,
            settings=self.settings,
        )
        self.events.subscribe(SessionEventKind.MESSAGE_RECEIVED, self.handler.on_message_event)

    def _derive_text(self) -> str:
        return derive_responder_text(self.session.state, self.liveness.state)

    def start(self, *, acquire_liveness: Optional[bool] = None) -> None:
        self.loop.post(self.session.activate)
        acquire = self.settings.liveness.enabled if acquire_liveness is None else acquire_liveness
        if acquire:
            self.loop.post(self.liveness.acquire)

    @property
    def counters(self) -> ResponderCounters:
        return self.handler.counters

    def snapshot(self) -> Dict[str, Any]:
        out = super().snapshot()
        out["counters"] = self.counters.to_dict()
        out["liveness"] = self.liveness.state.value
        return out

    def close(self) -> None:
        self.liveness.release()
        super().close()
