"""Responder action handler.

Interprets incoming commands from either channel, applies the effect,
updates the counters and (live channel only) builds the ack.

Redelivery of the same command counts again unless dedup_window_seconds is
set, in which case a command_id already handled inside the window is
acknowledged without a second effect.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from ..contracts.v1 import Ack, AckStatus, Channel, Command
from ..kernel.events import SessionEvent
from ..kernel.loop import KeyedTimers
from ..kernel.settings import ConnectorSettings
from ..kernel.status import TEXT_PERFORMED, StatusBoard
from ..ports.capabilities import EffectCapability
from ..util.time import unix_now


logger = logging.getLogger("pairlink.handler")

ReplyFn = Callable[[Dict[str, Any]], None]


@dataclass
class ResponderCounters:
    vibration_count: int = 0
    last_vibrate_at: Optional[float] = None
    unknown_count: int = 0
    duplicate_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ResponderActionHandler:
    def __init__(
        self,
        effect: EffectCapability,
        board: StatusBoard,
        timers: KeyedTimers,
        *,
        background_live: Optional[Callable[[], bool]] = None,
        settings: Optional[ConnectorSettings] = None,
    ) -> None:
        self._effect = effect
        self._board = board
        self._timers = timers
        self._background_live = background_live or (lambda: False)
        self._settings = settings or ConnectorSettings()
        self._lock = threading.Lock()
        self._counters = ResponderCounters()
        self._seen: Dict[str, float] = {}

    @property
    def counters(self) -> ResponderCounters:
        """Copy of the current counters."""
        with self._lock:
            return ResponderCounters(**asdict(self._counters))

    # ------------------------------------------------------------------

    def handle_live(self, command: Command) -> Ack:
        outcome = self._apply(command, Channel.LIVE)
        status = AckStatus.UNKNOWN_ACTION if outcome == "unknown" else AckStatus.SUCCESS
        with self._lock:
            count = self._counters.vibration_count
        return Ack(
            status=status,
            responded_at=unix_now(),
            vibration_count=count,
            background_live=bool(self._background_live()),
            command_id=command.command_id,
        )

    def handle_queued(self, command: Command) -> None:
        self._apply(command, Channel.QUEUED)

    def handle_incoming(self, payload: Any, channel: Any, reply: Optional[ReplyFn] = None) -> None:
        cmd = Command.from_wire(payload)
        if Channel(channel) == Channel.LIVE:
            ack = self.handle_live(cmd)
            if reply is None:
                logger.warning("live command without a reply path", extra={"command_id": cmd.command_id})
                return
            reply(ack.to_wire())
            return
        self.handle_queued(cmd)

    def on_message_event(self, event: SessionEvent) -> None:
        d = event.data
        try:
            channel = Channel(d.get("channel") or Channel.QUEUED.value)
        except ValueError:
            logger.warning("message on unknown channel %r dropped", d.get("channel"))
            return
        self.handle_incoming(d.get("payload"), channel, d.get("reply"))

    # ------------------------------------------------------------------

    def _apply(self, command: Command, channel: Channel) -> str:
        log_extra = {"command_id": command.command_id, "channel": channel.value}
        if not command.recognized:
            with self._lock:
                self._counters.unknown_count += 1
            logger.info("unknown action %r ignored", command.action, extra=log_extra)
            return "unknown"

        if self._is_duplicate(command):
            with self._lock:
                self._counters.duplicate_count += 1
            logger.info("duplicate command ignored", extra=log_extra)
            return "duplicate"

        self._effect.perform()
        with self._lock:
            self._counters.vibration_count += 1
            self._counters.last_vibrate_at = unix_now()
            count = self._counters.vibration_count
        logger.info("vibration performed count=%s", count, extra=log_extra)

        if self._settings.secondary_pulse:
            self._timers.loop.call_later(
                self._settings.secondary_pulse_delay_seconds,
                lambda: self._effect.perform(secondary=True),
            )
        self._board.flash(TEXT_PERFORMED, self._settings.status_reset_seconds)
        return "performed"

    def _is_duplicate(self, command: Command) -> bool:
        window = self._settings.dedup_window_seconds
        if window <= 0 or not command.command_id:
            return False
        now = self._timers.loop.now()
        with self._lock:
            for cid, seen_at in list(self._seen.items()):
                if now - seen_at > window:
                    del self._seen[cid]
            if command.command_id in self._seen:
                return True
            self._seen[command.command_id] = now
        return False
