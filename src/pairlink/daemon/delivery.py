"""Command delivery for the controller peer.

This module handles:
1. Channel choice: live when the session says the responder is reachable,
   queued otherwise
2. Fallback: a live send that fails mid-flight is re-issued on the queued
   channel without looking at reachability again
3. Display: acks, queued hand-offs and failures are reported as status text
4. Diagnostics: bounded in-memory delivery records and counters

Key design decisions:
- send_command() never blocks and never raises; the returned SendOutcome
  says what was issued, and delivery results arrive later as status text
- queued delivery is fire-and-forget: "Queued for delivery" is optimistic and
  reverts to the session-derived text after queued_grace_seconds
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional

from ..contracts.v1 import (
    Ack,
    Channel,
    Command,
    ConnectorError,
    ErrorCode,
    SendOutcome,
    connector_error,
)
from ..kernel.session import SessionLifecycleManager
from ..kernel.settings import ConnectorSettings
from ..kernel.status import (
    TEXT_NOT_READY,
    TEXT_QUEUED,
    TEXT_REJECTED_BY_PEER,
    TEXT_SENT,
    StatusBoard,
    failure_text,
)
from ..ports.transport.base import PeerTransport, TransportError
from ..util.time import utc_now_iso


logger = logging.getLogger("pairlink.delivery")

DEFAULT_HISTORY_SIZE = 50


# ============================================================================
# Delivery records
# ============================================================================


@dataclass
class DeliveryRecord:
    command_id: str
    action: str
    channel: str = ""
    outcome: str = "pending"  # pending | acked | rejected_by_peer | queued | not_ready | transport_rejected
    detail: str = ""
    vibration_count: Optional[int] = None
    fell_back: bool = False
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeliveryStats:
    live_sent: int = 0
    live_acked: int = 0
    live_failed: int = 0
    queued: int = 0
    rejected: int = 0
    not_ready: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# ============================================================================
# Dispatcher
# ============================================================================


class DualChannelDispatcher:
    """Chooses a channel per command and reports the result as status text.

    send_command() runs on the caller's thread and returns what it issued.
    Live replies and failures are marshaled onto the owner loop by the
    transport. Records, stats and the board are lock-guarded and session state
    is an immutable snapshot, so both threads may touch them.
    """

    def __init__(
        self,
        session: SessionLifecycleManager,
        transport: PeerTransport,
        board: StatusBoard,
        *,
        settings: Optional[ConnectorSettings] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._session = session
        self._transport = transport
        self._board = board
        self._settings = settings or ConnectorSettings()
        self._lock = threading.Lock()
        self._records: Deque[DeliveryRecord] = deque(maxlen=max(1, int(history_size)))
        self._stats = DeliveryStats()
        self._last_ack: Optional[Ack] = None
        self._last_error: Optional[ConnectorError] = None

    @property
    def last_ack(self) -> Optional[Ack]:
        with self._lock:
            return self._last_ack

    @property
    def last_error(self) -> Optional[ConnectorError]:
        with self._lock:
            return self._last_error

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return self._stats.to_dict()

    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._records]

    def can_send(self) -> bool:
        return self._session.state.activated

    # ------------------------------------------------------------------

    def send_command(self, command: Optional[Command] = None) -> SendOutcome:
        cmd = command or Command()
        state = self._session.state
        record = DeliveryRecord(command_id=cmd.command_id, action=cmd.action)
        with self._lock:
            self._records.append(record)

        if not state.activated:
            err = connector_error(
                ErrorCode.SESSION_NOT_READY,
                "session is not activated",
                activation=state.activation.value,
            )
            with self._lock:
                self._stats.not_ready += 1
                self._last_error = err
            self._update(record, outcome="not_ready", detail=err.message)
            self._board.show(TEXT_NOT_READY)
            logger.info(
                "command not sent: session %s",
                state.activation.value,
                extra={"command_id": cmd.command_id, "activation": state.activation.value},
            )
            return SendOutcome(ok=False, command_id=cmd.command_id, error=err)

        if state.reachable:
            self._send_live(cmd, record)
            return SendOutcome(ok=True, command_id=cmd.command_id, channel=Channel.LIVE)

        return self._send_queued(cmd, record, reason="responder not reachable")

    # ------------------------------------------------------------------
    # Live channel
    # ------------------------------------------------------------------

    def _send_live(self, cmd: Command, record: DeliveryRecord) -> None:
        live = cmd.model_copy(update={"delivery_hint": Channel.LIVE})
        self._update(record, channel=Channel.LIVE.value)
        with self._lock:
            self._stats.live_sent += 1
        logger.debug("sending live", extra={"command_id": cmd.command_id, "channel": Channel.LIVE.value})

        try:
            self._transport.send_live(
                live.to_wire(),
                on_reply=lambda payload: self._on_live_reply(cmd, record, payload),
                on_error=lambda reason: self._on_live_error(cmd, record, reason),
            )
        except TransportError as e:
            self._on_live_error(cmd, record, str(e))

    def _on_live_reply(self, cmd: Command, record: DeliveryRecord, payload: Dict[str, Any]) -> None:
        ack = Ack.from_wire(payload)
        if ack is None:
            # The responder acted on it; re-sending on the queued channel would double-count.
            with self._lock:
                self._stats.live_failed += 1
            self._update(record, outcome="invalid_ack", detail="unreadable acknowledgment")
            self._board.show(failure_text("unreadable acknowledgment"))
            logger.warning("unreadable ack: %r", payload, extra={"command_id": cmd.command_id})
            return

        with self._lock:
            self._stats.live_acked += 1
            self._last_ack = ack
        reset = self._settings.status_reset_seconds
        if ack.ok:
            self._update(record, outcome="acked", vibration_count=ack.vibration_count)
            self._board.flash(f"{TEXT_SENT} (count: {ack.vibration_count})", reset)
        else:
            self._update(record, outcome="rejected_by_peer", vibration_count=ack.vibration_count)
            self._board.flash(TEXT_REJECTED_BY_PEER, reset)
        logger.info(
            "ack %s count=%s",
            ack.status.value,
            ack.vibration_count,
            extra={"command_id": cmd.command_id, "channel": Channel.LIVE.value},
        )

    def _on_live_error(self, cmd: Command, record: DeliveryRecord, reason: str) -> None:
        with self._lock:
            self._stats.live_failed += 1
        logger.info(
            "live send failed, falling back: %s",
            reason,
            extra={"command_id": cmd.command_id, "channel": Channel.LIVE.value, "reason": reason},
        )
        self._update(record, fell_back=True)
        self._send_queued(cmd, record, reason=reason)

    # ------------------------------------------------------------------
    # Queued channel
    # ------------------------------------------------------------------

    def _send_queued(self, cmd: Command, record: DeliveryRecord, *, reason: str) -> SendOutcome:
        queued = cmd.model_copy(update={"delivery_hint": Channel.QUEUED})
        self._update(record, channel=Channel.QUEUED.value)
        try:
            self._transport.enqueue(queued.to_wire())
        except TransportError as e:
            err = connector_error(
                ErrorCode.TRANSPORT_REJECTED,
                str(e) or "queued channel rejected the command",
                fell_back=record.fell_back,
            )
            with self._lock:
                self._stats.rejected += 1
                self._last_error = err
            self._update(record, outcome="transport_rejected", detail=err.message)
            self._board.show(failure_text(err.message))
            logger.warning(
                "queued channel rejected command: %s",
                err.message,
                extra={"command_id": cmd.command_id, "channel": Channel.QUEUED.value},
            )
            return SendOutcome(ok=False, command_id=cmd.command_id, channel=Channel.QUEUED, error=err)

        with self._lock:
            self._stats.queued += 1
        self._update(record, outcome="queued", detail=reason)
        self._board.flash(TEXT_QUEUED, self._settings.queued_grace_seconds)
        logger.info(
            "command queued (%s)",
            reason,
            extra={
                "command_id": cmd.command_id,
                "channel": Channel.QUEUED.value,
                "reason": ErrorCode.CHANNEL_UNREACHABLE.value,
            },
        )
        return SendOutcome(ok=True, command_id=cmd.command_id, channel=Channel.QUEUED)

    def _update(self, record: DeliveryRecord, **changes: Any) -> None:
        with self._lock:
            for k, v in changes.items():
                setattr(record, k, v)
            record.updated_at = utc_now_iso()
