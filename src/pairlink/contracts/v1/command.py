from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...util.time import unix_now


ACTION_VIBRATE = "vibrate"

# Wire key names shared by both channels.
WIRE_DELIVERY_IMMEDIATE = "immediate"
WIRE_DELIVERY_QUEUED = "queued"


class Channel(str, Enum):
    LIVE = "live"
    QUEUED = "queued"

    @property
    def wire_name(self) -> str:
        return WIRE_DELIVERY_IMMEDIATE if self is Channel.LIVE else WIRE_DELIVERY_QUEUED


class AckStatus(str, Enum):
    SUCCESS = "success"
    UNKNOWN_ACTION = "unknown_action"


class Command(BaseModel):
    """Controller -> responder command."""

    action: str = ACTION_VIBRATE
    issued_at: float = Field(default_factory=unix_now)
    delivery_hint: Channel = Channel.LIVE  # diagnostics only
    command_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @property
    def recognized(self) -> bool:
        return self.action == ACTION_VIBRATE

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.context)
        payload.update(
            {
                "action": self.action,
                "timestamp": float(self.issued_at),
                "delivery": self.delivery_hint.wire_name,
                "command_id": self.command_id,
            }
        )
        return payload

    @classmethod
    def from_wire(cls, payload: Any) -> "Command":
        """Parse an inbound payload. Never raises; unusable input gets an empty action."""
        if not isinstance(payload, dict):
            return cls(action="", command_id="")
        raw_action = payload.get("action")
        action = raw_action if isinstance(raw_action, str) else ""
        try:
            issued_at = float(payload.get("timestamp") or 0.0)
        except (TypeError, ValueError, OverflowError):
            issued_at = 0.0
        hint = Channel.QUEUED if payload.get("delivery") == WIRE_DELIVERY_QUEUED else Channel.LIVE
        context = {
            str(k): v
            for k, v in payload.items()
            if k not in ("action", "timestamp", "delivery", "command_id")
        }
        return cls(
            action=action,
            issued_at=issued_at,
            delivery_hint=hint,
            command_id=str(payload.get("command_id") or ""),
            context=context,
        )


class Ack(BaseModel):
    """Responder -> controller acknowledgment (live channel only)."""

    status: AckStatus
    responded_at: float = Field(default_factory=unix_now)
    vibration_count: int = Field(default=0, ge=0)
    background_live: bool = False
    command_id: str = ""

    model_config = ConfigDict(extra="forbid")

    @property
    def ok(self) -> bool:
        return self.status == AckStatus.SUCCESS

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "timestamp": float(self.responded_at),
            "vibrationCount": int(self.vibration_count),
            "delivery": WIRE_DELIVERY_IMMEDIATE,
            "backgroundLive": bool(self.background_live),
        }
        if self.command_id:
            payload["command_id"] = self.command_id
        return payload

    @classmethod
    def from_wire(cls, payload: Any) -> Optional["Ack"]:
        """Parse a reply payload; None when it is not a usable ack."""
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                status=AckStatus(str(payload.get("status") or "")),
                responded_at=float(payload.get("timestamp") or 0.0),
                vibration_count=int(payload.get("vibrationCount") or 0),
                background_live=bool(payload.get("backgroundLive", False)),
                command_id=str(payload.get("command_id") or ""),
            )
        except (TypeError, ValueError, OverflowError, ValidationError):
            return None
