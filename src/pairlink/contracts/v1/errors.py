from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .command import Channel


class ErrorCode(str, Enum):
    SESSION_NOT_READY = "session_not_ready"
    CHANNEL_UNREACHABLE = "channel_unreachable"
    TRANSPORT_REJECTED = "transport_rejected"
    UNKNOWN_ACTION = "unknown_action"
    ACTIVATION_FAILED = "activation_failed"
    AUTHORIZATION_DENIED = "authorization_denied"


class ConnectorError(BaseModel):
    code: ErrorCode
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class SendOutcome(BaseModel):
    """What send_command() issued. Delivery itself is reported later via status."""

    ok: bool
    command_id: str = ""
    channel: Optional[Channel] = None
    error: Optional[ConnectorError] = None

    model_config = ConfigDict(extra="forbid")


def connector_error(code: ErrorCode, message: str, **details: Any) -> ConnectorError:
    return ConnectorError(code=code, message=message, details=details)
