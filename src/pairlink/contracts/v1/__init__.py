from __future__ import annotations

from .command import ACTION_VIBRATE, Ack, AckStatus, Channel, Command
from .errors import ConnectorError, ErrorCode, SendOutcome, connector_error
from .ipc import LinkRequest, LinkResponse
from .session import ActivationState, LivenessState, PeerRole, SessionState

__all__ = [
    "ACTION_VIBRATE",
    "Ack",
    "AckStatus",
    "ActivationState",
    "Channel",
    "Command",
    "ConnectorError",
    "ErrorCode",
    "LinkRequest",
    "LinkResponse",
    "LivenessState",
    "PeerRole",
    "SendOutcome",
    "SessionState",
    "connector_error",
]
