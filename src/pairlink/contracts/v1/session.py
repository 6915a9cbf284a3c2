from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, model_validator


class ActivationState(str, Enum):
    NOT_ACTIVATED = "not_activated"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    INACTIVE = "inactive"
    ERROR = "error"


class PeerRole(str, Enum):
    CONTROLLER = "controller"
    RESPONDER = "responder"

    @property
    def counterpart(self) -> "PeerRole":
        return PeerRole.RESPONDER if self is PeerRole.CONTROLLER else PeerRole.CONTROLLER


class LivenessState(str, Enum):
    NOT_REQUESTED = "not_requested"
    REQUESTING = "requesting"
    GRANTED = "granted"
    DENIED = "denied"
    ACTIVE = "active"
    ENDED = "ended"
    PAUSED = "paused"
    FAILED = "failed"


class SessionState(BaseModel):
    """Transport view of one peer process. Immutable; replaced on every transition."""

    activation: ActivationState = ActivationState.NOT_ACTIVATED
    peer_installed: bool = False
    reachable: bool = False
    error: str = ""

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _reachable_requires_activation(self) -> "SessionState":
        if self.reachable and self.activation != ActivationState.ACTIVATED:
            raise ValueError("reachable requires an activated session")
        return self

    @property
    def activated(self) -> bool:
        return self.activation == ActivationState.ACTIVATED
