from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field


LinkOp = Literal["ping", "command"]


class LinkRequest(BaseModel):
    v: int = 1
    op: LinkOp
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class LinkResponse(BaseModel):
    v: int = 1
    ok: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: str = ""

    model_config = ConfigDict(extra="forbid")
