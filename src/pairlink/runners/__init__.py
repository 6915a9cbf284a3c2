from __future__ import annotations

from . import liveness, reconnect

__all__ = ["liveness", "reconnect"]
