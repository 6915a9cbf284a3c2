"""Connector settings.

Settings are stored in $PAIRLINK_HOME/settings.yaml (default ~/.pairlink) and
hold the timing constants of the session/delivery layer plus the background
liveness request. Missing or unreadable files fall back to defaults.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.fs import atomic_write_text


logger = logging.getLogger("pairlink.settings")

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """YAML-authored values may arrive as "false"/"0"; unknown strings keep the default."""
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return bool(default)
        return value != 0
    if isinstance(value, str):
        s = value.strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        return bool(default)
    return bool(default)


def coerce_seconds(value: Any, *, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError, OverflowError):
        return float(default)
    if math.isnan(v) or math.isinf(v):
        return float(default)
    return max(0.0, v)


@dataclass
class LivenessSettings:
    enabled: bool = True
    kind: str = "workout"
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "kind": self.kind, "options": dict(self.options)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LivenessSettings":
        opts = d.get("options")
        return cls(
            enabled=coerce_bool(d.get("enabled"), default=True),
            kind=str(d.get("kind") or "workout"),
            options=dict(opts) if isinstance(opts, dict) else {},
        )


@dataclass
class ConnectorSettings:
    status_reset_seconds: float = 2.0
    queued_grace_seconds: float = 3.0
    reconnect_delay_seconds: float = 1.0
    secondary_pulse: bool = True
    secondary_pulse_delay_seconds: float = 0.3
    dedup_window_seconds: float = 0.0  # 0 disables command_id dedup
    supersede_stale_timers: bool = True
    live_timeout_seconds: float = 5.0
    probe_interval_seconds: float = 1.0
    queue_poll_interval_seconds: float = 0.5
    log_level: str = "INFO"
    liveness: LivenessSettings = field(default_factory=LivenessSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status_reset_seconds": self.status_reset_seconds,
            "queued_grace_seconds": self.queued_grace_seconds,
            "reconnect_delay_seconds": self.reconnect_delay_seconds,
            "secondary_pulse": self.secondary_pulse,
            "secondary_pulse_delay_seconds": self.secondary_pulse_delay_seconds,
            "dedup_window_seconds": self.dedup_window_seconds,
            "supersede_stale_timers": self.supersede_stale_timers,
            "live_timeout_seconds": self.live_timeout_seconds,
            "probe_interval_seconds": self.probe_interval_seconds,
            "queue_poll_interval_seconds": self.queue_poll_interval_seconds,
            "log_level": self.log_level,
            "liveness": self.liveness.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ConnectorSettings":
        base = cls()

        def _sec(key: str) -> float:
            return coerce_seconds(d.get(key, getattr(base, key)), default=getattr(base, key))

        def _bool(key: str) -> bool:
            return coerce_bool(d.get(key), default=getattr(base, key))

        liveness_raw = d.get("liveness")
        return cls(
            status_reset_seconds=_sec("status_reset_seconds"),
            queued_grace_seconds=_sec("queued_grace_seconds"),
            reconnect_delay_seconds=_sec("reconnect_delay_seconds"),
            secondary_pulse=_bool("secondary_pulse"),
            secondary_pulse_delay_seconds=_sec("secondary_pulse_delay_seconds"),
            dedup_window_seconds=_sec("dedup_window_seconds"),
            supersede_stale_timers=_bool("supersede_stale_timers"),
            live_timeout_seconds=_sec("live_timeout_seconds") or base.live_timeout_seconds,
            probe_interval_seconds=_sec("probe_interval_seconds") or base.probe_interval_seconds,
            queue_poll_interval_seconds=_sec("queue_poll_interval_seconds") or base.queue_poll_interval_seconds,
            log_level=str(d.get("log_level") or base.log_level).strip().upper(),
            liveness=LivenessSettings.from_dict(liveness_raw) if isinstance(liveness_raw, dict) else LivenessSettings(),
        )


def settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings_doc(path: Optional[Path] = None) -> Dict[str, Any]:
    p = path or settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("settings unreadable, using defaults: %s", e)
        return {}
    return doc if isinstance(doc, dict) else {}


def load_settings(path: Optional[Path] = None) -> ConnectorSettings:
    """Load settings from settings.yaml (or `path`)."""
    return ConnectorSettings.from_dict(load_settings_doc(path))


def save_settings(settings: ConnectorSettings, path: Optional[Path] = None) -> Path:
    p = path or settings_path()
    atomic_write_text(p, yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))
    return p
