from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys picked up from `logger.*(..., extra={...})`.
_CORRELATION_KEYS = ("role", "pair", "channel", "command_id", "activation", "liveness", "reason")


def _utc_ts_iso(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return ""


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; stable, small field set."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "pairlink"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
            "level": str(getattr(record, "levelname", "") or ""),
            "logger": str(getattr(record, "name", "") or ""),
            "component": self._component,
            "msg": record.getMessage(),
        }

        for k in _CORRELATION_KEYS:
            v = getattr(record, k, None)
            if v is None:
                continue
            sv = str(v).strip()
            if sv:
                payload[k] = sv

        if record.exc_info:
            try:
                payload["exc"] = self.formatException(record.exc_info)
            except Exception:
                payload["exc"] = "exception"

        try:
            return json.dumps(payload, ensure_ascii=False)
        except Exception:
            # Never crash logging.
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


def parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    value = getattr(logging, s, default)
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    - Uses a single StreamHandler with the JSONL formatter.
    - `force=True` clears existing handlers first.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    root = logging.getLogger()
    root.setLevel(parse_level(level))

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    for h in list(root.handlers):
        if isinstance(h, logging.StreamHandler) and isinstance(getattr(h, "formatter", None), JsonlFormatter):
            h.setLevel(parse_level(level))
            return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(parse_level(level))
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
