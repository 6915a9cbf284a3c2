from __future__ import annotations

import os
from pathlib import Path


def pairlink_home() -> Path:
    env = os.environ.get("PAIRLINK_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".pairlink").resolve()


def ensure_home() -> Path:
    home = pairlink_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def default_pair_dir(name: str = "default") -> Path:
    return ensure_home() / "pairs" / (str(name or "").strip() or "default")
