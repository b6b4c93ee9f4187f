"""
Filesystem layout for Device Connector.

Everything the connector writes lives under one state directory
(CONNECTOR_BASE_DIR, default /var/lib/device-connector):

    data/connector_config.json   runtime config changed via /config/set
    logs/
    run/
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_BASE_DIR = "/var/lib/device-connector"
BASE_DIR_ENV = "CONNECTOR_BASE_DIR"

_DIR_MODES = {"base_dir": 0o755, "data_dir": 0o750, "log_dir": 0o750, "runtime_dir": 0o750}


@dataclass(frozen=True, slots=True)
class Paths:
    base_dir: Path
    data_dir: Path
    config_path: Path
    log_dir: Path
    runtime_dir: Path


def build_paths(base_dir: Optional[Path] = None) -> Paths:
    """Lay out the state directory; base_dir falls back to $CONNECTOR_BASE_DIR."""
    root = Path(base_dir) if base_dir is not None else Path(os.environ.get(BASE_DIR_ENV, DEFAULT_BASE_DIR))
    data = root / "data"
    return Paths(
        base_dir=root,
        data_dir=data,
        config_path=data / "connector_config.json",
        log_dir=root / "logs",
        runtime_dir=root / "run",
    )


def ensure_dirs(paths: Paths) -> None:
    """Create the state directories with fixed modes. Raises OSError."""
    for attr, mode in _DIR_MODES.items():
        d: Path = getattr(paths, attr)
        d.mkdir(parents=True, exist_ok=True)
        # umask may have narrowed the mode at mkdir time
        d.chmod(mode)


_current: Optional[Paths] = None


def get_paths() -> Paths:
    global _current
    if _current is None:
        _current = build_paths()
    return _current


def set_paths(paths: Paths) -> None:
    global _current
    _current = paths


def reset_paths() -> None:
    global _current
    _current = None
