"""
Root logger setup for Device Connector.

The level comes from the runtime config's log_level when set, then from
CONNECTOR_LOG_LEVEL, then INFO.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL_ENV = "CONNECTOR_LOG_LEVEL"

_NAMED_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _to_level(name: Optional[str]) -> Optional[int]:
    """Level for a name or number string; None when blank or unrecognised."""
    text = (name or "").strip().upper()
    if text.isdigit():
        return int(text)
    return _NAMED_LEVELS.get(text)


def level_from_cfg_or_env(cfg: Optional[Mapping[str, Any]]) -> int:
    configured = cfg.get("log_level") if cfg else None
    if isinstance(configured, str):
        level = _to_level(configured)
        if level is not None:
            return level
    level = _to_level(os.environ.get(LOG_LEVEL_ENV))
    return logging.INFO if level is None else level


def configure_logging(cfg: Optional[Mapping[str, Any]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    apply_log_level_from_config(cfg)


def apply_log_level_from_config(cfg: Optional[Mapping[str, Any]]) -> None:
    """Set the root logger level; called at startup and after /config/set."""
    logging.getLogger().setLevel(level_from_cfg_or_env(cfg))
