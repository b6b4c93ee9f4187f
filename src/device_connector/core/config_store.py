"""
Runtime configuration persisted across restarts.

Holds the keys /config/set may change (log_level, heartbeat_s) in
data/connector_config.json. A file that is missing, unreadable JSON, or fails
validation is treated as "no overrides". Writes go to a temp file in the same
directory, are fsynced and renamed over the target while holding an flock on a
sibling .lock file.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from device_connector.paths import get_paths

logger = logging.getLogger(__name__)

MIN_HEARTBEAT = 0
MAX_HEARTBEAT = 3600
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _check_heartbeat(value: Any) -> Optional[str]:
    # bool is an int subclass
    if not isinstance(value, int) or isinstance(value, bool):
        return f"heartbeat_s must be int, got {type(value).__name__}"
    if not MIN_HEARTBEAT <= value <= MAX_HEARTBEAT:
        return f"heartbeat_s must be between {MIN_HEARTBEAT} and {MAX_HEARTBEAT}"
    return None


def _check_log_level(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return f"log_level must be str, got {type(value).__name__}"
    if value not in VALID_LOG_LEVELS:
        return f"log_level must be one of {sorted(VALID_LOG_LEVELS)}"
    return None


ALLOWED_KEYS: dict[str, Callable[[Any], Optional[str]]] = {
    "heartbeat_s": _check_heartbeat,
    "log_level": _check_log_level,
}


class ConfigStoreError(RuntimeError):
    """Runtime config could not be validated, read or written."""


def validate(cfg: Mapping[str, Any]) -> tuple[bool, Optional[str]]:
    """Return (True, None) for a valid config, else (False, reason)."""
    if not isinstance(cfg, Mapping):
        return False, "config must be an object"
    for key, value in cfg.items():
        check = ALLOWED_KEYS.get(key)
        if check is None:
            return False, f"unknown config key: {key}"
        problem = check(value)
        if problem:
            return False, problem
    return True, None


def _atomic_write_json(path: Path, data: Mapping[str, Any]) -> None:
    with tempfile.NamedTemporaryFile(
        mode="w", encoding="utf-8", dir=str(path.parent), prefix=f".{path.name}.", delete=False
    ) as tf:
        json.dump(data, tf, indent=2, sort_keys=True)
        tf.flush()
        os.fsync(tf.fileno())
    os.replace(tf.name, path)

    dir_fd = os.open(str(path.parent), os.O_DIRECTORY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


class ConfigStore:
    """
    The connector's runtime overrides, cached in memory after load().

    Only /config/set writes through here, and that binding is serialized, so
    the cache needs no lock of its own; the flock guards against a second
    process.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path) if path is not None else get_paths().config_path
        self._cache: Optional[dict[str, Any]] = None

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            logger.info("No runtime config at %s; using defaults", self.path)
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigStoreError(f"cannot read {self.path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Runtime config %s is not valid JSON (%s); ignoring it", self.path, exc)
            return {}
        ok, problem = validate(data)
        if not ok:
            logger.warning("Runtime config %s rejected: %s; ignoring it", self.path, problem)
            return {}
        return dict(data)

    def load(self) -> dict[str, Any]:
        """Read the overrides from disk (see module doc). Raises ConfigStoreError on I/O failure."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigStoreError(f"cannot create {self.path.parent}: {exc}") from exc

        self._cache = self._read()
        if self._cache:
            logger.info("Runtime config loaded from %s: %s", self.path, self._cache)
        return dict(self._cache)

    def save(self, cfg: Mapping[str, Any]) -> None:
        ok, problem = validate(cfg)
        if not ok:
            raise ConfigStoreError(f"Invalid config: {problem}")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("w") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                try:
                    _atomic_write_json(self.path, cfg)
                finally:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            logger.exception("Writing runtime config to %s failed", self.path)
            raise ConfigStoreError(f"cannot write {self.path}: {exc}") from exc

        self._cache = dict(cfg)
        logger.info("Runtime config saved to %s", self.path)

    def apply_set(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Merge changes over the cached config, persist, and return the merged config."""
        if not isinstance(changes, Mapping) or not changes:
            raise ConfigStoreError("'set' must be a non-empty object")
        merged = {**self.get_cached(), **changes}
        self.save(merged)
        return merged

    def get_cached(self) -> dict[str, Any]:
        if self._cache is None:
            logger.debug("Runtime config requested before load(); assuming no overrides")
            return {}
        return dict(self._cache)
