"""
Status payload builders for Device Connector.

Pure functions that build MQTT payload dicts for the retained presence topic and
the /status capability.
"""

from __future__ import annotations

import platform
from datetime import datetime, timezone
from typing import Any

import psutil


def now_iso8601() -> str:
    """Return current UTC time as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def build_presence(
    state: str,
    device_id: str,
    version: str,
    connected_since_ts: str | None = None,
    uptime_s: float | int = 0,
) -> dict[str, Any]:
    """
    Build retained presence. Contract: state, device_id, version, and for live
    states connected_since_ts and uptime_s.
    state: online | offline
    """
    payload: dict[str, Any] = {"state": state, "device_id": device_id, "version": version}
    if connected_since_ts is not None:
        payload["connected_since_ts"] = connected_since_ts
        payload["uptime_s"] = uptime_s
    return payload


def _percent(fn) -> float:
    try:
        return float(fn())
    except (OSError, psutil.Error):
        return 0.0


def system_metrics() -> dict[str, float]:
    return {
        "cpu_percent": _percent(lambda: psutil.cpu_percent(interval=None)),
        "memory_percent": _percent(lambda: psutil.virtual_memory().percent),
        "disk_percent": _percent(lambda: psutil.disk_usage("/").percent),
    }


def build_device_status(
    device_id: str,
    version: str,
    *,
    connected: bool,
    uptime_s: float,
    in_flight: int,
    package_count: int | None,
) -> dict[str, Any]:
    """
    Build the /status response. Contract: device_id, version, state, platform,
    architecture, uptime_s, in_flight, package_count, cpu/memory/disk percent.
    """
    return {
        "device_id": device_id,
        "version": version,
        "state": "online" if connected else "offline",
        "platform": platform.system() or "unknown",
        "architecture": platform.machine() or "unknown",
        "uptime_s": round(uptime_s, 3),
        "in_flight": in_flight,
        "package_count": package_count,
        **system_metrics(),
        "ts": now_iso8601(),
    }
