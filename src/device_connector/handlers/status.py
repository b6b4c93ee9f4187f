"""/status capability: device status snapshot."""

from __future__ import annotations

from typing import Any

from device_connector.core.cmd_context import ResponseEmitter
from device_connector.core.snapshots import build_device_status
from device_connector.core.status import StatusView
from device_connector.errors import HandlerError


def on_status(request: dict[str, Any], status: StatusView, emit: ResponseEmitter) -> dict[str, Any]:
    session = status.session
    if session is None:
        raise HandlerError("no active session")
    return build_device_status(
        session.topics.device_id,
        session.version,
        connected=status.connected,
        uptime_s=session.uptime_s(),
        in_flight=len(status.in_flight),
        package_count=None if status.packages is None else len(status.packages),
    )
