"""/config/set capability: validate, persist and apply runtime configuration."""

from __future__ import annotations

import logging
from typing import Any

from device_connector.core.cmd_context import CommandResult, ResponseEmitter
from device_connector.core.config_store import ConfigStore, ConfigStoreError
from device_connector.core.log_config import apply_log_level_from_config
from device_connector.core.status import StatusView, UpdateConfig
from device_connector.errors import HandlerError

logger = logging.getLogger(__name__)


class ConfigHandlers:
    def __init__(self, store: ConfigStore) -> None:
        self.store = store

    def on_config_set(
        self, request: dict[str, Any], status: StatusView, emit: ResponseEmitter
    ) -> CommandResult:
        """
        Request: {"set": {"log_level": "DEBUG", "heartbeat_s": 30}}
        Response: {"ok": true, "applied": {...}, "config": {...}}
        """
        if "set" not in request:
            raise HandlerError("missing 'set' field in payload")
        changes = request["set"]
        if not isinstance(changes, dict):
            raise HandlerError("'set' must be an object")

        try:
            new_cfg = self.store.apply_set(changes)
        except ConfigStoreError as exc:
            raise HandlerError(str(exc)) from exc

        # Logging and the heartbeat thread are process resources, not Agent Status.
        apply_log_level_from_config(new_cfg)
        if "heartbeat_s" in changes and status.session is not None:
            status.session.set_heartbeat_interval(int(new_cfg["heartbeat_s"]))

        logger.info("Config updated via /config/set: %s", changes)
        return CommandResult(
            payload={"ok": True, "applied": changes, "config": new_cfg},
            intents=(UpdateConfig(new_cfg),),
        )
