"""
Startup configuration for Device Connector.

Everything is read from the environment. Env files fill in variables that are
not already set; files listed earlier win over later ones, and the real
process environment wins over all of them:

    /etc/device-connector/connector.env
    $XDG_CONFIG_HOME/device-connector/.env
    ./.env
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from device_connector.mqtt_topics import DEFAULT_ROOT

DEFAULT_APT_DIR = "/etc/apt"

_BOOLS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False, "": False,
}


class ConfigError(ValueError):
    """Startup configuration is missing or invalid."""


def env_files() -> list[Path]:
    xdg = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return [
        Path("/etc/device-connector/connector.env"),
        Path(xdg) / "device-connector" / ".env",
        Path(".env"),
    ]


def _env_str(key: str, default: Optional[str] = None) -> str:
    raw = os.environ.get(key)
    if raw:
        return raw
    if default is None:
        raise ConfigError(f"Missing required environment variable: {key}")
    return default


def _env_int(key: str, default: Optional[int] = None, *, lo: int, hi: Optional[int] = None) -> int:
    raw = _env_str(key, None if default is None else str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc
    if value < lo or (hi is not None and value > hi):
        bound = f"[{lo}, {hi}]" if hi is not None else f">= {lo}"
        raise ConfigError(f"{key} out of range {bound}: {value}")
    return value


def _env_bool(key: str) -> bool:
    raw = os.environ.get(key, "")
    try:
        return _BOOLS[raw.strip().lower()]
    except KeyError:
        raise ConfigError(f"Invalid boolean for {key}: {raw!r}") from None


def package_version() -> str:
    try:
        return _pkg_version("device-connector")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass(frozen=True, slots=True)
class ConnectorConfig:
    mqtt_host: str
    mqtt_port: int
    device_id: str
    agent_version: str
    auth_base_url: str = ""
    auth_client_id: str = ""
    auth_audience: str = ""
    mqtt_token: str = ""
    mqtt_tls: bool = False
    topic_root: str = DEFAULT_ROOT
    heartbeat_s: int = 0  # 0: no periodic presence
    max_workers: int = 4
    apt_sources_dir: str = DEFAULT_APT_DIR

    @property
    def device_auth_enabled(self) -> bool:
        return bool(self.auth_base_url and self.auth_client_id)

    def __repr__(self) -> str:
        token = "***" if self.mqtt_token else ""
        return (
            f"ConnectorConfig(mqtt_host={self.mqtt_host!r}, mqtt_port={self.mqtt_port}, "
            f"device_id={self.device_id!r}, auth_base_url={self.auth_base_url!r}, "
            f"mqtt_token={token!r}, mqtt_tls={self.mqtt_tls}, topic_root={self.topic_root!r})"
        )


def load_config(*, dotenv_enabled: bool = True) -> ConnectorConfig:
    """
    Build the immutable ConnectorConfig from env files and the environment.

    A device needs either a pre-issued MQTT_TOKEN or the AUTH_BASE_URL and
    AUTH_CLIENT_ID pair for device authorization. Raises ConfigError.
    """
    if dotenv_enabled:
        for path in env_files():
            if path.is_file():
                load_dotenv(path, override=False)

    cfg = ConnectorConfig(
        mqtt_host=_env_str("MQTT_HOST"),
        mqtt_port=_env_int("MQTT_PORT", lo=1, hi=65535),
        device_id=_env_str("DEVICE_ID"),
        agent_version=package_version(),
        auth_base_url=_env_str("AUTH_BASE_URL", ""),
        auth_client_id=_env_str("AUTH_CLIENT_ID", ""),
        auth_audience=_env_str("AUTH_AUDIENCE", ""),
        mqtt_token=_env_str("MQTT_TOKEN", ""),
        mqtt_tls=_env_bool("MQTT_TLS"),
        topic_root=_env_str("TOPIC_ROOT", DEFAULT_ROOT),
        heartbeat_s=_env_int("AGENT_HEARTBEAT", 0, lo=0),
        max_workers=_env_int("MAX_WORKERS", 4, lo=1),
        apt_sources_dir=_env_str("APT_SOURCES_DIR", DEFAULT_APT_DIR),
    )

    if not cfg.mqtt_token and not cfg.device_auth_enabled:
        raise ConfigError("Either MQTT_TOKEN or AUTH_BASE_URL and AUTH_CLIENT_ID must be set")
    return cfg
