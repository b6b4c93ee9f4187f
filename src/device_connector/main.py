"""
Device Connector entrypoint.

CLI:
  device-connector run     -> authenticate, connect, serve commands until SIGINT/SIGTERM
  device-connector login   -> run the device authorization flow and print the access token
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional

from device_connector.config import package_version
from device_connector.core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONNECT_FAILED = 1
EXIT_AUTH_FAILED = 2


@dataclass
class Runtime:
    shutdown: threading.Event
    session: Optional[object] = None
    dispatcher: Optional[object] = None
    status: Optional[object] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def authenticate(cfg, stop_event: threading.Event, transport=None):
    """
    Run the device authorization flow for cfg and return the Credential.

    The poll loop runs on its own thread; stop_event ends it early.
    Raises AuthError, AuthCancelled, DecodeError or TransportError.
    """
    from device_connector.auth import DeviceAuthenticator, DeviceAuthPoller

    authenticator = DeviceAuthenticator(cfg.auth_base_url, transport)
    code = authenticator.start(cfg.auth_client_id, cfg.auth_audience)

    print(
        f"To authorize this device visit {code.verification_uri_complete or code.verification_uri}"
        f" and enter code {code.user_code}",
        file=sys.stderr,
        flush=True,
    )

    poller = DeviceAuthPoller(
        authenticator,
        cfg.auth_client_id,
        code,
        expected_audience=None,
        stop_event=stop_event,
    )
    return poller.run_in_background().result()


def _obtain_credential(cfg, stop_event: threading.Event):
    from device_connector.auth import Credential

    if cfg.mqtt_token:
        logger.info("Using pre-provisioned MQTT credential")
        return Credential(access_token=cfg.mqtt_token)
    return authenticate(cfg, stop_event)


def run_agent() -> int:
    """
    Runtime mode: authenticate, connect, register capabilities, block until shutdown.
    Returns process exit code.
    """
    # Lazy imports keep CLI parsing independent of runtime configuration.
    from types import MappingProxyType

    from device_connector.config import load_config
    from device_connector.core.config_store import ConfigStore
    from device_connector.core.dispatcher import Dispatcher
    from device_connector.core.log_config import apply_log_level_from_config
    from device_connector.core.status import AgentStatus, SetSession, StatusView
    from device_connector.errors import ConnectorError
    from device_connector.handlers import register_default_handlers
    from device_connector.mqtt_client import MQTTSession
    from device_connector.mqtt_topics import TopicSchema
    from device_connector.paths import ensure_dirs, get_paths

    ensure_dirs(get_paths())

    cfg = load_config()

    config_store = ConfigStore()
    runtime_cfg = config_store.load()
    apply_log_level_from_config(runtime_cfg)
    heartbeat_s = runtime_cfg.get("heartbeat_s", cfg.heartbeat_s)

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("Device Connector %s starting for device %s", cfg.agent_version, cfg.device_id)

    try:
        credential = _obtain_credential(cfg, rt.shutdown)
    except ConnectorError as exc:
        logger.error("Device authorization failed: %s", exc)
        return EXIT_AUTH_FAILED

    topics = TopicSchema(cfg.device_id, root=cfg.topic_root)
    status = AgentStatus(StatusView(config=MappingProxyType(dict(runtime_cfg))))
    status.start()
    rt.status = status

    session = MQTTSession(
        cfg.mqtt_host,
        cfg.mqtt_port,
        credential,
        topics,
        cfg.agent_version,
        tls=cfg.mqtt_tls,
        heartbeat_interval_s=heartbeat_s,
    )
    rt.session = session

    # Bindings are registered before connect so the first on_connect subscribes them.
    dispatcher = Dispatcher(session, topics, status, max_workers=cfg.max_workers)
    register_default_handlers(dispatcher, config_store=config_store, apt_root=cfg.apt_sources_dir)
    rt.dispatcher = dispatcher

    if not session.connect():
        logger.error("MQTT connection failed")
        _shutdown(rt)
        return EXIT_CONNECT_FAILED

    status.submit(SetSession(session))
    if not session.wait_until_connected(timeout=5.0):
        logger.warning("Connection not established after 5 seconds, proceeding anyway")

    logger.info("Connector running (shutdown via SIGINT/SIGTERM)")

    try:
        while not rt.shutdown.is_set():
            time.sleep(0.5)
    finally:
        _shutdown(rt)

    return EXIT_OK


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")

    # Stop taking commands before the connection goes away.
    if rt.dispatcher:
        try:
            rt.dispatcher.close()
        except Exception:
            logger.exception("Error closing dispatcher")

    if rt.session:
        try:
            rt.session.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("MQTT disconnected")

    if rt.status:
        rt.status.stop()


def run_login() -> int:
    from device_connector.config import load_config
    from device_connector.errors import ConnectorError

    cfg = load_config()
    if not cfg.device_auth_enabled:
        logger.error("AUTH_BASE_URL and AUTH_CLIENT_ID are required for login")
        return EXIT_AUTH_FAILED

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)
    try:
        credential = authenticate(cfg, rt.shutdown)
    except ConnectorError as exc:
        logger.error("Device authorization failed: %s", exc)
        return EXIT_AUTH_FAILED

    print(credential.access_token)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="device-connector")
    p.add_argument("--version", action="version", version=package_version())

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("run", help="Authenticate, connect and serve commands")
    sub.add_parser("login", help="Run the device authorization flow and print the access token")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_agent())

    if args.cmd == "login":
        raise SystemExit(run_login())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
