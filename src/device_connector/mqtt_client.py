"""
MQTT session for Device Connector.

Owns the one broker connection: connect with the device credential, presence
(LWT + retained status), subscriptions that survive reconnects, and publish.
Inbound messages are handed to the subscriber's executor, never run on paho's
network thread.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from device_connector.auth import Credential
from device_connector.core.snapshots import build_presence, now_iso8601
from device_connector.mqtt_topics import TopicSchema

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], None]

RECONNECT_MIN_DELAY_S = 1
RECONNECT_MAX_DELAY_S = 120


@dataclass(frozen=True, slots=True)
class Subscription:
    pattern: str
    callback: MessageCallback
    executor: Optional[Executor]
    qos: int = 1
    skip_retained: bool = False


class _Heartbeat:
    """Calls beat() every interval_s seconds on a daemon thread; 0 means off."""

    def __init__(self, beat: Callable[[], None], interval_s: int) -> None:
        self._beat = beat
        self._interval_s = interval_s
        self._lock = threading.Lock()
        # guards _thread and _wake; start/stop come from paho and handler threads
        self._state_lock = threading.Lock()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval_s(self) -> int:
        with self._lock:
            return self._interval_s

    @interval_s.setter
    def interval_s(self, value: int) -> None:
        with self._lock:
            self._interval_s = value

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None or self.interval_s <= 0:
                return
            self._wake = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._wake,), daemon=True, name="presence-heartbeat"
            )
            self._thread.start()

    def stop(self) -> None:
        with self._state_lock:
            thread, self._thread = self._thread, None
            if thread is None:
                return
            self._wake.set()
        if thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _run(self, wake: threading.Event) -> None:
        while True:
            interval = self.interval_s
            if interval <= 0 or wake.wait(timeout=interval):
                return
            try:
                self._beat()
            except Exception:
                logger.exception("Heartbeat publish failed")


class MQTTSession:
    """
    Single logical broker connection for the device.

    The credential is handed over at construction and only this class uses it.
    Reconnects are left to paho's network loop; every (re)connect re-subscribes
    all registered patterns.
    """

    def __init__(
        self,
        host: str,
        port: int,
        credential: Credential,
        topics: TopicSchema,
        version: str,
        *,
        keepalive: int = 60,
        tls: bool = False,
        heartbeat_interval_s: int = 0,
    ) -> None:
        self.host = host
        self.port = port
        self.topics = topics
        self.version = version
        self.keepalive = keepalive
        self.tls = tls
        self.client_id = topics.device_id

        self._credential = credential
        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()

        self._subs: dict[str, Subscription] = {}
        self._subs_lock = threading.Lock()

        # first successful connect; kept across reconnects
        self._online_since: Optional[tuple[float, str]] = None
        self._heartbeat = _Heartbeat(self._beat, heartbeat_interval_s)

    # -------------------------
    # Subscriptions
    # -------------------------
    def subscribe(
        self,
        pattern: str,
        on_message: MessageCallback,
        executor: Optional[Executor] = None,
        *,
        qos: int = 1,
        skip_retained: bool = False,
    ) -> None:
        """
        Register on_message for every inbound message matching pattern.

        on_message(topic, payload) runs on executor when one is given. With
        skip_retained the broker's stored copy sent on subscribe is ignored and
        only live publishes are delivered. The subscription is re-established
        after every reconnect.
        """
        sub = Subscription(
            pattern=pattern, callback=on_message, executor=executor, qos=qos, skip_retained=skip_retained
        )
        with self._subs_lock:
            self._subs[pattern] = sub
        if self.is_connected():
            self._client.subscribe(pattern, qos=qos)
            logger.info("Subscribed: %s", pattern)

    def unsubscribe(self, pattern: str) -> None:
        with self._subs_lock:
            removed = self._subs.pop(pattern, None)
        if removed and self.is_connected():
            self._client.unsubscribe(pattern)
            logger.info("Unsubscribed: %s", pattern)

    def _subscriptions(self) -> list[Subscription]:
        with self._subs_lock:
            return list(self._subs.values())

    # -------------------------
    # Presence
    # -------------------------
    def uptime_s(self) -> float:
        if self._online_since is None:
            return 0.0
        return max(0.0, time.time() - self._online_since[0])

    def set_heartbeat_interval(self, interval_s: int) -> None:
        self._heartbeat.interval_s = interval_s
        if interval_s <= 0:
            self._heartbeat.stop()
        elif self.is_connected():
            self._heartbeat.start()

    def _beat(self) -> None:
        if self.is_connected():
            self._publish_presence("online")

    def _presence(self, state: str) -> str:
        since = self._online_since[1] if self._online_since and state == "online" else None
        return json.dumps(
            build_presence(
                state,
                self.topics.device_id,
                self.version,
                connected_since_ts=since,
                uptime_s=round(self.uptime_s(), 3),
            )
        )

    def _publish_presence(self, state: str) -> None:
        client = self._client
        if client is None:
            return
        client.publish(self.topics.status(), payload=self._presence(state), qos=1, retain=True)

    # -------------------------
    # paho callbacks
    # -------------------------
    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code != 0:
            logger.error("Broker refused connection for %s: rc=%s", self.client_id, reason_code)
            return

        logger.info("Connected to MQTT broker %s:%s as %s", self.host, self.port, self.client_id)
        if self._online_since is None:
            self._online_since = (time.time(), now_iso8601())

        for sub in self._subscriptions():
            client.subscribe(sub.pattern, qos=sub.qos)
            logger.info("Subscribed: %s", sub.pattern)

        self._connected.set()
        try:
            self._publish_presence("online")
        except Exception:
            logger.exception("Failed to publish online presence")
        self._heartbeat.start()

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected.clear()
        self._heartbeat.stop()
        if reason_code != 0:
            logger.warning("Connection lost (rc=%s); paho will reconnect", reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        subs = [s for s in self._subscriptions() if mqtt.topic_matches_sub(s.pattern, msg.topic)]
        if not subs:
            logger.warning("Message on unsubscribed topic %s dropped", msg.topic)
            return
        if msg.retain:
            subs = [s for s in subs if not s.skip_retained]
        payload = bytes(msg.payload or b"")
        for sub in subs:
            if sub.executor is None:
                self._invoke(sub, msg.topic, payload)
            else:
                sub.executor.submit(self._invoke, sub, msg.topic, payload)

    @staticmethod
    def _invoke(sub: Subscription, topic: str, payload: bytes) -> None:
        try:
            sub.callback(topic, payload)
        except Exception:
            logger.exception("Subscriber for %s failed on %s", sub.pattern, topic)

    # -------------------------
    # Connection lifecycle
    # -------------------------
    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(self.topics.device_id, self._credential.access_token)
        if self.tls:
            client.tls_set(cert_reqs=ssl.CERT_REQUIRED)

        # LWT is fixed at connect time, so it carries no live values.
        client.will_set(
            self.topics.status(),
            payload=json.dumps(build_presence("offline", self.topics.device_id, self.version)),
            qos=1,
            retain=True,
        )
        client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY_S, max_delay=RECONNECT_MAX_DELAY_S)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def connect(self) -> bool:
        """Start connecting in the background; False if the first attempt fails outright."""
        try:
            self._client = self._build_client()
            self._client.connect(self.host, self.port, keepalive=self.keepalive)
            self._client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker %s:%s", self.host, self.port)
            self._client = None
            return False
        return True

    def wait_until_connected(self, timeout: float) -> bool:
        return self._connected.wait(timeout=timeout)

    def disconnect(self) -> None:
        """Publish retained offline presence, then close the connection."""
        client = self._client
        if client is None:
            return
        try:
            self._heartbeat.stop()
            self._publish_presence("offline")
            client.loop_stop()
            client.disconnect()
        finally:
            self._client = None
            self._connected.clear()

    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    def publish(self, topic: str, payload: Any, *, qos: int = 1, retain: bool = False) -> Any:
        if self._client is None:
            raise RuntimeError("MQTT session is not connected")
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        return self._client.publish(topic, payload=payload, qos=qos, retain=retain)
