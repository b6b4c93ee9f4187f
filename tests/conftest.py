"""
Pytest configuration and shared fixtures
"""
import json
import os
import sys
import threading

import pytest
from paho.mqtt.client import topic_matches_sub

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from device_connector.mqtt_topics import TopicSchema  # noqa: E402


class FakeSession:
    """
    In-memory stand-in for MQTTSession.

    Records publishes; deliver() routes a message to matching subscribers the
    way the real session does (on the subscriber's executor when it has one).
    With loopback=True every publish is delivered back to the subscribers.
    Retained publishes are replayed to later subscribers with retain=True, as a
    broker does.
    """

    def __init__(self, topics, *, loopback=False, version='1.0.0-test'):
        self.topics = topics
        self.version = version
        self.loopback = loopback
        self.connected = True
        self.heartbeat_s = None
        self.subs = {}
        self.published = []
        self.retained = {}
        self._lock = threading.Lock()

    def is_connected(self):
        return self.connected

    def uptime_s(self):
        return 12.5

    def set_heartbeat_interval(self, interval_s):
        self.heartbeat_s = interval_s

    def subscribe(self, pattern, on_message, executor=None, *, qos=1, skip_retained=False):
        self.subs[pattern] = (on_message, executor, skip_retained)
        for topic, payload in list(self.retained.items()):
            if topic_matches_sub(pattern, topic):
                self.deliver(topic, payload, retain=True)

    def unsubscribe(self, pattern):
        self.subs.pop(pattern, None)

    def publish(self, topic, payload, *, qos=1, retain=False):
        with self._lock:
            self.published.append((topic, payload, qos, retain))
        data = payload.encode('utf-8') if isinstance(payload, str) else payload
        if retain:
            self.retained[topic] = data
        if self.loopback:
            self.deliver(topic, data)
        return (0, len(self.published))

    def deliver(self, topic, payload, *, retain=False):
        futures = []
        for pattern, (callback, executor, skip_retained) in list(self.subs.items()):
            if not topic_matches_sub(pattern, topic):
                continue
            if retain and skip_retained:
                continue
            if executor is None:
                callback(topic, payload)
            else:
                futures.append(executor.submit(callback, topic, payload))
        return futures

    def messages(self, topic):
        with self._lock:
            return [json.loads(p) for t, p, _, _ in self.published if t == topic]


@pytest.fixture
def topics():
    return TopicSchema('dev-1')


@pytest.fixture
def fake_session(topics):
    return FakeSession(topics)


@pytest.fixture
def status():
    from device_connector.core.status import AgentStatus

    s = AgentStatus()
    s.start()
    yield s
    s.stop()


@pytest.fixture
def device_env(monkeypatch):
    """Set up a complete connector environment"""
    env_vars = {
        'MQTT_HOST': 'test.mqtt.local',
        'MQTT_PORT': '1883',
        'DEVICE_ID': 'dev-1',
        'MQTT_TOKEN': 'test-token',
    }
    for key in (
        'AUTH_BASE_URL', 'AUTH_CLIENT_ID', 'AUTH_AUDIENCE', 'MQTT_TLS',
        'TOPIC_ROOT', 'AGENT_HEARTBEAT', 'MAX_WORKERS', 'APT_SOURCES_DIR',
    ):
        monkeypatch.delenv(key, raising=False)
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars
