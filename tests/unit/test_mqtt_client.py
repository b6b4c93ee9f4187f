import json
import threading
from unittest.mock import MagicMock

import pytest

from device_connector.auth import Credential
from device_connector.mqtt_client import MQTTSession, _Heartbeat
from device_connector.mqtt_topics import TopicSchema


class FakeMQTTMessage:
    def __init__(self, topic: str, payload: bytes, retain: bool = False):
        self.topic = topic
        self.payload = payload
        self.retain = retain


class FakeExecutor:
    def __init__(self):
        self.calls = []

    def submit(self, fn, *args):
        self.calls.append(args)
        fn(*args)


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True

    def _ctor(*args, **kwargs):
        fake.ctor_args = (args, kwargs)
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def session(fake_paho_client):
    return MQTTSession(
        host="localhost",
        port=1883,
        credential=Credential("tok-1"),
        topics=TopicSchema("dev-1"),
        version="1.0.0",
        heartbeat_interval_s=0,
    )


def _published(fake, topic):
    out = []
    for call in fake.publish.call_args_list:
        args, kwargs = call
        if args[0] == topic:
            out.append((json.loads(kwargs["payload"]), kwargs))
    return out


def test_connect_uses_credential_sets_lwt_and_starts_loop(session, fake_paho_client):
    assert session.connect() is True

    _, kwargs = fake_paho_client.ctor_args
    assert kwargs["client_id"] == "dev-1"
    fake_paho_client.username_pw_set.assert_called_once_with("dev-1", "tok-1")
    fake_paho_client.tls_set.assert_not_called()

    fake_paho_client.will_set.assert_called_once()
    args, kwargs = fake_paho_client.will_set.call_args
    assert args[0] == "devices/dev-1/status"
    assert kwargs["retain"] is True
    assert kwargs["qos"] == 1
    obj = json.loads(kwargs["payload"])
    assert obj == {"state": "offline", "device_id": "dev-1", "version": "1.0.0"}

    fake_paho_client.connect.assert_called_with("localhost", 1883, keepalive=60)
    fake_paho_client.loop_start.assert_called_once()


def test_connect_with_tls(fake_paho_client):
    s = MQTTSession("broker", 8883, Credential("t"), TopicSchema("dev-1"), "1.0.0", tls=True)
    assert s.connect() is True
    fake_paho_client.tls_set.assert_called_once()


def test_connect_failure_returns_false(session, fake_paho_client):
    fake_paho_client.connect.side_effect = OSError("refused")
    assert session.connect() is False
    assert session.is_connected() is False


def test_on_connect_subscribes_registered_patterns_and_publishes_online(session, fake_paho_client):
    session.subscribe("devices/dev-1/status/post", lambda t, p: None)
    session.subscribe("devices/dev-1/apt/list/post", lambda t, p: None)

    session.connect()
    session._on_connect(fake_paho_client, None, {}, 0)

    fake_paho_client.subscribe.assert_any_call("devices/dev-1/status/post", qos=1)
    fake_paho_client.subscribe.assert_any_call("devices/dev-1/apt/list/post", qos=1)
    assert fake_paho_client.subscribe.call_count == 2

    online = _published(fake_paho_client, "devices/dev-1/status")
    assert len(online) == 1
    payload, kwargs = online[0]
    assert payload["state"] == "online"
    assert payload["device_id"] == "dev-1"
    assert "connected_since_ts" in payload
    assert kwargs["retain"] is True
    assert session.wait_until_connected(timeout=0) is True


def test_reconnect_resubscribes(session, fake_paho_client):
    session.subscribe("devices/dev-1/status/post", lambda t, p: None)
    session.connect()
    session._on_connect(fake_paho_client, None, {}, 0)
    session._on_disconnect(fake_paho_client, None, {}, 7)
    session._on_connect(fake_paho_client, None, {}, 0)

    assert fake_paho_client.subscribe.call_count == 2


def test_on_connect_failure_does_not_subscribe(session, fake_paho_client):
    session.subscribe("devices/dev-1/status/post", lambda t, p: None)
    session.connect()
    session._on_connect(fake_paho_client, None, {}, 5)

    fake_paho_client.subscribe.assert_not_called()
    assert session.wait_until_connected(timeout=0) is False


def test_subscribe_while_connected_subscribes_immediately(session, fake_paho_client):
    session.connect()
    session.subscribe("devices/dev-1/x", lambda t, p: None, qos=0)
    fake_paho_client.subscribe.assert_called_once_with("devices/dev-1/x", qos=0)

    session.unsubscribe("devices/dev-1/x")
    fake_paho_client.unsubscribe.assert_called_once_with("devices/dev-1/x")


def test_on_message_runs_callback_on_subscriber_executor(session, fake_paho_client):
    received = []
    executor = FakeExecutor()
    session.subscribe("devices/dev-1/status/post", lambda t, p: received.append((t, p)), executor)

    session._on_message(fake_paho_client, None, FakeMQTTMessage("devices/dev-1/status/post", b"{}"))

    assert executor.calls and executor.calls[0][1:] == ("devices/dev-1/status/post", b"{}")
    assert received == [("devices/dev-1/status/post", b"{}")]


def test_on_message_unknown_topic_is_ignored(session, fake_paho_client):
    cb = MagicMock()
    session.subscribe("devices/dev-1/status/post", cb)

    session._on_message(fake_paho_client, None, FakeMQTTMessage("devices/dev-1/nope/post", b"{}"))

    cb.assert_not_called()


def test_on_message_wildcard_subscription(session, fake_paho_client):
    cb = MagicMock()
    session.subscribe("devices/dev-1/apt/#", cb)

    session._on_message(fake_paho_client, None, FakeMQTTMessage("devices/dev-1/apt/repos/list", b"[]"))

    cb.assert_called_once_with("devices/dev-1/apt/repos/list", b"[]")


def test_retained_message_skipped_only_when_asked(session, fake_paho_client):
    live_only = MagicMock()
    everything = MagicMock()
    session.subscribe("devices/dev-1/echo", live_only, skip_retained=True)
    session.subscribe("devices/dev-1/#", everything)

    session._on_message(fake_paho_client, None, FakeMQTTMessage("devices/dev-1/echo", b"[]", retain=True))
    session._on_message(fake_paho_client, None, FakeMQTTMessage("devices/dev-1/echo", b"[1]"))

    live_only.assert_called_once_with("devices/dev-1/echo", b"[1]")
    assert everything.call_count == 2


def test_subscriber_exception_does_not_escape(session, fake_paho_client):
    cb = MagicMock(side_effect=RuntimeError("boom"))
    session.subscribe("devices/dev-1/status/post", cb)

    session._on_message(fake_paho_client, None, FakeMQTTMessage("devices/dev-1/status/post", b""))

    cb.assert_called_once()


def test_publish_encodes_dicts(session, fake_paho_client):
    session.connect()
    session.publish("devices/dev-1/x", {"a": 1}, retain=True)
    fake_paho_client.publish.assert_called_with("devices/dev-1/x", payload='{"a": 1}', qos=1, retain=True)


def test_publish_without_client_raises(session):
    with pytest.raises(RuntimeError):
        session.publish("devices/dev-1/x", "{}")


def test_disconnect_publishes_offline_and_stops_loop(session, fake_paho_client):
    session.connect()
    session._on_connect(fake_paho_client, None, {}, 0)
    fake_paho_client.publish.reset_mock()

    session.disconnect()

    offline = _published(fake_paho_client, "devices/dev-1/status")
    assert offline[0][0]["state"] == "offline"
    fake_paho_client.loop_stop.assert_called_once()
    fake_paho_client.disconnect.assert_called_once()
    assert session.is_connected() is False


def test_heartbeat_zero_interval_never_starts():
    beats = []
    hb = _Heartbeat(lambda: beats.append(1), 0)
    hb.start()
    assert hb.running is False
    assert beats == []


def test_heartbeat_beats_until_stopped():
    fired = threading.Event()
    hb = _Heartbeat(fired.set, 1)
    hb.start()
    try:
        assert fired.wait(timeout=3.0)
    finally:
        hb.stop()
    assert hb.running is False


def test_set_heartbeat_interval_starts_and_stops_when_connected(session, fake_paho_client):
    session.connect()
    session._on_connect(fake_paho_client, None, {}, 0)

    session.set_heartbeat_interval(30)
    assert session._heartbeat.running is True

    session.set_heartbeat_interval(0)
    assert session._heartbeat.running is False


def test_disconnect_stops_heartbeat(fake_paho_client):
    s = MQTTSession(
        host="localhost",
        port=1883,
        credential=Credential("tok-1"),
        topics=TopicSchema("dev-1"),
        version="1.0.0",
        heartbeat_interval_s=60,
    )
    s.connect()
    s._on_connect(fake_paho_client, None, {}, 0)
    assert s._heartbeat.running is True

    s.disconnect()
    assert s._heartbeat.running is False


def _heartbeat_threads():
    return [t for t in threading.enumerate() if t.name == "presence-heartbeat" and t.is_alive()]


def test_concurrent_heartbeat_starts_run_one_thread():
    before = len(_heartbeat_threads())
    hb = _Heartbeat(lambda: None, 60)
    barrier = threading.Barrier(8)

    def starter():
        barrier.wait()
        hb.start()

    starters = [threading.Thread(target=starter) for _ in range(8)]
    for t in starters:
        t.start()
    for t in starters:
        t.join()
    try:
        assert len(_heartbeat_threads()) == before + 1
    finally:
        hb.stop()
    assert len(_heartbeat_threads()) == before
