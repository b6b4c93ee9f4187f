from __future__ import annotations

import pytest

from conftest import FakeSession
from device_connector.core.dispatcher import Dispatcher
from device_connector.core.roundtrip import send_and_receive
from device_connector.errors import RequestTimeout


@pytest.fixture
def loopback(topics):
    return FakeSession(topics, loopback=True)


@pytest.fixture
def dispatcher(loopback, topics, status):
    d = Dispatcher(loopback, topics, status)
    yield d
    d.close()


def test_send_and_receive_returns_handler_response(dispatcher, loopback, topics):
    dispatcher.register_handler("/echo", lambda r, s, e: {"echo": r["x"]})

    resp = send_and_receive(loopback, topics, "/echo", {"x": 42}, timeout=5)

    assert resp["echo"] == 42
    assert resp["request_id"]
    # the temporary response subscription is gone
    assert "devices/dev-1/echo" not in loopback.subs


def test_send_and_receive_list_response(dispatcher, loopback, topics):
    dispatcher.register_handler("/apt/repos/list", lambda r, s, e: [])

    assert send_and_receive(loopback, topics, "/apt/repos/list", timeout=5) == []


def test_stale_retained_list_is_not_taken_as_reply(dispatcher, loopback, topics):
    loopback.publish("devices/dev-1/items", '["stale"]', retain=True)
    dispatcher.register_handler("/items", lambda r, s, e: ["fresh"])

    assert send_and_receive(loopback, topics, "/items", timeout=5) == ["fresh"]


def test_send_and_receive_keeps_caller_request_id(dispatcher, loopback, topics):
    dispatcher.register_handler("/echo", lambda r, s, e: {})

    resp = send_and_receive(loopback, topics, "/echo", {"request_id": "mine"}, timeout=5)

    assert resp == {"request_id": "mine"}


def test_send_and_receive_times_out_without_handler(loopback, topics):
    with pytest.raises(RequestTimeout):
        send_and_receive(loopback, topics, "/nothing", timeout=0.1)

    assert loopback.subs == {}
    topic, _, _, retain = loopback.published[0]
    assert topic == "devices/dev-1/nothing/post"
    assert retain is False


def test_response_for_other_request_is_skipped(dispatcher, loopback, topics):
    dispatcher.register_handler("/echo", lambda r, s, e: {"request_id": "someone-else"})

    with pytest.raises(RequestTimeout):
        send_and_receive(loopback, topics, "/echo", timeout=0.3)


def test_request_timeout_is_a_timeout_error():
    assert issubclass(RequestTimeout, TimeoutError)
