from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from device_connector.errors import TransportError
from device_connector.http_transport import FORM_CONTENT_TYPE, HttpResponse, RequestsTransport


def test_post_form_sends_encoded_body_with_form_content_type():
    session = MagicMock()
    session.post.return_value = SimpleNamespace(status_code=200, content=b'{"ok": true}', headers={"X-A": "1"})

    resp = RequestsTransport(session, timeout=3.0).post_form("https://auth/x", "a=1&b=2")

    session.post.assert_called_once_with(
        "https://auth/x",
        data=b"a=1&b=2",
        headers={"content-type": FORM_CONTENT_TYPE},
        timeout=3.0,
    )
    assert resp == HttpResponse(200, b'{"ok": true}', {"X-A": "1"})


def test_non_2xx_is_returned_not_raised():
    session = MagicMock()
    session.post.return_value = SimpleNamespace(status_code=400, content=b"bad", headers={})

    resp = RequestsTransport(session).post_form("https://auth/x", "")

    assert resp.status_code == 400
    assert resp.text == "bad"


def test_request_exception_becomes_transport_error():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("refused")

    with pytest.raises(TransportError):
        RequestsTransport(session).post_form("https://auth/x", "a=1")


def test_close_closes_session():
    session = MagicMock()
    RequestsTransport(session).close()
    session.close.assert_called_once()
