"""
Synchronous request/response over the broker.

Used by operator-side tooling and integration tests: publish a request on
<base>/post, wait a bounded time for the answer on <base>. A timeout does not
cancel the handler on the device; its late response simply goes unconsumed.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Optional

from device_connector.errors import DecodeError, RequestTimeout
from device_connector.mqtt_topics import TopicSchema

logger = logging.getLogger(__name__)


def send_and_receive(
    session: Any,
    topics: TopicSchema,
    base_topic: str,
    request: Optional[dict[str, Any]] = None,
    *,
    timeout: float = 5.0,
) -> Any:
    """
    Publish request to <base>/post and return the decoded response from <base>.

    A request_id is added when missing and dict responses carrying a different
    request_id are skipped. Retained copies on <base> are ignored, so a stale
    answer is never taken for this one. Non-dict responses (lists) carry no
    request_id; with two callers in flight on the same base topic either may
    receive the other's list.

    Raises:
        RequestTimeout: If no matching response arrives within timeout
        DecodeError: If the response is not valid JSON
    """
    request = dict(request or {})
    request_id = str(request.setdefault("request_id", uuid.uuid4().hex))

    response_topic = topics.response(base_topic)
    done = threading.Event()
    box: dict[str, bytes] = {}

    def _on_response(topic: str, payload: bytes) -> None:
        if done.is_set():
            return
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            data = None
        if isinstance(data, dict) and data.get("request_id") not in (None, request_id):
            logger.debug("Skipping response for another request on %s", topic)
            return
        box["payload"] = payload
        done.set()

    session.subscribe(response_topic, _on_response, skip_retained=True)
    try:
        session.publish(topics.request(base_topic), json.dumps(request), qos=1, retain=False)
        if not done.wait(timeout=timeout):
            raise RequestTimeout(f"no response on {response_topic} within {timeout}s")
    finally:
        session.unsubscribe(response_topic)

    try:
        return json.loads(box["payload"].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"response on {response_topic} is not valid JSON: {exc}") from exc
