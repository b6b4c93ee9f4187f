"""
MQTT topic schema for Device Connector.

All device topics live under <root>/<device_id>. Capabilities are addressed by
device-relative base topics such as /apt/repos/list:

  request   <root>/<device_id><base>/post
  response  <root>/<device_id><base>
  presence  <root>/<device_id>/status (retained)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]+$")
_BASE_TOPIC_RE = re.compile(r"^(/[A-Za-z0-9_.-]+)+$")

POST_SUFFIX = "/post"
DEFAULT_ROOT = "devices"


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def _validate_device_id(device_id: str) -> str:
    if not isinstance(device_id, str) or not device_id:
        raise TopicSchemaError("device_id must be a non-empty string")
    if not _DEVICE_ID_RE.fullmatch(device_id):
        raise TopicSchemaError(
            f"device_id '{device_id}' is invalid; allowed: [A-Za-z0-9_.:-]+"
        )
    return device_id


def validate_base_topic(base_topic: str) -> str:
    """A base topic starts with '/', has no wildcards and does not end in /post."""
    if not isinstance(base_topic, str) or not _BASE_TOPIC_RE.fullmatch(base_topic):
        raise TopicSchemaError(
            f"base topic '{base_topic}' is invalid; expected '/segment[/segment...]'"
        )
    if base_topic.endswith(POST_SUFFIX):
        raise TopicSchemaError(f"base topic '{base_topic}' must not end with {POST_SUFFIX}")
    return base_topic


@dataclass(frozen=True, slots=True)
class TopicSchema:
    """
    MQTT topic schema for a single device.
    Root: <root>/<device_id>
    """

    device_id: str
    root: str = DEFAULT_ROOT

    def __post_init__(self) -> None:
        _validate_device_id(self.device_id)
        if not self.root or "+" in self.root or "#" in self.root:
            raise TopicSchemaError(f"topic root '{self.root}' is invalid")

    @property
    def base(self) -> str:
        return f"{self.root.rstrip('/')}/{self.device_id}"

    def status(self) -> str:
        return f"{self.base}/status"

    # -------------------------
    # Capability topics
    # -------------------------
    def response(self, base_topic: str) -> str:
        return f"{self.base}{validate_base_topic(base_topic)}"

    def request(self, base_topic: str) -> str:
        return f"{self.response(base_topic)}{POST_SUFFIX}"

    def owns(self, topic: str) -> bool:
        """True if topic is inside this device's namespace."""
        return isinstance(topic, str) and topic.startswith(self.base + "/")
