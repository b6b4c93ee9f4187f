"""
HTTP transport shim for the Device Authenticator.

The authenticator only ever needs "POST an already-encoded form, get status +
body back", so the boundary is a single method. Tests inject a fake transport;
production uses a requests.Session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

import requests

from device_connector.errors import TransportError

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
REQUEST_TIMEOUT_S = 10.0


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status_code: int
    body: bytes
    headers: Mapping[str, str]

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpTransport(Protocol):
    """Minimal interface the authenticator needs from an HTTP client."""

    def post_form(self, url: str, body: str) -> HttpResponse: ...


class RequestsTransport:
    """HttpTransport backed by a requests.Session."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = REQUEST_TIMEOUT_S,
    ) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout

    def post_form(self, url: str, body: str) -> HttpResponse:
        try:
            resp = self._session.post(
                url,
                data=body.encode("utf-8"),
                headers={"content-type": FORM_CONTENT_TYPE},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.error("POST %s failed: %s", url, exc)
            raise TransportError(f"POST {url} failed: {exc}") from exc

        return HttpResponse(
            status_code=resp.status_code,
            body=resp.content or b"",
            headers=dict(resp.headers),
        )

    def close(self) -> None:
        self._session.close()
