"""
OAuth 2.0 Device Authorization Grant (RFC 8628) for Device Connector.

start_device_auth() requests a device/user code pair; check_device_auth() makes
exactly one token poll. DeviceAuthPoller owns the polling loop:

    PENDING --pending--> PENDING
    PENDING --slow_down--> PENDING (interval += 5)
    PENDING --success--> AUTHORIZED
    PENDING --denied|expired|elapsed--> FAILED
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import jwt

from device_connector.errors import (
    AuthCancelled,
    AuthDenied,
    AuthExpired,
    AuthPending,
    AuthSlowDown,
    DecodeError,
    TransportError,
    UnexpectedStatus,
)
from device_connector.http_transport import HttpResponse, HttpTransport, RequestsTransport

logger = logging.getLogger(__name__)

DEVICE_CODE_PATH = "/oauth/device/code"
TOKEN_PATH = "/oauth/token"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

DEFAULT_INTERVAL_S = 5
SLOW_DOWN_STEP_S = 5

# Form values keep ':' and '/' readable (URIs, URNs); both decode identically.
_FORM_SAFE = ":/"


@dataclass(frozen=True, slots=True)
class DeviceCode:
    device_code: str = ""
    user_code: str = ""
    verification_uri: str = ""
    verification_uri_complete: str = ""
    expires_in: int = 0
    interval: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceCode":
        if not isinstance(data, dict):
            raise DecodeError("device code response is not a JSON object")
        if not isinstance(data.get("device_code"), str) or not data["device_code"]:
            raise DecodeError("device code response has no device_code")
        try:
            expires_in = int(data.get("expires_in", 0))
            interval = int(data.get("interval") or 0)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"device code response has invalid timing: {exc}") from exc

        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values.update(expires_in=expires_in, interval=interval if interval > 0 else DEFAULT_INTERVAL_S)
        for key in ("user_code", "verification_uri", "verification_uri_complete"):
            values[key] = str(values.get(key) or "")
        return cls(**values)


@dataclass(frozen=True, slots=True)
class Credential:
    access_token: str
    expires_in: int = 0
    token_type: str = ""

    def __repr__(self) -> str:
        # Never leak the token through logs.
        return f"Credential(token_type={self.token_type!r}, expires_in={self.expires_in})"


def _form(**values: str) -> str:
    return urlencode(values, safe=_FORM_SAFE)


def _decode_json(resp: HttpResponse, what: str) -> Any:
    try:
        return json.loads(resp.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"{what}: body is not valid JSON ({exc})") from exc


def _token_audiences(token: str) -> list[str]:
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise DecodeError(f"access token is not a JWT: {exc}") from exc
    aud = claims.get("aud")
    if aud is None:
        return []
    return [aud] if isinstance(aud, str) else [str(a) for a in aud]


class DeviceAuthenticator:
    """
    Single-call device flow operations against one identity provider.

    Neither method retries: transport errors propagate as-is and the caller's
    polling loop decides what to do.
    """

    def __init__(self, base_url: str, transport: Optional[HttpTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport or RequestsTransport()

    def start(self, client_id: str, audience: str) -> DeviceCode:
        url = self.base_url + DEVICE_CODE_PATH
        resp = self.transport.post_form(url, _form(client_id=client_id, audience=audience))
        if not 200 <= resp.status_code < 300:
            raise UnexpectedStatus(resp.status_code, body=resp.text)
        code = DeviceCode.from_dict(_decode_json(resp, "device code response"))
        logger.info(
            "Device code issued: user_code=%s verify at %s (expires in %ss)",
            code.user_code,
            code.verification_uri_complete or code.verification_uri,
            code.expires_in,
        )
        return code

    def check(
        self,
        client_id: str,
        device_code: str,
        expected_audience: Optional[str] = None,
    ) -> Credential:
        url = self.base_url + TOKEN_PATH
        body = _form(client_id=client_id, grant_type=DEVICE_CODE_GRANT, device_code=device_code)
        resp = self.transport.post_form(url, body)

        if resp.status_code == 200:
            data = _decode_json(resp, "token response")
            if not isinstance(data, dict) or not isinstance(data.get("access_token"), str):
                raise DecodeError("token response has no access_token")
            try:
                expires_in = int(data.get("expires_in") or 0)
            except (TypeError, ValueError) as exc:
                raise DecodeError(f"token response has invalid expires_in: {exc}") from exc
            credential = Credential(
                access_token=data["access_token"],
                expires_in=expires_in,
                token_type=str(data.get("token_type") or ""),
            )
            if expected_audience:
                audiences = _token_audiences(credential.access_token)
                if expected_audience not in audiences:
                    raise AuthDenied(
                        f"token audience {audiences} does not include {expected_audience!r}"
                    )
            return credential

        raise _token_error(resp)


def _token_error(resp: HttpResponse) -> Exception:
    error = ""
    description = ""
    try:
        data = json.loads(resp.body.decode("utf-8")) if resp.body else {}
        if isinstance(data, dict):
            error = str(data.get("error") or "")
            description = str(data.get("error_description") or "")
    except (UnicodeDecodeError, json.JSONDecodeError):
        pass

    message = description or error
    if error == "authorization_pending":
        return AuthPending(message)
    if error == "slow_down":
        return AuthSlowDown(message)
    if error == "access_denied":
        return AuthDenied(message)
    if error == "expired_token":
        return AuthExpired(message)
    return UnexpectedStatus(
        resp.status_code,
        f"token endpoint answered {resp.status_code}: {message or 'no error code'}",
        body=resp.text,
    )


def start_device_auth(
    client_id: str,
    audience: str,
    *,
    base_url: str,
    transport: Optional[HttpTransport] = None,
) -> DeviceCode:
    """Request a device/user code pair. Raises TransportError or DecodeError."""
    return DeviceAuthenticator(base_url, transport).start(client_id, audience)


def check_device_auth(
    client_id: str,
    device_code: str,
    expected_audience: Optional[str] = None,
    *,
    base_url: str,
    transport: Optional[HttpTransport] = None,
) -> str:
    """
    Poll the token endpoint once and return the access token unchanged.

    Raises AuthPending, AuthSlowDown, AuthDenied, AuthExpired, UnexpectedStatus,
    DecodeError or TransportError.
    """
    return DeviceAuthenticator(base_url, transport).check(
        client_id, device_code, expected_audience
    ).access_token


class DeviceAuthPoller:
    """
    Caller-owned polling loop for one device code.

    Waits on a threading.Event between attempts so stop() interrupts the wait,
    and never polls once expires_in has elapsed since the code was issued.
    """

    def __init__(
        self,
        authenticator: DeviceAuthenticator,
        client_id: str,
        device_code: DeviceCode,
        *,
        expected_audience: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        issued_at: Optional[float] = None,
    ) -> None:
        self.authenticator = authenticator
        self.client_id = client_id
        self.device_code = device_code
        self.expected_audience = expected_audience
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._issued_at = clock() if issued_at is None else issued_at
        # interval is a minimum; zero or negative would poll without pause
        self.interval = device_code.interval if device_code.interval > 0 else DEFAULT_INTERVAL_S
        self.attempts = 0

    def stop(self) -> None:
        self.stop_event.set()

    def _remaining(self) -> float:
        return self.device_code.expires_in - (self._clock() - self._issued_at)

    def _wait(self, seconds: float) -> None:
        if self.stop_event.wait(timeout=max(0.0, seconds)):
            raise AuthCancelled("device authorization polling stopped")

    def run(self) -> Credential:
        """Block until AUTHORIZED (returns the credential) or FAILED (raises)."""
        while True:
            remaining = self._remaining()
            if remaining <= 0:
                raise AuthExpired(
                    f"device code expired after {self.device_code.expires_in}s"
                )
            # Sleep the interval, but wake up at expiry rather than after it.
            self._wait(min(self.interval, remaining))
            if self._remaining() <= 0:
                raise AuthExpired(
                    f"device code expired after {self.device_code.expires_in}s"
                )

            self.attempts += 1
            try:
                credential = self.authenticator.check(
                    self.client_id,
                    self.device_code.device_code,
                    self.expected_audience,
                )
            except AuthPending:
                logger.debug("Authorization pending (attempt %d)", self.attempts)
                continue
            except AuthSlowDown:
                self.interval += SLOW_DOWN_STEP_S
                logger.info("Provider asked to slow down; interval now %ss", self.interval)
                continue
            except TransportError as exc:
                logger.warning("Token poll failed, will retry: %s", exc)
                continue

            logger.info("Device authorized after %d poll(s)", self.attempts)
            return credential

    def run_in_background(self, executor: Optional[ThreadPoolExecutor] = None) -> Future:
        """
        Run the loop on its own thread and return a Future for the credential.

        A private single-thread executor is used when none is supplied; it is
        shut down once the loop finishes.
        """
        if executor is not None:
            return executor.submit(self.run)

        own = ThreadPoolExecutor(max_workers=1, thread_name_prefix="device-auth")
        future = own.submit(self.run)
        future.add_done_callback(lambda _f: own.shutdown(wait=False))
        return future
