"""
Error taxonomy for Device Connector.

Auth outcomes are distinct exception types because the polling loop branches on
them. Dispatcher-level errors are converted to response payloads and never
escape the dispatcher.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for all connector errors."""

    kind = "error"


class TransportError(ConnectorError):
    """Network or connection failure. Retryable."""

    kind = "transport_error"


class DecodeError(ConnectorError):
    """Malformed JSON on an HTTP body or broker payload. Not retryable."""

    kind = "decode_error"


class AuthError(ConnectorError):
    """Base class for token endpoint outcomes other than success."""

    kind = "auth_error"
    terminal = True


class AuthPending(AuthError):
    """The user has not authorized the device yet; keep polling."""

    kind = "authorization_pending"
    terminal = False


class AuthSlowDown(AuthError):
    """The provider asks to poll less often; keep polling with a longer interval."""

    kind = "slow_down"
    terminal = False


class AuthDenied(AuthError):
    """The user (or the audience check) refused the authorization."""

    kind = "access_denied"


class AuthExpired(AuthError):
    """The device code expired before authorization completed."""

    kind = "expired_token"


class UnexpectedStatus(AuthError):
    """The provider answered with an HTTP status the flow does not know."""

    kind = "unexpected_status"

    def __init__(self, status_code: int, message: str = "", body: Optional[str] = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"unexpected HTTP status {status_code}")


class AuthCancelled(ConnectorError):
    """The polling loop was stopped from outside."""

    kind = "cancelled"


class HandlerError(ConnectorError):
    """Capability-specific failure, reported on the response topic."""

    kind = "handler_error"


class ProtocolViolation(ConnectorError):
    """A message arrived on a topic with no registered binding."""

    kind = "protocol_violation"


class BindingConflict(ConnectorError, ValueError):
    """A topic binding collides with one that is already registered."""

    kind = "binding_conflict"


class RequestTimeout(ConnectorError, TimeoutError):
    """No response arrived within the caller's timeout."""

    kind = "timeout"
