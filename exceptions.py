"""
exceptions.py — Team Control Unified Error Hierarchy

All Team Control exceptions live here. Every layer of the gateway manager
raises typed subclasses of TeamControlError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import ProtocolTimeoutError, RequestFailedError

Hierarchy:
    TeamControlError
    ├── GatewayError
    │   ├── GatewayNotFoundError
    │   ├── TransportError
    │   │   ├── NotConnectedError
    │   │   └── ConnectionClosedError
    │   ├── HandshakeError
    │   ├── ProtocolTimeoutError
    │   ├── RequestFailedError
    │   └── MalformedFrameError
    ├── HealthCheckError
    └── StoreError
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TeamControlError(Exception):
    """Base class for all Team Control exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(TeamControlError):
    """Base for errors talking to a remote gateway."""


class GatewayNotFoundError(GatewayError):
    """No gateway with the given id is registered."""

    def __init__(self, gateway_id: str) -> None:
        self.gateway_id = gateway_id
        super().__init__(f"Gateway not found: '{gateway_id}'")


class TransportError(GatewayError):
    """Socket-level open, send or abnormal close failure."""


class NotConnectedError(TransportError):
    """A request was issued while the socket is not open. Requests never queue."""


class ConnectionClosedError(TransportError):
    """The connection closed while a request was still waiting for its response."""


class HandshakeError(GatewayError):
    """The `connect` request was rejected or failed."""


class ProtocolTimeoutError(GatewayError):
    """No response arrived for a request within its deadline."""

    def __init__(self, method: str, timeout: float) -> None:
        self.method = method
        self.timeout = timeout
        super().__init__(f"Request '{method}' timed out after {timeout:g}s")


class RequestFailedError(GatewayError):
    """The gateway answered a request with `ok: false`.

    The remote message is kept verbatim so callers can show it as-is.
    """

    def __init__(
        self,
        method: str,
        message: str,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        self.method = method
        self.code = code
        self.details = details
        super().__init__(message)


class MalformedFrameError(GatewayError):
    """An inbound frame was not JSON or had an unrecognised structure."""


# ─────────────────────────────────────────────────────────────────────────────
# Health + storage
# ─────────────────────────────────────────────────────────────────────────────

class HealthCheckError(TeamControlError):
    """The HTTP health probe failed (non-2xx, timeout or network error)."""


class StoreError(TeamControlError):
    """Reading or writing the persisted gateway configuration failed."""


__all__ = [
    "TeamControlError",
    "GatewayError",
    "GatewayNotFoundError",
    "TransportError",
    "NotConnectedError",
    "ConnectionClosedError",
    "HandshakeError",
    "ProtocolTimeoutError",
    "RequestFailedError",
    "MalformedFrameError",
    "HealthCheckError",
    "StoreError",
]
