"""
gateway/connection.py — Supervised Gateway Connection

One GatewayConnection per registered gateway. It owns the socket, the table
of in-flight requests and the reconnect loop:

    start() ──► supervisor task
                  ├─ open socket (http→ws, https→wss)
                  ├─ `connect` handshake request   → listener.on_handshake()
                  ├─ `sessions.list` seed request  → listener.on_sessions()
                  ├─ reader loop: responses resolve pending futures,
                  │               events go to listener.on_event()
                  └─ on close/error: reject pending, report status,
                                     sleep reconnect_delay, repeat

The loop never gives up while the connection is registered; close() cancels
it. reconnect_now() cuts the current sleep short.

Usage:
    conn = GatewayConnection("gw-1", "http://10.0.0.5:18789", listener=manager)
    conn.start()
    payload = await conn.request("sessions.history", {"sessionKey": key, "limit": 50})
    await conn.close()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from exceptions import (
    ConnectionClosedError,
    GatewayError,
    HandshakeError,
    NotConnectedError,
    ProtocolTimeoutError,
    RequestFailedError,
    TransportError,
)
from gateway.models import GatewayStatus
from gateway.protocol import (
    EventFrame,
    EventName,
    HelloOkFrame,
    IgnoredFrame,
    Method,
    RequestFrame,
    ResponseFrame,
    parse_frame,
)
from gateway.urls import to_ws_url
from observability.logger import bind_gateway, get_logger

log = get_logger(__name__)

Connector = Callable[[str, dict[str, str]], Awaitable[Any]]


class ConnectionListener(Protocol):
    """Callbacks a connection reports into (implemented by the manager)."""

    def on_status(self, gateway_id: str, status: GatewayStatus, error: Optional[str] = None) -> None: ...

    def on_handshake(self, gateway_id: str, payload: dict[str, Any]) -> None: ...

    def on_sessions(self, gateway_id: str, sessions: list[Any]) -> None: ...

    def on_event(self, gateway_id: str, frame: EventFrame) -> None: ...


@dataclass
class PendingRequest:
    method: str
    future: asyncio.Future


def _is_open(ws: Any) -> bool:
    return ws is not None and getattr(ws, "state", None) is State.OPEN


class GatewayConnection:
    """Resilient request/response + event link to one gateway."""

    def __init__(
        self,
        gateway_id: str,
        url: str,
        *,
        listener: ConnectionListener,
        token: Optional[str] = None,
        connect_params: Optional[dict[str, Any]] = None,
        reconnect_delay: float = 5.0,
        request_timeout: float = 30.0,
        handshake_timeout: float = 10.0,
        open_timeout: float = 5.0,
        max_message_bytes: int = 4 * 1024 * 1024,
        connector: Optional[Connector] = None,
    ):
        self.gateway_id = gateway_id
        self.url = url
        self._listener = listener
        self._token = token
        self._connect_params = connect_params or {}
        self._reconnect_delay = reconnect_delay
        self._request_timeout = request_timeout
        self._handshake_timeout = handshake_timeout
        self._open_timeout = open_timeout
        self._max_message_bytes = max_message_bytes
        self._connector: Connector = connector or self._open_socket

        self._ws: Any = None
        self._pending: dict[str, PendingRequest] = {}
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._closing = False
        self._close_reason: Optional[str] = None
        self.attempts = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the supervisor task. No-op if it is already running."""
        if self._closing or (self._task is not None and not self._task.done()):
            return
        self._task = asyncio.create_task(
            self._supervise(), name=f"gateway-connection-{self.gateway_id}"
        )

    async def close(self) -> None:
        """Stop reconnecting, close the socket and reject everything pending."""
        self._closing = True
        self._wake.set()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fail_pending("gateway connection torn down")
        log.info("connection.closed", gateway_id=self.gateway_id)

    def reconnect_now(self) -> bool:
        """
        Skip the remaining reconnect delay. Returns False when the socket is
        already open or the connection has been closed.
        """
        if self._closing or self.is_open:
            return False
        if self._task is None or self._task.done():
            self.start()
        else:
            self._wake.set()
        return True

    @property
    def is_open(self) -> bool:
        return _is_open(self._ws)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ─────────────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send one request and wait for its response payload.

        Raises NotConnectedError if the socket is not open (nothing is
        queued), ProtocolTimeoutError when no response arrives in time,
        RequestFailedError for `ok: false`, ConnectionClosedError if the
        socket closes first.
        """
        ws = self._ws
        if not _is_open(ws):
            raise NotConnectedError(f"Gateway '{self.gateway_id}' is not connected")

        timeout = self._request_timeout if timeout is None else timeout
        frame = RequestFrame(method=method, params=params or {})
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[frame.id] = PendingRequest(method=method, future=future)

        try:
            await ws.send(frame.to_json())
        except (ConnectionClosed, OSError) as e:
            self._pending.pop(frame.id, None)
            raise TransportError(f"Sending '{method}' failed: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            log.warning("connection.request_timeout", method=method, timeout=timeout)
            raise ProtocolTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(frame.id, None)

    def _fail_pending(self, reason: str) -> None:
        """Reject and forget every in-flight request. Safe to call repeatedly."""
        if not self._pending:
            return
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(
                    ConnectionClosedError(f"Connection closed ({reason}) during '{entry.method}'")
                )
        log.debug("connection.pending_rejected", count=len(pending), reason=reason)

    # ─────────────────────────────────────────────────────────────────────────
    # Supervisor
    # ─────────────────────────────────────────────────────────────────────────

    async def _supervise(self) -> None:
        bind_gateway(self.gateway_id)
        while not self._closing:
            self.attempts += 1
            try:
                await self._run_once()
            except HandshakeError as e:
                log.warning("connection.handshake_failed", error=str(e))
                self._listener.on_status(self.gateway_id, GatewayStatus.ERROR, str(e))
            except TransportError as e:
                log.warning("connection.transport_error", error=str(e))
                self._listener.on_status(self.gateway_id, GatewayStatus.ERROR, str(e))
            except Exception as e:
                log.error("connection.unexpected_error", error=str(e), exc_info=True)
                self._listener.on_status(
                    self.gateway_id, GatewayStatus.ERROR, str(e) or type(e).__name__
                )
            else:
                log.info("connection.disconnected", reason=self._close_reason)
                self._listener.on_status(
                    self.gateway_id, GatewayStatus.DISCONNECTED, self._close_reason
                )
            finally:
                self._ws = None
                self._fail_pending("connection closed")

            if self._closing:
                break
            log.info("connection.reconnect_scheduled", delay=self._reconnect_delay)
            await self._wait_before_reconnect()

    async def _wait_before_reconnect(self) -> None:
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._reconnect_delay)
        except asyncio.TimeoutError:
            pass

    async def _run_once(self) -> None:
        """One socket lifetime: open, handshake, seed, read until closed."""
        self._close_reason = None
        ws_url = to_ws_url(self.url)
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}

        log.info("connection.opening", url=ws_url, attempt=self.attempts)
        try:
            ws = await self._connector(ws_url, headers)
        except (OSError, WebSocketException, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"Could not open {ws_url}: {e}") from e

        self._ws = ws
        reader = asyncio.create_task(
            self._read_loop(ws), name=f"gateway-reader-{self.gateway_id}"
        )
        try:
            try:
                hello = await self.request(
                    Method.CONNECT.value,
                    self._connect_params,
                    timeout=self._handshake_timeout,
                )
            except GatewayError as e:
                raise HandshakeError(f"Handshake rejected: {e}") from e

            hello = hello if isinstance(hello, dict) else {}
            log.info("connection.handshake_ok", protocol=hello.get("protocol"))
            self._listener.on_handshake(self.gateway_id, hello)

            await self._seed_sessions()
            await reader
        finally:
            if not reader.done():
                reader.cancel()
            try:
                await reader
            except (asyncio.CancelledError, TransportError):
                pass
            await self._close_socket(ws)

    async def _seed_sessions(self) -> None:
        try:
            payload = await self.request(Method.SESSIONS_LIST.value, {})
        except GatewayError as e:
            log.warning("connection.sessions_seed_failed", error=str(e))
            return
        sessions = payload.get("sessions") if isinstance(payload, dict) else None
        self._listener.on_sessions(self.gateway_id, sessions if isinstance(sessions, list) else [])

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as e:
            log.debug("connection.close_failed", error=str(e))

    async def _open_socket(self, url: str, headers: dict[str, str]) -> Any:
        return await connect(
            url,
            additional_headers=headers or None,
            open_timeout=self._open_timeout,
            max_size=self._max_message_bytes,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Reader loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _read_loop(self, ws: Any) -> None:
        """Dispatch inbound frames in arrival order until the socket closes."""
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            raise TransportError(f"Connection lost: {e}") from e
        finally:
            self._fail_pending("connection closed")

    def _dispatch(self, raw: str | bytes) -> None:
        frame = parse_frame(raw)

        if isinstance(frame, ResponseFrame):
            entry = self._pending.pop(frame.id, None)
            if entry is None or entry.future.done():
                log.debug("connection.response_unmatched", request_id=frame.id)
                return
            if frame.ok:
                entry.future.set_result(frame.payload)
            else:
                entry.future.set_exception(RequestFailedError(
                    method=entry.method,
                    message=frame.error_message,
                    code=frame.error_code,
                    details=(frame.error or {}).get("details"),
                ))
            return

        if isinstance(frame, EventFrame):
            if frame.event == EventName.SHUTDOWN.value:
                reason = frame.data.get("reason")
                self._close_reason = str(reason) if reason else "gateway shutdown"
            try:
                self._listener.on_event(self.gateway_id, frame)
            except Exception as e:
                log.error(
                    "connection.event_handler_failed",
                    gateway_event=frame.event,
                    error=str(e),
                    exc_info=True,
                )
            return

        if isinstance(frame, HelloOkFrame):
            log.debug("connection.legacy_hello_ok", protocol=frame.payload.get("protocol"))
            return

        if isinstance(frame, IgnoredFrame):
            log.warning("connection.frame_dropped", reason=frame.reason)
            return

        if isinstance(frame, RequestFrame):
            log.debug("connection.inbound_request_ignored", method=frame.method)
