"""
tests/unit/test_gateway_health.py — Health Monitor Tests

The connection is faked; the HTTP probe runs through httpx.MockTransport.
"""

import asyncio

import httpx
import pytest

from exceptions import NotConnectedError, ProtocolTimeoutError
from gateway.health import HealthMonitor


class FakeConnection:
    def __init__(self, ping_error=None, is_open=False):
        self.ping_error = ping_error
        self.is_open = is_open
        self.reconnects = 0
        self.requests = []

    async def request(self, method, params=None, timeout=None):
        self.requests.append((method, timeout))
        if self.ping_error is not None:
            raise self.ping_error
        return {}

    def reconnect_now(self):
        self.reconnects += 1
        return True


def make_monitor(connection, handler=None, *, token=None, url="http://gw.local:18789", **kwargs):
    results = []
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200)))
    monitor = HealthMonitor(
        "gw-1",
        url,
        connection,
        lambda gid, result: results.append((gid, result)),
        token=token,
        transport=transport,
        **kwargs,
    )
    return monitor, results


class TestCheckOnce:
    @pytest.mark.asyncio
    async def test_ping_success(self):
        conn = FakeConnection(is_open=True)
        monitor, results = make_monitor(conn, ping_timeout=2.5)
        result = await monitor.check_once()
        assert result.ok is True
        assert result.via == "ping"
        assert conn.requests == [("ping", 2.5)]
        assert results == [("gw-1", result)]

    @pytest.mark.asyncio
    async def test_ping_fails_http_ok_triggers_reconnect(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        conn = FakeConnection(ping_error=NotConnectedError("down"), is_open=False)
        monitor, results = make_monitor(conn, handler, token="s3cret")
        result = await monitor.check_once()
        assert result.ok is True
        assert result.via == "http"
        assert result.reconnect_triggered is True
        assert conn.reconnects == 1
        assert str(seen[0].url) == "http://gw.local:18789/api/health"
        assert seen[0].headers["Authorization"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_http_ok_with_open_socket_does_not_reconnect(self):
        conn = FakeConnection(ping_error=ProtocolTimeoutError("ping", 5), is_open=True)
        monitor, _ = make_monitor(conn)
        result = await monitor.check_once()
        assert result.ok is True
        assert result.reconnect_triggered is False
        assert conn.reconnects == 0

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self):
        seen = []
        conn = FakeConnection(ping_error=NotConnectedError("down"))
        monitor, _ = make_monitor(
            conn, lambda r: seen.append(r) or httpx.Response(200)
        )
        await monitor.check_once()
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_http_error_status_is_failure(self):
        conn = FakeConnection(ping_error=NotConnectedError("down"))
        monitor, results = make_monitor(conn, lambda r: httpx.Response(503))
        result = await monitor.check_once()
        assert result.ok is False
        assert result.error == "HTTP 503"
        assert conn.reconnects == 0
        assert results[0][1] is result

    @pytest.mark.asyncio
    async def test_network_error_is_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        conn = FakeConnection(ping_error=NotConnectedError("down"))
        monitor, _ = make_monitor(conn, handler)
        result = await monitor.check_once()
        assert result.ok is False
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_ws_url_probed_over_http(self):
        seen = []
        conn = FakeConnection(ping_error=NotConnectedError("down"))
        monitor, _ = make_monitor(
            conn,
            lambda r: seen.append(r) or httpx.Response(200),
            url="wss://gw.example.com",
            http_path="/healthz",
        )
        await monitor.check_once()
        assert str(seen[0].url) == "https://gw.example.com/healthz"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_loop_reports_periodically(self):
        conn = FakeConnection(is_open=True)
        monitor, results = make_monitor(conn, interval=0.01)
        monitor.start()
        monitor.start()
        try:
            for _ in range(100):
                if len(results) >= 3:
                    break
                await asyncio.sleep(0.01)
            assert len(results) >= 3
            assert monitor.running
        finally:
            await monitor.stop()
        assert not monitor.running

    @pytest.mark.asyncio
    async def test_repeated_failures_keep_running(self):
        conn = FakeConnection(ping_error=NotConnectedError("down"))
        monitor, results = make_monitor(conn, lambda r: httpx.Response(500), interval=0.01)
        monitor.start()
        try:
            for _ in range(100):
                if len(results) >= 3:
                    break
                await asyncio.sleep(0.01)
            assert all(not r.ok for _, r in results)
            assert monitor.running
        finally:
            await monitor.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        monitor, _ = make_monitor(FakeConnection())
        await monitor.stop()
        assert not monitor.running
