"""
gateway/health.py — Per-Gateway Health Monitor

Every `interval` seconds:
  1. protocol `ping` over the gateway connection (short timeout)
  2. on failure, HTTP GET {http url}{http_path} with the bearer token
     - success also asks the connection to reconnect if its socket is down
  3. the outcome is reported to the manager, which owns status + counters

The monitor only reports. It never removes a gateway, however long it fails.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from exceptions import GatewayError, HealthCheckError
from gateway.connection import GatewayConnection
from gateway.protocol import Method
from gateway.urls import to_http_url
from observability.logger import bind_gateway, get_logger

log = get_logger(__name__)


@dataclass
class HealthResult:
    ok: bool
    via: str                       # "ping" | "http"
    error: Optional[str] = None
    reconnect_triggered: bool = False


class HealthMonitor:
    """Periodic liveness probe for one gateway."""

    def __init__(
        self,
        gateway_id: str,
        url: str,
        connection: GatewayConnection,
        on_result: Callable[[str, HealthResult], None],
        *,
        token: Optional[str] = None,
        interval: float = 10.0,
        ping_timeout: float = 5.0,
        http_timeout: float = 5.0,
        http_path: str = "/api/health",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.gateway_id = gateway_id
        self._url = url
        self._connection = connection
        self._on_result = on_result
        self._token = token
        self._interval = interval
        self._ping_timeout = ping_timeout
        self._http_timeout = http_timeout
        self._http_path = http_path
        self._transport = transport
        self._task: Optional[asyncio.Task] = None

    @property
    def health_url(self) -> str:
        return to_http_url(self._url) + self._http_path

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self._loop(), name=f"gateway-health-{self.gateway_id}"
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        bind_gateway(self.gateway_id)
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.check_once()
            except Exception as e:
                log.error("health.check_crashed", error=str(e), exc_info=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Probes
    # ─────────────────────────────────────────────────────────────────────────

    async def check_once(self) -> HealthResult:
        """Run one probe cycle and report the result."""
        try:
            await self._connection.request(Method.PING.value, {}, timeout=self._ping_timeout)
        except GatewayError as e:
            log.debug("health.ping_failed", error=str(e))
        else:
            result = HealthResult(ok=True, via="ping")
            self._on_result(self.gateway_id, result)
            return result

        try:
            await self._http_probe()
        except HealthCheckError as e:
            log.info("health.probe_failed", url=self.health_url, error=str(e))
            result = HealthResult(ok=False, via="http", error=str(e))
            self._on_result(self.gateway_id, result)
            return result

        triggered = False
        if not self._connection.is_open:
            triggered = self._connection.reconnect_now()
            log.info("health.reconnect_triggered", triggered=triggered)
        result = HealthResult(ok=True, via="http", reconnect_triggered=triggered)
        self._on_result(self.gateway_id, result)
        return result

    async def _http_probe(self) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            async with httpx.AsyncClient(
                timeout=self._http_timeout,
                transport=self._transport,
            ) as client:
                response = await asyncio.wait_for(
                    client.get(self.health_url, headers=headers),
                    timeout=self._http_timeout,
                )
        except asyncio.TimeoutError as e:
            raise HealthCheckError(f"HTTP probe timed out after {self._http_timeout:g}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise HealthCheckError(str(e) or e.__class__.__name__) from e

        if not response.is_success:
            raise HealthCheckError(f"HTTP {response.status_code}")
