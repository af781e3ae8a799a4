"""
gateway/discovery.py — Gateway Discovery Sources

Two ways of finding gateways on the local network, both ending in the same
registration call as a manual add (with auto_discovered=True):

  - UDP: listen on the discovery port for `{"type": "clawdbot-gateway", "url"}`
    announcements and periodically broadcast a discovery request.
  - Scan: probe `http://{host}:{port}/api/health` on this machine's addresses.
"""

from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, Callable, Optional

import httpx

from observability.logger import get_logger

log = get_logger(__name__)

ANNOUNCE_TYPE = "clawdbot-gateway"
REQUEST_TYPE = "clawdbot-gateway-discovery"

# register(url, name, token, auto_discovered) -> sanitized gateway record
Register = Callable[..., dict[str, Any]]


def local_hosts() -> list[str]:
    """localhost plus every IPv4 address this machine resolves to."""
    hosts = ["localhost", "127.0.0.1"]
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except (socket.gaierror, OSError):
        return hosts
    for info in infos:
        address = info[4][0]
        if address not in hosts and not address.startswith("127."):
            hosts.append(address)
    return hosts


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_datagram: Callable[[bytes, tuple], Any]):
        self._on_datagram = on_datagram

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        log.warning("discovery.socket_error", error=str(exc))


class GatewayDiscovery:
    """UDP listener/broadcaster plus on-demand local scan."""

    def __init__(
        self,
        register: Register,
        *,
        port: int = 18790,
        broadcast_addresses: Optional[list[str]] = None,
        broadcast_interval: float = 30.0,
        scan_ports: Optional[list[int]] = None,
        scan_timeout: float = 2.0,
        http_path: str = "/api/health",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._register = register
        self._port = port
        self._broadcast_addresses = broadcast_addresses or ["255.255.255.255"]
        self._broadcast_interval = broadcast_interval
        self._scan_ports = scan_ports or [18789, 3000, 8080]
        self._scan_timeout = scan_timeout
        self._http_path = http_path
        self._http_transport = transport

        self._udp: Optional[asyncio.DatagramTransport] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def listening(self) -> bool:
        return self._udp is not None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, scan: bool = False) -> None:
        if self._udp is None:
            loop = asyncio.get_running_loop()
            try:
                self._udp, _ = await loop.create_datagram_endpoint(
                    lambda: _DiscoveryProtocol(self.handle_datagram),
                    local_addr=("0.0.0.0", self._port),
                    allow_broadcast=True,
                    reuse_port=hasattr(socket, "SO_REUSEPORT"),
                )
            except OSError as e:
                log.warning("discovery.listen_failed", port=self._port, error=str(e))
            else:
                log.info("discovery.listening", port=self._port)
                self._tasks.append(asyncio.create_task(
                    self._broadcast_loop(), name="gateway-discovery-broadcast"
                ))
        if scan:
            self._tasks.append(asyncio.create_task(
                self.scan_local(), name="gateway-discovery-scan"
            ))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._udp is not None:
            self._udp.close()
            self._udp = None
        log.info("discovery.stopped")

    # ── UDP ───────────────────────────────────────────────────────────────────

    def handle_datagram(self, data: bytes, addr: tuple) -> Optional[dict[str, Any]]:
        """Register the gateway a datagram announces. Anything else is ignored."""
        try:
            msg = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(msg, dict) or msg.get("type") != ANNOUNCE_TYPE:
            return None
        url = msg.get("url")
        if not isinstance(url, str) or not url:
            return None

        sender = addr[0] if addr else "unknown"
        log.info("discovery.announced", url=url, sender=sender)
        return self._register(
            url,
            msg.get("name") or f"Gateway @ {sender}",
            None,
            auto_discovered=True,
        )

    def send_discovery_request(self) -> int:
        """Broadcast one discovery request. Returns how many sends succeeded."""
        if self._udp is None:
            return 0
        payload = json.dumps({"type": REQUEST_TYPE}).encode("utf-8")
        sent = 0
        for address in self._broadcast_addresses:
            try:
                self._udp.sendto(payload, (address, self._port))
                sent += 1
            except OSError as e:
                log.debug("discovery.broadcast_failed", address=address, error=str(e))
        return sent

    async def _broadcast_loop(self) -> None:
        while True:
            self.send_discovery_request()
            await asyncio.sleep(self._broadcast_interval)

    # ── Local scan ────────────────────────────────────────────────────────────

    async def scan_local(self, hosts: Optional[list[str]] = None) -> list[dict[str, Any]]:
        """Probe well-known ports on local addresses; register what answers."""
        hosts = hosts or local_hosts()
        log.info("discovery.scan_started", hosts=hosts, ports=self._scan_ports)

        async with httpx.AsyncClient(
            timeout=self._scan_timeout,
            transport=self._http_transport,
        ) as client:
            found = await asyncio.gather(*[
                self._probe(client, host, port)
                for host in hosts
                for port in self._scan_ports
            ])

        registered = []
        for hit in found:
            if hit is None:
                continue
            url, name = hit
            registered.append(self._register(url, name, None, auto_discovered=True))
        log.info("discovery.scan_finished", found=len(registered))
        return registered

    async def _probe(
        self, client: httpx.AsyncClient, host: str, port: int
    ) -> Optional[tuple[str, str]]:
        url = f"http://{host}:{port}"
        try:
            response = await client.get(url + self._http_path)
        except (httpx.HTTPError, httpx.InvalidURL):
            return None
        if not response.is_success:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        if data.get("type") == "clawdbot" or data.get("gateway"):
            log.info("discovery.found", url=url)
            return url, data.get("name") or f"Gateway @ {host}:{port}"
        return None
