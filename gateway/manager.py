"""
gateway/manager.py — Gateway Manager (registry + lifecycle)

Authoritative owner of:
  - the gateway map        id → GatewayState
  - the agent map          AgentKey → AgentEntity (mutated via SessionReconciler)
  - one GatewayConnection and one HealthMonitor per gateway

Gateway status changes only through the connection / health callbacks below.
Every mutation is announced on `manager.events` (gateway:added,
gateway:removed, gateway:update, agent:update, agent:removed, chat:event).

Usage:
    manager = GatewayManager.from_settings(get_settings())
    manager.subscribe(lambda ev: print(ev.type, ev.payload))
    await manager.start()
    manager.add_gateway("10.0.0.5:18789", token="secret")
    ...
    await manager.shutdown()
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Optional

import httpx

from config.settings import Settings
from exceptions import GatewayNotFoundError, StoreError
from gateway.connection import GatewayConnection
from gateway.discovery import GatewayDiscovery
from gateway.events import EventHub, EventType, ManagerEvent
from gateway.health import HealthMonitor, HealthResult
from gateway.models import (
    AgentEntity,
    AgentKey,
    GatewayState,
    GatewayStatus,
    utc_now_iso,
)
from gateway.protocol import (
    CHAT_EVENTS,
    SESSION_UPSERT_EVENTS,
    EventFrame,
    EventName,
    Method,
    connect_params_from_config,
)
from gateway.reconciler import SessionReconciler
from gateway.store import GatewayStore
from gateway.urls import derive_gateway_name, normalize_url
from observability.logger import get_logger

log = get_logger(__name__)


def new_gateway_id() -> str:
    return f"gw-{uuid.uuid4().hex[:10]}"


class GatewayManager:
    """Registry of gateways and their reconciled agents."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[GatewayStore] = None,
        events: Optional[EventHub] = None,
        connection_factory: Callable[..., GatewayConnection] = GatewayConnection,
        monitor_factory: Callable[..., HealthMonitor] = HealthMonitor,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or Settings()
        self.events = events or EventHub()
        self._store = store
        self._connection_factory = connection_factory
        self._monitor_factory = monitor_factory
        self._http_transport = http_transport

        self._gateways: dict[str, GatewayState] = {}
        self._agents: dict[AgentKey, AgentEntity] = {}
        self._connections: dict[str, GatewayConnection] = {}
        self._monitors: dict[str, HealthMonitor] = {}
        self._reconciler = SessionReconciler(self._agents, self.events)
        self._discovery: Optional[GatewayDiscovery] = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "GatewayManager":
        """Build a manager persisting to the configured gateways file."""
        kwargs.setdefault("store", GatewayStore(settings.gateways_file))
        return cls(settings, **kwargs)

    def subscribe(self, handler: Callable[[ManagerEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(handler)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self, discovery: Optional[bool] = None) -> None:
        """Load persisted gateways, connect to each, then start discovery."""
        if self._started:
            return
        self._started = True

        # Gateways kept across a previous shutdown() need fresh connections.
        kept = set(self._gateways)
        for gateway_id in kept:
            if gateway_id not in self._connections:
                self._start_monitoring(gateway_id)

        for record in self._load_records():
            if record.get("id") in kept:
                continue
            state = GatewayState.from_record(record)
            state.url = normalize_url(state.url)
            if state.id in self._gateways or self._find_by_url(state.url):
                log.warning("manager.duplicate_record_skipped", gateway_id=state.id, url=state.url)
                continue
            self._gateways[state.id] = state
            self._start_monitoring(state.id)
        log.info("manager.started", gateways=len(self._gateways))

        cfg = self.settings.discovery
        if cfg.enabled if discovery is None else discovery:
            self._discovery = GatewayDiscovery(
                self.add_gateway,
                port=cfg.port,
                broadcast_addresses=cfg.broadcast_addresses,
                broadcast_interval=cfg.broadcast_interval_seconds,
                scan_ports=cfg.scan_ports,
                scan_timeout=cfg.scan_timeout_seconds,
                http_path=self.settings.health.http_path,
                transport=self._http_transport,
            )
            await self._discovery.start(scan=cfg.scan_on_start)

    async def shutdown(self) -> None:
        """Stop discovery, monitors and connections. Registry content is kept."""
        if self._discovery is not None:
            await self._discovery.stop()
            self._discovery = None
        for gateway_id in list(self._monitors):
            await self._monitors.pop(gateway_id).stop()
        for gateway_id in list(self._connections):
            await self._connections.pop(gateway_id).close()
        self._started = False
        log.info("manager.stopped")

    @property
    def discovery(self) -> Optional[GatewayDiscovery]:
        return self._discovery

    # ─────────────────────────────────────────────────────────────────────────
    # Registry operations
    # ─────────────────────────────────────────────────────────────────────────

    def add_gateway(
        self,
        url: str,
        name: Optional[str] = None,
        token: Optional[str] = None,
        auto_discovered: bool = False,
    ) -> dict[str, Any]:
        """
        Register a gateway and start connecting to it.

        Nothing is rejected: a malformed url is stored and simply fails to
        connect. Re-adding an already registered url returns the existing
        record unchanged. Must be called from the running event loop.
        """
        normalized = normalize_url(url)
        existing = self._find_by_url(normalized)
        if existing is not None:
            log.info("manager.gateway_exists", gateway_id=existing.id, url=normalized)
            return existing.to_public()

        state = GatewayState(
            id=new_gateway_id(),
            url=normalized,
            name=name or derive_gateway_name(normalized),
            token=token or None,
            auto_discovered=auto_discovered,
            created_at=utc_now_iso(),
        )
        self._gateways[state.id] = state
        self._persist()
        self.events.emit(EventType.GATEWAY_ADDED, state.to_public())
        self._start_monitoring(state.id)

        log.info(
            "manager.gateway_added",
            gateway_id=state.id,
            url=normalized,
            auto_discovered=auto_discovered,
        )
        return state.to_public()

    async def remove_gateway(self, gateway_id: str) -> bool:
        """Unregister a gateway and drop everything it owns. False if unknown."""
        state = self._gateways.pop(gateway_id, None)
        if state is None:
            return False

        monitor = self._monitors.pop(gateway_id, None)
        if monitor is not None:
            await monitor.stop()
        connection = self._connections.pop(gateway_id, None)
        if connection is not None:
            await connection.close()

        removed = self._reconciler.remove_gateway(gateway_id)
        self._persist()
        self.events.emit(EventType.GATEWAY_REMOVED, {"id": gateway_id})

        log.info("manager.gateway_removed", gateway_id=gateway_id, agents_removed=removed)
        return True

    def get_gateways(self) -> list[dict[str, Any]]:
        return [state.to_public() for state in self._gateways.values()]

    def get_gateway(self, gateway_id: str) -> Optional[dict[str, Any]]:
        state = self._gateways.get(gateway_id)
        return state.to_public() if state is not None else None

    def get_agents(self, gateway_id: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            entity.to_dict()
            for key, entity in self._agents.items()
            if gateway_id is None or key.gateway_id == gateway_id
        ]

    # ─────────────────────────────────────────────────────────────────────────
    # Commands to remote gateways
    # ─────────────────────────────────────────────────────────────────────────

    async def send_request(
        self,
        gateway_id: str,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request over the gateway's connection and return its payload."""
        connection = self._connections.get(gateway_id)
        if gateway_id not in self._gateways or connection is None:
            raise GatewayNotFoundError(gateway_id)
        return await connection.request(method, params or {}, timeout)

    async def get_history(self, gateway_id: str, session_key: str, limit: int = 50) -> list[Any]:
        payload = await self.send_request(
            gateway_id,
            Method.SESSIONS_HISTORY.value,
            {"sessionKey": session_key, "limit": limit},
        )
        messages = payload.get("messages") if isinstance(payload, dict) else None
        return messages if isinstance(messages, list) else []

    async def terminate_session(self, gateway_id: str, session_key: str) -> Any:
        return await self.send_request(
            gateway_id, Method.SESSIONS_DELETE.value, {"key": session_key}
        )

    async def send_message(self, gateway_id: str, session_key: str, message: str) -> Any:
        return await self.send_request(
            gateway_id,
            Method.SESSIONS_SEND.value,
            {"sessionKey": session_key, "message": message},
        )

    async def refresh_sessions(self, gateway_id: str) -> list[str]:
        """Re-fetch `sessions.list` and reconcile. Returns the owned entity ids."""
        payload = await self.send_request(gateway_id, Method.SESSIONS_LIST.value, {})
        sessions = payload.get("sessions") if isinstance(payload, dict) else None
        self.on_sessions(gateway_id, sessions if isinstance(sessions, list) else [])
        state = self._gateways.get(gateway_id)
        return list(state.agents) if state is not None else []

    # ─────────────────────────────────────────────────────────────────────────
    # Connection callbacks
    # ─────────────────────────────────────────────────────────────────────────

    def on_status(self, gateway_id: str, status: GatewayStatus, error: Optional[str] = None) -> None:
        self._set_status(gateway_id, status, error)

    def on_handshake(self, gateway_id: str, payload: dict[str, Any]) -> None:
        state = self._gateways.get(gateway_id)
        if state is None:
            return
        server = payload.get("server")
        state.server_info = dict(server) if isinstance(server, dict) else {}
        if "protocol" in payload:
            state.server_info["protocol"] = payload["protocol"]
        self._set_status(gateway_id, GatewayStatus.ONLINE)

    def on_sessions(self, gateway_id: str, sessions: list[Any]) -> None:
        if gateway_id not in self._gateways:
            return
        self._reconciler.reconcile_full(gateway_id, sessions)
        self._sync_owned(gateway_id)

    def on_event(self, gateway_id: str, frame: EventFrame) -> None:
        if gateway_id not in self._gateways:
            return
        name = frame.event

        if name == EventName.TICK.value:
            self._set_status(gateway_id, GatewayStatus.ONLINE)
        elif name in SESSION_UPSERT_EVENTS:
            self._reconciler.apply_session_update(gateway_id, frame.data)
            self._sync_owned(gateway_id)
        elif name == EventName.SESSION_DELETED.value:
            self._reconciler.apply_session_deleted(gateway_id, frame.data)
            self._sync_owned(gateway_id)
        elif name == EventName.AGENT_UPDATE.value:
            self._reconciler.apply_agent_update(gateway_id, frame.data)
            self._sync_owned(gateway_id)
        elif name == EventName.AGENT_REMOVED.value:
            self._reconciler.apply_agent_removed(gateway_id, frame.data)
            self._sync_owned(gateway_id)
        elif name in CHAT_EVENTS:
            self.events.emit(
                EventType.CHAT_EVENT,
                {"gatewayId": gateway_id, "event": name, "payload": frame.payload},
            )
        elif name == EventName.SHUTDOWN.value:
            reason = frame.data.get("reason")
            self._set_status(
                gateway_id,
                GatewayStatus.DISCONNECTED,
                str(reason) if reason else "gateway shutdown",
            )
        else:
            log.debug("manager.event_ignored", gateway_id=gateway_id, gateway_event=name)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _on_health(self, gateway_id: str, result: HealthResult) -> None:
        state = self._gateways.get(gateway_id)
        if state is None:
            return
        if result.ok:
            state.health_checks.success += 1
            self._set_status(gateway_id, GatewayStatus.ONLINE)
        else:
            state.health_checks.failure += 1
            self._set_status(gateway_id, GatewayStatus.OFFLINE, result.error)

    def _set_status(
        self,
        gateway_id: str,
        status: GatewayStatus,
        error: Optional[str] = None,
    ) -> None:
        state = self._gateways.get(gateway_id)
        if state is None:
            return
        previous = state.status
        state.status = status
        if status is GatewayStatus.ONLINE:
            state.last_seen = utc_now_iso()
        state.last_error = error
        if previous is not status:
            log.info(
                "manager.status_changed",
                gateway_id=gateway_id,
                previous=previous.value,
                status=status.value,
                error=error,
            )
        self.events.emit(EventType.GATEWAY_UPDATE, state.to_public())

    def _sync_owned(self, gateway_id: str) -> None:
        state = self._gateways.get(gateway_id)
        if state is not None:
            state.agents = self._reconciler.owned_by(gateway_id)

    def _start_monitoring(self, gateway_id: str) -> None:
        state = self._gateways[gateway_id]
        conn_cfg = self.settings.connection
        health_cfg = self.settings.health

        connection = self._connection_factory(
            gateway_id,
            state.url,
            listener=self,
            token=state.token,
            connect_params=connect_params_from_config(self.settings.protocol, state.token),
            reconnect_delay=conn_cfg.reconnect_delay_seconds,
            request_timeout=conn_cfg.request_timeout_seconds,
            handshake_timeout=conn_cfg.handshake_timeout_seconds,
            open_timeout=conn_cfg.open_timeout_seconds,
            max_message_bytes=conn_cfg.max_message_bytes,
        )
        monitor = self._monitor_factory(
            gateway_id,
            state.url,
            connection,
            self._on_health,
            token=state.token,
            interval=health_cfg.interval_seconds,
            ping_timeout=health_cfg.ping_timeout_seconds,
            http_timeout=health_cfg.http_timeout_seconds,
            http_path=health_cfg.http_path,
            transport=self._http_transport,
        )
        self._connections[gateway_id] = connection
        self._monitors[gateway_id] = monitor
        connection.start()
        monitor.start()

    def _find_by_url(self, url: str) -> Optional[GatewayState]:
        for state in self._gateways.values():
            if state.url == url:
                return state
        return None

    def _load_records(self) -> list[dict[str, Any]]:
        if self._store is None:
            return []
        try:
            return self._store.load()
        except StoreError as e:
            log.error("manager.load_failed", error=str(e))
            return []

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save([state.to_record() for state in self._gateways.values()])
        except StoreError as e:
            log.error("manager.persist_failed", error=str(e))
