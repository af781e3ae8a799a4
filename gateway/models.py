"""
gateway/models.py — Normalised Gateway + Agent Model

GatewayState is the registry's record for one remote gateway: persisted
identity fields plus runtime status that is reset on every start.
AgentEntity is one reconciled agent/session, identified by an AgentKey
(gateway id + session key or agent id) rather than a joined string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class GatewayStatus(str, Enum):
    CONNECTING   = "connecting"
    ONLINE       = "online"
    ERROR        = "error"
    OFFLINE      = "offline"
    DISCONNECTED = "disconnected"


class SessionType(str, Enum):
    MAIN     = "main"
    CRON     = "cron"
    SUBAGENT = "subagent"
    GROUP    = "group"
    CHAT     = "chat"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE   = "idle"


# ─────────────────────────────────────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class HealthCounters:
    success: int = 0
    failure: int = 0


@dataclass
class GatewayState:
    """Config + runtime state for one registered gateway."""
    id: str
    url: str
    name: str
    token: Optional[str] = None
    auto_discovered: bool = False
    created_at: str = field(default_factory=utc_now_iso)

    # Runtime, never persisted
    status: GatewayStatus = GatewayStatus.CONNECTING
    last_seen: Optional[str] = None
    last_error: Optional[str] = None
    agents: list[str] = field(default_factory=list)
    health_checks: HealthCounters = field(default_factory=HealthCounters)
    server_info: Optional[dict[str, Any]] = None

    @property
    def has_token(self) -> bool:
        return self.token is not None

    def to_public(self) -> dict[str, Any]:
        """Sanitized snapshot for external consumers. Never includes the token."""
        return {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "hasToken": self.has_token,
            "autoDiscovered": self.auto_discovered,
            "createdAt": self.created_at,
            "status": self.status.value,
            "lastSeen": self.last_seen,
            "lastError": self.last_error,
            "agents": list(self.agents),
            "agentCount": len(self.agents),
            "healthChecks": {
                "success": self.health_checks.success,
                "failure": self.health_checks.failure,
            },
            "serverInfo": self.server_info,
        }

    def to_record(self) -> dict[str, Any]:
        """The persisted configuration record."""
        return {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "token": self.token,
            "autoDiscovered": self.auto_discovered,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "GatewayState":
        """Rebuild from a persisted record; runtime fields start from defaults."""
        return cls(
            id=record["id"],
            url=record["url"],
            name=record.get("name") or record["url"],
            token=record.get("token"),
            auto_discovered=bool(record.get("autoDiscovered", False)),
            created_at=record.get("createdAt") or utc_now_iso(),
            status=GatewayStatus.DISCONNECTED,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Agents
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AgentKey:
    """Composite identity of an agent entity: owning gateway + local key."""
    gateway_id: str
    key: str

    def __str__(self) -> str:
        return f"{self.gateway_id}:{self.key}"


@dataclass
class SessionRecord:
    key: str
    label: str
    channel: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE
    last_active: Optional[int] = None
    message_count: int = 0
    token_usage: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "channel": self.channel,
            "status": self.status.value,
            "lastActive": self.last_active,
            "messageCount": self.message_count,
        }


@dataclass
class AgentEntity:
    key: AgentKey
    agent_id: str
    session_key: Optional[str]
    session_type: SessionType
    label: str
    channel: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE
    last_active: Optional[int] = None
    message_count: int = 0
    token_usage: int = 0
    model: Optional[str] = None
    avatar: str = ""
    sessions: list[SessionRecord] = field(default_factory=list)

    @property
    def gateway_id(self) -> str:
        return self.key.gateway_id

    def recompute_aggregates(self) -> None:
        """Fold the nested session records into the entity-level fields."""
        if not self.sessions:
            return
        self.message_count = sum(s.message_count for s in self.sessions)
        self.token_usage = sum(s.token_usage for s in self.sessions)
        self.status = (
            AgentStatus.ACTIVE
            if any(s.status == AgentStatus.ACTIVE for s in self.sessions)
            else AgentStatus.IDLE
        )
        stamps = [s.last_active for s in self.sessions if s.last_active is not None]
        self.last_active = max(stamps) if stamps else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.key),
            "gatewayId": self.key.gateway_id,
            "agentId": self.agent_id,
            "sessionKey": self.session_key,
            "sessionType": self.session_type.value,
            "label": self.label,
            "channel": self.channel,
            "status": self.status.value,
            "lastActive": self.last_active,
            "messageCount": self.message_count,
            "tokenUsage": self.token_usage,
            "model": self.model,
            "avatar": self.avatar,
            "sessions": [s.to_dict() for s in self.sessions],
        }
