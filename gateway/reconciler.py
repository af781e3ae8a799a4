"""
gateway/reconciler.py — Session Reconciler

Turns raw gateway session/agent payloads into AgentEntity objects and keeps
the shared agent map in step with each gateway:

  - reconcile_full()          full `sessions.list` snapshot: prune + diffed upsert
  - apply_session_update()    `session:update` / `session:created`, keyed by agent
  - apply_session_deleted()   `session:deleted`
  - apply_agent_update()      `agent:update`
  - apply_agent_removed()     `agent:removed`

Session keys look like `agent:{agentId}:{channel}:...`. Sessions whose agent
cannot be determined are dropped.
"""

from __future__ import annotations

import math
import re
import time
from typing import Any, Callable, Optional

from gateway.events import EventHub, EventType
from gateway.models import (
    AgentEntity,
    AgentKey,
    AgentStatus,
    SessionRecord,
    SessionType,
)
from observability.logger import get_logger

log = get_logger(__name__)

# A session with no explicit status counts as active if touched this recently
ACTIVE_WINDOW_MS = 5 * 60 * 1000

_MAIN_KEY_RE = re.compile(r"^agent:[^:]+:main$")

_TYPE_AVATARS: dict[SessionType, str] = {
    SessionType.CRON:     "⏰",
    SessionType.SUBAGENT: "🧬",
    SessionType.GROUP:    "👥",
}

_AGENT_AVATARS: dict[str, str] = {
    "main":     "🦞",
    "coder":    "💻",
    "research": "🔬",
    "writer":   "✍️",
    "ops":      "🛠️",
    "support":  "🎧",
}

DEFAULT_AVATAR = "🤖"

_CHANNEL_TITLES: dict[str, str] = {
    "telegram": "Telegram",
    "whatsapp": "WhatsApp",
    "discord":  "Discord",
    "slack":    "Slack",
    "signal":   "Signal",
    "imessage": "iMessage",
    "webchat":  "Web Chat",
}

# Key segments in the channel position that are not channels
_NON_CHANNEL_SEGMENTS = {"main", "cron", "subagent"}


# ─────────────────────────────────────────────────────────────────────────────
# Field derivation
# ─────────────────────────────────────────────────────────────────────────────

def session_key_of(raw: dict[str, Any]) -> Optional[str]:
    key = raw.get("key") or raw.get("sessionKey")
    return key if isinstance(key, str) and key else None


def parse_agent_id(session_key: str) -> Optional[str]:
    """`agent:{agentId}:...` → agentId, else None."""
    parts = session_key.split(":")
    if len(parts) >= 2 and parts[0] == "agent" and parts[1]:
        return parts[1]
    return None


def resolve_agent_id(raw: dict[str, Any], session_key: str) -> Optional[str]:
    explicit = raw.get("agentId")
    if isinstance(explicit, str) and explicit:
        return explicit
    return parse_agent_id(session_key)


def classify_session(session_key: str) -> SessionType:
    """First match wins: cron, subagent, group/topic, exact main, else chat."""
    if ":cron:" in session_key:
        return SessionType.CRON
    if ":subagent:" in session_key:
        return SessionType.SUBAGENT
    if ":group:" in session_key or ":topic:" in session_key:
        return SessionType.GROUP
    if _MAIN_KEY_RE.match(session_key):
        return SessionType.MAIN
    return SessionType.CHAT


def _channel_title(channel: str) -> str:
    return _CHANNEL_TITLES.get(channel.lower(), channel.capitalize())


def _chat_name(session_key: str) -> str:
    segments = session_key.split(":")[2:]
    if not segments or not segments[0]:
        return "Chat"
    title = _channel_title(segments[0])
    if "topic" in segments:
        idx = segments.index("topic")
        if idx + 1 < len(segments):
            return f"{title} Topic {segments[idx + 1]}"
    if "dm" in segments or "direct" in segments:
        return f"{title} DM"
    return f"{title} Chat"


def display_name(raw: dict[str, Any], session_key: str, session_type: SessionType) -> str:
    explicit = raw.get("label") or raw.get("displayName")
    if explicit:
        return str(explicit)
    if session_type is SessionType.CRON:
        return "Scheduled Task"
    if session_type is SessionType.SUBAGENT:
        return "Sub-agent"
    if session_type is SessionType.GROUP:
        return "Group Chat"
    if session_type is SessionType.MAIN:
        return "Main Chat"
    return _chat_name(session_key)


def avatar_for(session_type: SessionType, agent_id: Optional[str]) -> str:
    if session_type in _TYPE_AVATARS:
        return _TYPE_AVATARS[session_type]
    if agent_id and agent_id in _AGENT_AVATARS:
        return _AGENT_AVATARS[agent_id]
    return DEFAULT_AVATAR


def channel_of(raw: dict[str, Any], session_key: str) -> Optional[str]:
    explicit = raw.get("channel") or raw.get("lastChannel")
    if isinstance(explicit, str) and explicit:
        return explicit
    parts = session_key.split(":")
    if len(parts) > 3 and parts[2] and parts[2] not in _NON_CHANNEL_SEGMENTS:
        return parts[2]
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def last_active_of(raw: dict[str, Any]) -> Optional[int]:
    stamp = _as_int(raw.get("updatedAt"))
    if stamp is None:
        stamp = _as_int(raw.get("lastActive"))
    return stamp


def status_of(raw: dict[str, Any], now_ms: int) -> AgentStatus:
    explicit = raw.get("status")
    if explicit in (AgentStatus.ACTIVE.value, AgentStatus.IDLE.value):
        return AgentStatus(explicit)
    stamp = last_active_of(raw)
    if stamp is not None and now_ms - stamp <= ACTIVE_WINDOW_MS:
        return AgentStatus.ACTIVE
    return AgentStatus.IDLE


def message_count_of(raw: dict[str, Any]) -> int:
    count = _as_int(raw.get("messageCount"))
    if count is not None:
        return count
    messages = raw.get("messages")
    return len(messages) if isinstance(messages, list) else 0


def token_usage_of(raw: dict[str, Any]) -> int:
    total = _as_int(raw.get("totalTokens"))
    if total is not None:
        return total
    return (_as_int(raw.get("inputTokens")) or 0) + (_as_int(raw.get("outputTokens")) or 0)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ─────────────────────────────────────────────────────────────────────────────
# Normalisation
# ─────────────────────────────────────────────────────────────────────────────

def normalize_session(
    gateway_id: str,
    raw: dict[str, Any],
    now_ms: Optional[int] = None,
) -> Optional[AgentEntity]:
    """Raw session payload → AgentEntity keyed by session key, or None."""
    session_key = session_key_of(raw)
    if session_key is None:
        return None
    agent_id = resolve_agent_id(raw, session_key)
    if agent_id is None:
        return None

    now_ms = _now_ms() if now_ms is None else now_ms
    session_type = classify_session(session_key)
    record = SessionRecord(
        key=session_key,
        label=display_name(raw, session_key, session_type),
        channel=channel_of(raw, session_key),
        status=status_of(raw, now_ms),
        last_active=last_active_of(raw),
        message_count=message_count_of(raw),
        token_usage=token_usage_of(raw),
    )
    model = raw.get("model")
    return AgentEntity(
        key=AgentKey(gateway_id, session_key),
        agent_id=agent_id,
        session_key=session_key,
        session_type=session_type,
        label=record.label,
        channel=record.channel,
        status=record.status,
        last_active=record.last_active,
        message_count=record.message_count,
        token_usage=record.token_usage,
        model=model if isinstance(model, str) else None,
        avatar=avatar_for(session_type, agent_id),
        sessions=[record],
    )


def normalize_agent(
    gateway_id: str,
    data: dict[str, Any],
    now_ms: Optional[int] = None,
) -> Optional[AgentEntity]:
    """Raw `agent:update` payload → agent-level AgentEntity, or None."""
    agent_id = data.get("id") or data.get("agentId")
    if not isinstance(agent_id, str) or not agent_id:
        return None

    now_ms = _now_ms() if now_ms is None else now_ms
    sessions: list[SessionRecord] = []
    raw_sessions = data.get("sessions")
    if not isinstance(raw_sessions, list):
        raw_sessions = []
    for raw in raw_sessions:
        if not isinstance(raw, dict):
            continue
        key = session_key_of(raw)
        if key is None:
            continue
        session_type = classify_session(key)
        sessions.append(SessionRecord(
            key=key,
            label=display_name(raw, key, session_type),
            channel=channel_of(raw, key),
            status=status_of(raw, now_ms),
            last_active=last_active_of(raw),
            message_count=message_count_of(raw),
            token_usage=token_usage_of(raw),
        ))

    status = data.get("status")
    model = data.get("model")
    entity = AgentEntity(
        key=AgentKey(gateway_id, agent_id),
        agent_id=agent_id,
        session_key=data.get("currentSession") or data.get("session"),
        session_type=SessionType.MAIN,
        label=str(data.get("name") or data.get("label") or agent_id or "Unknown Agent"),
        channel=data.get("channel"),
        status=AgentStatus(status) if status in ("active", "idle") else AgentStatus.IDLE,
        last_active=last_active_of(data),
        message_count=message_count_of(data),
        token_usage=token_usage_of(data),
        model=model if isinstance(model, str) else None,
        avatar=avatar_for(SessionType.MAIN, agent_id),
        sessions=sessions,
    )
    entity.recompute_aggregates()
    return entity


# ─────────────────────────────────────────────────────────────────────────────
# Reconciler
# ─────────────────────────────────────────────────────────────────────────────

class SessionReconciler:
    """
    Applies inbound session data to the shared agent map.

    The map is owned by the manager; the reconciler only mutates it and emits
    `agent:update` / `agent:removed` through the event hub.
    """

    def __init__(
        self,
        agents: dict[AgentKey, AgentEntity],
        events: EventHub,
        clock: Callable[[], int] = _now_ms,
    ):
        self._agents = agents
        self._events = events
        self._clock = clock

    def owned_by(self, gateway_id: str) -> list[str]:
        return [str(k) for k in self._agents if k.gateway_id == gateway_id]

    def _remove(self, key: AgentKey) -> bool:
        if self._agents.pop(key, None) is None:
            return False
        self._events.emit(EventType.AGENT_REMOVED, {"id": str(key)})
        return True

    def _store(self, entity: AgentEntity) -> None:
        self._agents[entity.key] = entity
        self._events.emit(EventType.AGENT_UPDATE, entity.to_dict())

    # ── Full snapshot ─────────────────────────────────────────────────────────

    def reconcile_full(self, gateway_id: str, sessions: list[Any]) -> list[str]:
        """
        Replace this gateway's entities with the `sessions.list` snapshot.

        Entities missing from the snapshot are removed; the rest are stored
        and announced only when they differ from what is already held.
        """
        now_ms = self._clock()
        seen: dict[AgentKey, AgentEntity] = {}
        dropped = 0
        for raw in sessions:
            if not isinstance(raw, dict):
                dropped += 1
                continue
            entity = normalize_session(gateway_id, raw, now_ms)
            if entity is None:
                dropped += 1
                continue
            seen[entity.key] = entity

        stale = [k for k in self._agents if k.gateway_id == gateway_id and k not in seen]
        for key in stale:
            self._remove(key)

        changed = 0
        for key, entity in seen.items():
            if self._agents.get(key) != entity:
                self._store(entity)
                changed += 1

        log.debug(
            "reconciler.full",
            gateway_id=gateway_id,
            sessions=len(seen),
            changed=changed,
            removed=len(stale),
            dropped=dropped,
        )
        return [str(k) for k in seen]

    # ── Incremental ───────────────────────────────────────────────────────────

    def apply_session_update(self, gateway_id: str, payload: dict[str, Any]) -> Optional[AgentEntity]:
        """Fold one session into its agent's entity. Always announces."""
        raw = payload.get("session") if isinstance(payload.get("session"), dict) else payload
        normalized = normalize_session(gateway_id, raw, self._clock())
        if normalized is None:
            log.debug("reconciler.session_unattributed", gateway_id=gateway_id)
            return None

        key = AgentKey(gateway_id, normalized.agent_id)
        record = normalized.sessions[0]
        entity = self._agents.get(key)
        if entity is None:
            normalized.key = key
            entity = normalized
        else:
            for i, existing in enumerate(entity.sessions):
                if existing.key == record.key:
                    entity.sessions[i] = record
                    break
            else:
                entity.sessions.append(record)
            if normalized.model:
                entity.model = normalized.model
            entity.recompute_aggregates()

        self._store(entity)
        return entity

    def apply_session_deleted(self, gateway_id: str, payload: dict[str, Any]) -> bool:
        session_key = session_key_of(payload)
        if session_key is None:
            return False
        return self._remove(AgentKey(gateway_id, session_key))

    def apply_agent_update(self, gateway_id: str, payload: dict[str, Any]) -> Optional[AgentEntity]:
        data = payload.get("agent") or payload.get("data") or payload
        if not isinstance(data, dict):
            return None
        entity = normalize_agent(gateway_id, data, self._clock())
        if entity is None:
            log.debug("reconciler.agent_unattributed", gateway_id=gateway_id)
            return None
        self._store(entity)
        return entity

    def apply_agent_removed(self, gateway_id: str, payload: dict[str, Any]) -> bool:
        agent_id = payload.get("agentId") or payload.get("id")
        if not isinstance(agent_id, str) or not agent_id:
            return False
        return self._remove(AgentKey(gateway_id, agent_id))

    def remove_gateway(self, gateway_id: str) -> int:
        owned = [k for k in self._agents if k.gateway_id == gateway_id]
        for key in owned:
            self._remove(key)
        return len(owned)
