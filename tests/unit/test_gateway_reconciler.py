"""
tests/unit/test_gateway_reconciler.py — Session Reconciler Tests

Covers:
  - session key classification priority chain
  - agent id resolution and display names / avatars
  - full `sessions.list` reconciliation: prune, diffed upsert
  - incremental session/agent events: keyed by agent, always announced
"""

import pytest

from gateway.events import EventHub, EventType
from gateway.models import AgentKey, AgentStatus, SessionType
from gateway.reconciler import (
    ACTIVE_WINDOW_MS,
    DEFAULT_AVATAR,
    SessionReconciler,
    avatar_for,
    channel_of,
    classify_session,
    display_name,
    normalize_agent,
    normalize_session,
    parse_agent_id,
    resolve_agent_id,
    status_of,
    token_usage_of,
)

NOW = 1_700_000_000_000


# ── Helpers ───────────────────────────────────────────────────────────────────

@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def events(hub):
    seen = []
    hub.subscribe(seen.append)
    return seen


@pytest.fixture
def agents():
    return {}


@pytest.fixture
def reconciler(agents, hub):
    return SessionReconciler(agents, hub, clock=lambda: NOW)


def _of_type(events, event_type):
    return [e for e in events if e.type is event_type]


# ── Field derivation ──────────────────────────────────────────────────────────

class TestClassifySession:
    @pytest.mark.parametrize("key, expected", [
        ("agent:main:main", SessionType.MAIN),
        ("agent:coder:main", SessionType.MAIN),
        ("agent:main:cron:daily-report", SessionType.CRON),
        ("agent:main:subagent:abc", SessionType.SUBAGENT),
        ("agent:main:telegram:group:-123", SessionType.GROUP),
        ("agent:main:telegram:group:-123:topic:1", SessionType.GROUP),
        ("agent:main:telegram:dm:42", SessionType.CHAT),
        ("agent:main:main:extra", SessionType.CHAT),
    ])
    def test_classification(self, key, expected):
        assert classify_session(key) is expected

    def test_cron_beats_group(self):
        assert classify_session("agent:x:cron:group:1") is SessionType.CRON


class TestAgentId:
    def test_parse_from_key(self):
        assert parse_agent_id("agent:research:main") == "research"

    @pytest.mark.parametrize("key", ["main", "session:abc", "agent::main", ""])
    def test_unparseable(self, key):
        assert parse_agent_id(key) is None

    def test_explicit_field_wins(self):
        assert resolve_agent_id({"agentId": "writer"}, "agent:main:main") == "writer"


class TestDisplayName:
    def test_explicit_label_wins(self):
        assert display_name({"label": "Ops"}, "agent:a:main", SessionType.MAIN) == "Ops"

    def test_display_name_field(self):
        raw = {"displayName": "Family"}
        assert display_name(raw, "agent:a:whatsapp:group:1", SessionType.GROUP) == "Family"

    @pytest.mark.parametrize("key, expected", [
        ("agent:a:cron:nightly", "Scheduled Task"),
        ("agent:a:subagent:1", "Sub-agent"),
        ("agent:a:discord:group:9", "Group Chat"),
        ("agent:a:main", "Main Chat"),
        ("agent:a:telegram:dm:42", "Telegram DM"),
        ("agent:a:slack:C123", "Slack Chat"),
        ("agent:a:matrix:room", "Matrix Chat"),
    ])
    def test_type_defaults(self, key, expected):
        assert display_name({}, key, classify_session(key)) == expected

    def test_telegram_topic_chat(self):
        assert display_name({}, "agent:a:telegram:forum:topic:7", SessionType.CHAT) == "Telegram Topic 7"


class TestAvatar:
    def test_type_overrides_agent(self):
        assert avatar_for(SessionType.CRON, "main") == "⏰"
        assert avatar_for(SessionType.SUBAGENT, "main") == "🧬"
        assert avatar_for(SessionType.GROUP, "coder") == "👥"

    def test_agent_table(self):
        assert avatar_for(SessionType.MAIN, "main") == "🦞"
        assert avatar_for(SessionType.CHAT, "coder") == "💻"

    def test_default(self):
        assert avatar_for(SessionType.CHAT, "unknown-agent") == DEFAULT_AVATAR
        assert avatar_for(SessionType.MAIN, None) == DEFAULT_AVATAR


class TestDerivedFields:
    def test_channel_from_key(self):
        assert channel_of({}, "agent:a:telegram:dm:1") == "telegram"
        assert channel_of({}, "agent:a:main") is None
        assert channel_of({}, "agent:a:cron:x") is None

    def test_explicit_channel(self):
        assert channel_of({"lastChannel": "signal"}, "agent:a:main") == "signal"

    def test_status_recent_is_active(self):
        assert status_of({"updatedAt": NOW - 1000}, NOW) is AgentStatus.ACTIVE

    def test_status_stale_is_idle(self):
        assert status_of({"updatedAt": NOW - ACTIVE_WINDOW_MS - 1}, NOW) is AgentStatus.IDLE

    def test_status_explicit(self):
        assert status_of({"status": "active"}, NOW) is AgentStatus.ACTIVE

    def test_token_usage(self):
        assert token_usage_of({"totalTokens": 50, "inputTokens": 1}) == 50
        assert token_usage_of({"inputTokens": 30, "outputTokens": 12}) == 42
        assert token_usage_of({}) == 0

    def test_non_finite_numbers_ignored(self):
        entity = normalize_session("gw-1", {
            "key": "agent:a:main",
            "messageCount": float("inf"),
            "totalTokens": float("nan"),
            "updatedAt": float("-inf"),
        }, NOW)
        assert entity.message_count == 0
        assert entity.token_usage == 0
        assert entity.last_active is None


class TestNormalizeSession:
    def test_full_entity(self):
        entity = normalize_session("gw-1", {
            "key": "agent:coder:telegram:dm:42",
            "updatedAt": NOW,
            "messageCount": 3,
            "totalTokens": 900,
            "model": "gpt-4o",
        }, NOW)
        assert entity.key == AgentKey("gw-1", "agent:coder:telegram:dm:42")
        assert entity.agent_id == "coder"
        assert entity.session_type is SessionType.CHAT
        assert entity.label == "Telegram DM"
        assert entity.channel == "telegram"
        assert entity.status is AgentStatus.ACTIVE
        assert entity.message_count == 3
        assert entity.token_usage == 900
        assert entity.model == "gpt-4o"
        assert entity.avatar == "💻"
        assert len(entity.sessions) == 1

    def test_session_key_alias(self):
        assert normalize_session("gw-1", {"sessionKey": "agent:a:main"}, NOW) is not None

    def test_unattributable_session_dropped(self):
        assert normalize_session("gw-1", {"key": "orphan-session"}, NOW) is None

    def test_keyless_session_dropped(self):
        assert normalize_session("gw-1", {"agentId": "main"}, NOW) is None

    def test_explicit_agent_id_rescues_unparseable_key(self):
        entity = normalize_session("gw-1", {"key": "legacy-1", "agentId": "ops"}, NOW)
        assert entity.agent_id == "ops"


class TestNormalizeAgent:
    def test_aggregates_nested_sessions(self):
        entity = normalize_agent("gw-1", {
            "id": "main",
            "name": "Claw",
            "sessions": [
                {"key": "agent:main:main", "messageCount": 2, "updatedAt": NOW - 10},
                {"key": "agent:main:telegram:dm:1", "messageCount": 3, "updatedAt": NOW},
                "garbage",
            ],
        }, NOW)
        assert entity.key == AgentKey("gw-1", "main")
        assert entity.label == "Claw"
        assert entity.message_count == 5
        assert entity.last_active == NOW
        assert entity.status is AgentStatus.ACTIVE
        assert len(entity.sessions) == 2

    def test_without_id(self):
        assert normalize_agent("gw-1", {"name": "nobody"}, NOW) is None

    def test_non_list_sessions_treated_as_empty(self):
        entity = normalize_agent("gw-1", {"id": "main", "sessions": 7}, NOW)
        assert entity.key == AgentKey("gw-1", "main")
        assert entity.sessions == []


# ── Full reconciliation ───────────────────────────────────────────────────────

SNAPSHOT = [
    {"key": "agent:main:main", "updatedAt": NOW, "messageCount": 4},
    {"key": "agent:main:telegram:group:-123:topic:1", "messageCount": 1},
    {"key": "agent:coder:main", "messageCount": 0},
]


class TestReconcileFull:
    def test_initial_snapshot_stores_everything(self, reconciler, agents, events):
        ids = reconciler.reconcile_full("gw-1", SNAPSHOT)
        assert ids == [
            "gw-1:agent:main:main",
            "gw-1:agent:main:telegram:group:-123:topic:1",
            "gw-1:agent:coder:main",
        ]
        assert len(agents) == 3
        assert len(_of_type(events, EventType.AGENT_UPDATE)) == 3
        group = agents[AgentKey("gw-1", "agent:main:telegram:group:-123:topic:1")]
        assert group.session_type is SessionType.GROUP

    def test_identical_snapshot_emits_nothing(self, reconciler, events):
        reconciler.reconcile_full("gw-1", SNAPSHOT)
        events.clear()
        reconciler.reconcile_full("gw-1", [dict(s) for s in SNAPSHOT])
        assert events == []

    def test_changed_session_emits_one_update(self, reconciler, events):
        reconciler.reconcile_full("gw-1", SNAPSHOT)
        events.clear()
        changed = [dict(s) for s in SNAPSHOT]
        changed[2]["messageCount"] = 9
        reconciler.reconcile_full("gw-1", changed)
        assert [e.type for e in events] == [EventType.AGENT_UPDATE]
        assert events[0].payload["id"] == "gw-1:agent:coder:main"

    def test_missing_session_is_removed_once(self, reconciler, agents, events):
        reconciler.reconcile_full("gw-1", SNAPSHOT)
        events.clear()
        reconciler.reconcile_full("gw-1", SNAPSHOT[:2])
        removed = _of_type(events, EventType.AGENT_REMOVED)
        assert [e.payload for e in removed] == [{"id": "gw-1:agent:coder:main"}]
        assert AgentKey("gw-1", "agent:coder:main") not in agents
        assert _of_type(events, EventType.AGENT_UPDATE) == []

    def test_other_gateways_untouched(self, reconciler, agents):
        reconciler.reconcile_full("gw-1", SNAPSHOT)
        reconciler.reconcile_full("gw-2", SNAPSHOT[:1])
        reconciler.reconcile_full("gw-2", [])
        assert len(reconciler.owned_by("gw-1")) == 3
        assert reconciler.owned_by("gw-2") == []

    def test_unattributable_and_non_dict_dropped(self, reconciler, agents):
        ids = reconciler.reconcile_full("gw-1", [{"key": "orphan"}, None, "x", SNAPSHOT[0]])
        assert ids == ["gw-1:agent:main:main"]
        assert len(agents) == 1


# ── Incremental reconciliation ────────────────────────────────────────────────

class TestIncremental:
    def test_session_update_keyed_by_agent(self, reconciler, agents):
        entity = reconciler.apply_session_update(
            "gw-1", {"key": "agent:main:telegram:dm:1", "messageCount": 2}
        )
        assert entity.key == AgentKey("gw-1", "main")
        assert AgentKey("gw-1", "main") in agents

    def test_sessions_accumulate(self, reconciler, agents):
        reconciler.apply_session_update("gw-1", {
            "key": "agent:main:telegram:dm:1", "messageCount": 2, "updatedAt": NOW - ACTIVE_WINDOW_MS * 2,
        })
        reconciler.apply_session_update("gw-1", {
            "session": {"key": "agent:main:discord:dm:2", "messageCount": 5, "updatedAt": NOW},
        })
        entity = agents[AgentKey("gw-1", "main")]
        assert [s.key for s in entity.sessions] == [
            "agent:main:telegram:dm:1", "agent:main:discord:dm:2",
        ]
        assert entity.message_count == 7
        assert entity.status is AgentStatus.ACTIVE
        assert entity.last_active == NOW

    def test_existing_session_replaced(self, reconciler, agents):
        reconciler.apply_session_update("gw-1", {"key": "agent:main:main", "messageCount": 1})
        reconciler.apply_session_update("gw-1", {"key": "agent:main:main", "messageCount": 6})
        entity = agents[AgentKey("gw-1", "main")]
        assert len(entity.sessions) == 1
        assert entity.message_count == 6

    def test_unchanged_update_still_emits(self, reconciler, events):
        payload = {"key": "agent:main:main", "messageCount": 1}
        reconciler.apply_session_update("gw-1", payload)
        events.clear()
        reconciler.apply_session_update("gw-1", payload)
        assert [e.type for e in events] == [EventType.AGENT_UPDATE]

    def test_unattributable_update_ignored(self, reconciler, agents, events):
        assert reconciler.apply_session_update("gw-1", {"key": "orphan"}) is None
        assert agents == {}
        assert events == []

    def test_session_deleted(self, reconciler, agents, events):
        reconciler.reconcile_full("gw-1", SNAPSHOT)
        events.clear()
        assert reconciler.apply_session_deleted("gw-1", {"key": "agent:coder:main"}) is True
        assert [e.payload for e in events] == [{"id": "gw-1:agent:coder:main"}]
        assert reconciler.apply_session_deleted("gw-1", {"key": "agent:coder:main"}) is False

    def test_agent_update_and_removed(self, reconciler, agents, events):
        entity = reconciler.apply_agent_update("gw-1", {"agent": {"id": "ops", "status": "active"}})
        assert entity.status is AgentStatus.ACTIVE
        assert entity.avatar == "🛠️"
        assert AgentKey("gw-1", "ops") in agents

        assert reconciler.apply_agent_removed("gw-1", {"agentId": "ops"}) is True
        assert AgentKey("gw-1", "ops") not in agents
        assert events[-1].type is EventType.AGENT_REMOVED

    def test_remove_gateway(self, reconciler, agents, events):
        reconciler.reconcile_full("gw-1", SNAPSHOT)
        reconciler.reconcile_full("gw-2", SNAPSHOT[:1])
        events.clear()
        assert reconciler.remove_gateway("gw-1") == 3
        assert all(k.gateway_id == "gw-2" for k in agents)
        assert len(_of_type(events, EventType.AGENT_REMOVED)) == 3
