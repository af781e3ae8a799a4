"""
gateway/protocol.py — Gateway WebSocket Frame Protocol

Typed frame schema for manager↔gateway communication.
Every frame is JSON with a `type` field:

    {"type": "req",   "id", "method", "params"}          manager → gateway
    {"type": "res",   "id", "ok", "payload" | "error"}   gateway → manager
    {"type": "event", "event", "payload"}                gateway → manager

The handshake is an ordinary `connect` request. Legacy `hello-ok` frames are
parsed for backward compatibility but never produced here.

parse_frame() never raises: undecodable or unrecognised input becomes an
IgnoredFrame carrying the reason, so the reader loop can log and move on.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from exceptions import MalformedFrameError


PROTOCOL_VERSION = 3


# ─────────────────────────────────────────────────────────────────────────────
# Names
# ─────────────────────────────────────────────────────────────────────────────

class FrameType(str, Enum):
    REQUEST  = "req"
    RESPONSE = "res"
    EVENT    = "event"
    HELLO_OK = "hello-ok"


class Method(str, Enum):
    """Outbound request methods."""
    CONNECT          = "connect"
    SESSIONS_LIST    = "sessions.list"
    SESSIONS_HISTORY = "sessions.history"
    SESSIONS_DELETE  = "sessions.delete"
    SESSIONS_SEND    = "sessions.send"
    PING             = "ping"


class EventName(str, Enum):
    """Inbound events the manager acts on."""
    TICK            = "tick"
    SESSION_UPDATE  = "session:update"
    SESSION_CREATED = "session:created"
    SESSION_DELETED = "session:deleted"
    AGENT_UPDATE    = "agent:update"
    AGENT_REMOVED   = "agent:removed"
    CHAT            = "chat"
    CHAT_CHUNK      = "chat:chunk"
    CHAT_DONE       = "chat:done"
    SHUTDOWN        = "shutdown"


CHAT_EVENTS = frozenset({EventName.CHAT.value, EventName.CHAT_CHUNK.value, EventName.CHAT_DONE.value})
SESSION_UPSERT_EVENTS = frozenset({EventName.SESSION_UPDATE.value, EventName.SESSION_CREATED.value})


# ─────────────────────────────────────────────────────────────────────────────
# Frames
# ─────────────────────────────────────────────────────────────────────────────

def _new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RequestFrame:
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_request_id)

    def to_json(self) -> str:
        return json.dumps({
            "type": FrameType.REQUEST.value,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        })


@dataclass
class ResponseFrame:
    id: str
    ok: bool
    payload: Any = None
    error: Optional[dict[str, Any]] = None

    @property
    def error_message(self) -> str:
        if not self.error:
            return "request failed"
        return str(self.error.get("message") or self.error.get("code") or "request failed")

    @property
    def error_code(self) -> Optional[str]:
        if not self.error:
            return None
        code = self.error.get("code")
        return str(code) if code is not None else None


@dataclass
class EventFrame:
    event: str
    payload: Any = None
    seq: Optional[int] = None

    @property
    def data(self) -> dict[str, Any]:
        """Payload as a dict ({} for anything else)."""
        return self.payload if isinstance(self.payload, dict) else {}


@dataclass
class HelloOkFrame:
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class IgnoredFrame:
    reason: str
    raw: str = ""


Frame = Union[ResponseFrame, EventFrame, HelloOkFrame, RequestFrame, IgnoredFrame]


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────

def _normalize_error(err: Any) -> Optional[dict[str, Any]]:
    if err is None:
        return None
    if isinstance(err, dict):
        return err
    return {"message": str(err)}


def decode_frame(raw: str | bytes) -> Frame:
    """Decode one frame. Raises MalformedFrameError on bad input."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f"frame is not utf-8: {e}") from e
    try:
        d = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedFrameError(f"frame is not JSON: {e.msg}") from e
    if not isinstance(d, dict):
        raise MalformedFrameError("frame is not a JSON object")

    kind = d.get("type")
    if kind == FrameType.RESPONSE.value:
        req_id = d.get("id")
        if not isinstance(req_id, str) or not req_id:
            raise MalformedFrameError("response frame without id")
        return ResponseFrame(
            id=req_id,
            ok=bool(d.get("ok")),
            payload=d.get("payload"),
            error=_normalize_error(d.get("error")),
        )
    if kind == FrameType.EVENT.value:
        name = d.get("event")
        if not isinstance(name, str) or not name:
            raise MalformedFrameError("event frame without event name")
        seq = d.get("seq")
        return EventFrame(
            event=name,
            payload=d.get("payload"),
            seq=seq if isinstance(seq, int) else None,
        )
    if kind == FrameType.HELLO_OK.value:
        return HelloOkFrame(payload={k: v for k, v in d.items() if k != "type"})
    if kind == FrameType.REQUEST.value:
        return RequestFrame(
            method=str(d.get("method", "")),
            params=d.get("params") or {},
            id=str(d.get("id", "")),
        )
    raise MalformedFrameError(f"unknown frame type: {kind!r}")


def parse_frame(raw: str | bytes) -> Frame:
    """Decode one frame; malformed input becomes an IgnoredFrame."""
    try:
        return decode_frame(raw)
    except MalformedFrameError as e:
        text = raw if isinstance(raw, str) else repr(raw)
        return IgnoredFrame(reason=str(e), raw=text[:200])


# ─────────────────────────────────────────────────────────────────────────────
# Handshake
# ─────────────────────────────────────────────────────────────────────────────

def build_connect_params(
    *,
    client_id: str,
    display_name: str,
    version: str,
    platform: str,
    mode: str,
    caps: list[str],
    role: str,
    scopes: list[str],
    min_protocol: int = PROTOCOL_VERSION,
    max_protocol: int = PROTOCOL_VERSION,
    token: Optional[str] = None,
) -> dict[str, Any]:
    """Build the params of the `connect` handshake request."""
    params: dict[str, Any] = {
        "minProtocol": min_protocol,
        "maxProtocol": max_protocol,
        "client": {
            "id": client_id,
            "displayName": display_name,
            "version": version,
            "platform": platform,
            "mode": mode,
        },
        "caps": list(caps),
        "role": role,
        "scopes": list(scopes),
    }
    if token:
        params["auth"] = {"token": token}
    return params


def connect_params_from_config(protocol_cfg, token: Optional[str] = None) -> dict[str, Any]:
    """build_connect_params() fed from a config.settings.ProtocolConfig."""
    return build_connect_params(
        client_id=protocol_cfg.client_id,
        display_name=protocol_cfg.client_display_name,
        version=protocol_cfg.client_version,
        platform=protocol_cfg.client_platform,
        mode=protocol_cfg.client_mode,
        caps=protocol_cfg.caps,
        role=protocol_cfg.role,
        scopes=protocol_cfg.scopes,
        min_protocol=protocol_cfg.min_protocol,
        max_protocol=protocol_cfg.max_protocol,
        token=token,
    )
