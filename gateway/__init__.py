"""
gateway/ — Remote Gateway Aggregation

Connects to any number of remote agent gateways over WebSocket, keeps each
one healthy, and reconciles their session lists into one agent registry.

The edge server talks only to GatewayManager: it calls the registry
operations and subscribes to ManagerEvents.
"""

from gateway.events import EventHub, EventType, ManagerEvent
from gateway.manager import GatewayManager
from gateway.models import (
    AgentEntity,
    AgentKey,
    AgentStatus,
    GatewayState,
    GatewayStatus,
    SessionType,
)

__all__ = [
    "AgentEntity",
    "AgentKey",
    "AgentStatus",
    "EventHub",
    "EventType",
    "GatewayManager",
    "GatewayState",
    "GatewayStatus",
    "ManagerEvent",
    "SessionType",
]
