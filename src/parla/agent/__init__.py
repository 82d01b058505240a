"""
Agent package — realtime conversational model client.

Key components:
- AgentSession: connection lifecycle, ordered events, audio/instruction controls
- RealtimeProtocol: JSON wire codec
- RealtimeTransport / WebSocketTransport: the byte pipe
"""

from parla.agent.events import (
    AgentEvent,
    AgentState,
    AudioEvent,
    ErrorEvent,
    EventKind,
    EventRegistry,
    ReadyEvent,
    Role,
    StateEvent,
    TextEvent,
)
from parla.agent.protocol import RealtimeProtocol
from parla.agent.session import AgentOptions, AgentSession
from parla.agent.transport import RealtimeTransport, WebSocketTransport

__all__ = [
    # Events
    "AgentEvent",
    "AgentState",
    "AudioEvent",
    "ErrorEvent",
    "EventKind",
    "EventRegistry",
    "ReadyEvent",
    "Role",
    "StateEvent",
    "TextEvent",
    # Session
    "AgentOptions",
    "AgentSession",
    "RealtimeProtocol",
    "RealtimeTransport",
    "WebSocketTransport",
]
