"""Error kinds raised or surfaced by the agent, storage and orchestrator."""

from __future__ import annotations

from enum import Enum


class ParlaError(Exception):
    """Base error. Every subclass carries a machine-readable ``reason``."""

    def __init__(self, reason: Enum, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or reason.value)


class ConnectionReason(str, Enum):
    TIMEOUT = "timeout"
    REFUSED = "refused"
    PROTOCOL = "protocol"
    CANCELLED = "cancelled"
    INVALID_STATE = "invalid_state"


class TransportReason(str, Enum):
    DROPPED = "dropped"
    MALFORMED = "malformed"


class StorageReason(str, Enum):
    UNAVAILABLE = "unavailable"
    CONFLICT = "conflict"


class OrchestratorReason(str, Enum):
    BLOCKED = "blocked"
    INVALID_TRANSITION = "invalid_transition"


class AgentConnectionError(ParlaError):
    """Connecting to the remote model failed."""

    def __init__(self, reason: ConnectionReason, message: str = "") -> None:
        super().__init__(reason, message)


class TransportError(ParlaError):
    """The live connection broke or sent something unusable."""

    def __init__(self, reason: TransportReason, message: str = "") -> None:
        super().__init__(reason, message)


class AgentProtocolError(ParlaError):
    """The server reported an error frame on a live session."""

    def __init__(self, message: str = "", code: str | None = None) -> None:
        self.code = code
        super().__init__(ConnectionReason.PROTOCOL, message)


class StorageError(ParlaError):
    def __init__(self, reason: StorageReason, message: str = "") -> None:
        super().__init__(reason, message)


class OrchestratorError(ParlaError):
    def __init__(self, reason: OrchestratorReason, message: str = "") -> None:
        super().__init__(reason, message)
