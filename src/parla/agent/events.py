"""
Agent events — typed event values and the multi-subscriber registry.

Every inbound happening on an AgentSession becomes one of these frozen
dataclasses and is delivered through an EventRegistry:

- AudioEvent  — a chunk of model speech (PCM16 mono)
- TextEvent   — a text delta (assistant) or a final transcript (user)
- ReadyEvent  — connect handshake confirmed
- ErrorEvent  — a failure, always delivered before the state change it causes
- StateEvent  — an AgentState transition

Subscribers are keyed by EventKind. Several callbacks may listen on the same
kind, and off() removes one by identity.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from parla.core.errors import ParlaError

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SPEAKING = "speaking"
    LISTENING = "listening"
    PROCESSING = "processing"


class EventKind(str, Enum):
    AUDIO = "audio"
    TEXT = "text"
    READY = "ready"
    ERROR = "error"
    STATE = "state"


class Role(str, Enum):
    ASSISTANT = "assistant"
    USER = "user"


@dataclass(frozen=True)
class AudioEvent:
    pcm: bytes
    sample_rate: int

    kind = EventKind.AUDIO


@dataclass(frozen=True)
class TextEvent:
    """A text delta.

    Assistant deltas stream in generation order. ``final=True`` marks the end
    of a turn: for the assistant it carries an empty delta, for the user it
    carries the whole transcript of what was said.
    """

    delta: str
    role: Role = Role.ASSISTANT
    final: bool = False

    kind = EventKind.TEXT


@dataclass(frozen=True)
class ReadyEvent:
    session_id: str | None = None

    kind = EventKind.READY


@dataclass(frozen=True)
class ErrorEvent:
    error: ParlaError
    fatal: bool = False

    kind = EventKind.ERROR


@dataclass(frozen=True)
class StateEvent:
    state: AgentState
    previous: AgentState

    kind = EventKind.STATE


AgentEvent = Union[AudioEvent, TextEvent, ReadyEvent, ErrorEvent, StateEvent]
EventCallback = Callable[[Any], Union[None, Awaitable[None]]]


class EventRegistry:
    """Publish/subscribe registry keyed by EventKind."""

    def __init__(self) -> None:
        self._subscribers: dict[EventKind, list[EventCallback]] = defaultdict(list)

    def on(self, kind: EventKind | str, callback: EventCallback) -> None:
        self._subscribers[EventKind(kind)].append(callback)

    def off(self, kind: EventKind | str, callback: EventCallback) -> None:
        """Remove a callback by identity. Safe to call twice.

        A bound method is a fresh object on every attribute access, so it is
        matched by its instance and function, each compared with ``is``:
        ``off(kind, obj.handler)`` undoes ``on(kind, obj.handler)`` but not
        a registration made on another, merely equal, object.
        """
        callbacks = self._subscribers.get(EventKind(kind), [])
        for i, existing in enumerate(callbacks):
            if _same_callback(existing, callback):
                del callbacks[i]
                return

    def subscriber_count(self, kind: EventKind | str) -> int:
        return len(self._subscribers.get(EventKind(kind), []))

    async def deliver(self, event: AgentEvent) -> None:
        """Call every subscriber for the event's kind, in registration order.

        A failing subscriber is logged and does not stop delivery to the rest.
        """
        for callback in list(self._subscribers.get(event.kind, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Subscriber %r failed on %s event: %s",
                    callback,
                    event.kind.value,
                    e,
                    exc_info=True,
                )


def _same_callback(a: EventCallback, b: EventCallback) -> bool:
    if inspect.ismethod(a) and inspect.ismethod(b):
        return a.__self__ is b.__self__ and a.__func__ is b.__func__
    return a is b
