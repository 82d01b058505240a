"""
AgentSession — one live connection to a remote conversational model.

Owns the transport, the AgentState value and a single ordered event stream.

Key design:
- One dispatch queue: every event (audio, text, state, error, ready) is
  delivered in arrival order by a single task, so subscribers never overlap
- Failure ordering: an error event is always queued before the state change
  it causes
- send_audio() never blocks: frames go into a bounded outbound buffer that
  drops the oldest audio frame when the network falls behind
- Instruction updates are held while a model turn is in flight and flushed
  at the turn boundary
- One-shot reconnect with the last-known options after an unexpected drop
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from parla.agent import protocol as wire
from parla.agent.events import (
    AgentEvent,
    AgentState,
    AudioEvent,
    ErrorEvent,
    EventCallback,
    EventKind,
    EventRegistry,
    ReadyEvent,
    Role,
    StateEvent,
    TextEvent,
)
from parla.agent.protocol import RealtimeProtocol, ServerFrame
from parla.agent.transport import RealtimeTransport
from parla.audio.channel import AudioBridge, AudioChannel, to_pcm16
from parla.core.config import AgentConfig, AudioConfig, RealtimeConfig, config
from parla.core.errors import (
    AgentConnectionError,
    AgentProtocolError,
    ConnectionReason,
    ParlaError,
    TransportError,
    TransportReason,
)
from parla.core.metrics import metrics

logger = logging.getLogger(__name__)

_NOT_LIVE = (AgentState.DISCONNECTED, AgentState.CONNECTING)


@dataclass(frozen=True)
class AgentOptions:
    """Connect-time configuration. Unknown keys are ignored by from_mapping()."""

    instructions: str
    voice: str | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.instructions, str) or not self.instructions.strip():
            raise ValueError("AgentOptions.instructions is required")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AgentOptions:
        allowed = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in allowed})


class AgentSession:
    """Client side of the realtime model protocol for one learner."""

    def __init__(
        self,
        transport: RealtimeTransport,
        *,
        audio_channel: AudioChannel | None = None,
        agent_config: AgentConfig | None = None,
        audio_config: AudioConfig | None = None,
        realtime_config: RealtimeConfig | None = None,
    ) -> None:
        self._transport = transport
        self._cfg = agent_config or config.agent
        audio_cfg = audio_config or config.audio
        realtime_cfg = realtime_config or config.realtime
        self.sample_rate = audio_cfg.sample_rate
        self._protocol = RealtimeProtocol(
            sample_rate=audio_cfg.sample_rate,
            transcription_model=realtime_cfg.transcription_model,
            auto_response=self._cfg.auto_response,
        )

        self._events = EventRegistry()
        self._state = AgentState.DISCONNECTED
        self._observed_state = AgentState.DISCONNECTED
        self._options: AgentOptions | None = None
        self.session_id: str | None = None

        # Event dispatch
        self._event_queue: asyncio.Queue[AgentEvent] | None = None
        self._dispatch_task: asyncio.Task | None = None

        # Outbound buffer: ("audio", bytes) | ("control", str)
        self._outbound: deque[tuple[str, Any]] = deque()
        self._outbound_audio = 0
        self._outbound_wakeup = asyncio.Event()

        self._connect_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._sender_task: asyncio.Task | None = None
        self._receiver_task: asyncio.Task | None = None

        self._closing = False
        self._instructions_dirty = False
        self._user_audio_pending = False
        self._response_active = False

        self._audio_sent = 0
        self._audio_dropped = 0
        self._frames_malformed = 0

        self._bridge: AudioBridge | None = None
        if audio_channel is not None:
            self.attach_audio(audio_channel)

    # ─── Subscription ────────────────────────────────────────────

    def on(self, event: EventKind | str, callback: EventCallback) -> None:
        self._events.on(event, callback)

    def off(self, event: EventKind | str, callback: EventCallback) -> None:
        self._events.off(event, callback)

    def get_state(self) -> AgentState:
        """State carried by the most recently delivered state event."""
        return self._observed_state

    @property
    def options(self) -> AgentOptions | None:
        return self._options

    def attach_audio(self, channel: AudioChannel) -> None:
        """Use a (new) audio channel. Pumping starts on the next ready."""
        self._bridge = AudioBridge(self, channel)
        if self._state not in _NOT_LIVE:
            self._bridge.start()

    def stats(self) -> dict[str, int]:
        return {
            "audio_sent": self._audio_sent,
            "audio_dropped": self._audio_dropped,
            "frames_malformed": self._frames_malformed,
            "outbound_pending": len(self._outbound),
        }

    # ─── Lifecycle ───────────────────────────────────────────────

    async def connect(self, options: AgentOptions | Mapping[str, Any]) -> None:
        """Open the session. Raises AgentConnectionError on failure."""
        opts = (
            options
            if isinstance(options, AgentOptions)
            else AgentOptions.from_mapping(options)
        )
        reconnecting = (
            self._reconnect_task is not None and not self._reconnect_task.done()
        )
        if (
            self._state != AgentState.DISCONNECTED
            or self._connect_task is not None
            or reconnecting
        ):
            raise AgentConnectionError(
                ConnectionReason.INVALID_STATE,
                f"cannot connect while {self._state.value}",
            )

        self._closing = False
        self._options = opts
        self._connect_task = asyncio.create_task(
            self._establish(opts), name="agent-connect"
        )
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if self._closing and self._connect_task.cancelled():
                raise AgentConnectionError(
                    ConnectionReason.CANCELLED, "connect cancelled by disconnect"
                ) from None
            raise
        except AgentConnectionError:
            await self._drain_events()
            raise
        finally:
            self._connect_task = None

        await self._drain_events()

    async def disconnect(self) -> None:
        """Tear everything down. Idempotent; always ends disconnected.

        An attached audio channel is closed and detached here. After a later
        connect(), call attach_audio() with a fresh channel to capture again.
        """
        self._closing = True
        current = asyncio.current_task()

        for task in (self._connect_task, self._reconnect_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, ParlaError):
                    pass
        self._reconnect_task = None

        await self._stop_io()

        if self._bridge is not None:
            await self._bridge.stop()
            self._bridge = None

        self._instructions_dirty = False
        if self._state != AgentState.DISCONNECTED:
            self._set_state(AgentState.DISCONNECTED)
            logger.info("Agent session disconnected")

        await self._drain_events()
        await self._stop_dispatcher()

    async def flush_events(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._drain_events()

    # ─── Controls ────────────────────────────────────────────────

    def send_audio(self, chunk: Any) -> None:
        """Queue one PCM frame. Never blocks; drops instead of queuing forever."""
        if self._state in _NOT_LIVE:
            self._drop_audio("not_connected")
            return

        try:
            pcm = to_pcm16(chunk)
        except ValueError as e:
            logger.warning("Dropping unusable audio frame: %s", e)
            self._drop_audio("invalid")
            return

        if self._outbound_audio >= self._cfg.outbound_audio_frames:
            self._drop_oldest_audio()

        self._outbound.append(("audio", pcm))
        self._outbound_audio += 1
        self._user_audio_pending = True
        self._outbound_wakeup.set()
        metrics.gauge_set("agent.outbound.pending", len(self._outbound))

    def update_instructions(self, delta: str, replace_all: bool = False) -> None:
        """Amend the live instructions without interrupting a model turn."""
        if self._options is None:
            logger.warning("update_instructions ignored: never connected")
            return
        if replace_all:
            text = delta.strip()
        else:
            text = f"{self._options.instructions}\n{delta.strip()}".strip()
        if not text:
            logger.warning("update_instructions ignored: empty instructions")
            return

        self._options = replace(self._options, instructions=text)

        if self._at_turn_boundary():
            self._send_control(self._protocol.instructions_update(text))
            self._instructions_dirty = False
        elif self._state == AgentState.DISCONNECTED:
            # Applied by the next handshake
            self._instructions_dirty = False
        else:
            self._instructions_dirty = True
            logger.debug("Instruction update held until turn boundary")

    def respond(self) -> None:
        """Ask the model to take a turn without committing learner audio.

        Valid while connected or listening, and while processing a learner
        turn that no model response has been requested for yet.
        """
        if not self._at_turn_boundary():
            self._ignore_call("respond")
            return
        self._request_response()

    def end_turn(self) -> None:
        """The learner finished speaking. Valid only while listening."""
        if self._state != AgentState.LISTENING:
            self._ignore_call("end_turn")
            return
        if self._user_audio_pending:
            self._send_control(self._protocol.audio_commit())
            self._user_audio_pending = False
        self._request_response()

    def _at_turn_boundary(self) -> bool:
        if self._state in (AgentState.CONNECTED, AgentState.LISTENING):
            return True
        return self._state == AgentState.PROCESSING and not self._response_active

    def _request_response(self) -> None:
        self._response_active = True
        self._send_control(self._protocol.response_create())
        self._set_state(AgentState.PROCESSING)

    # ─── Connect / reconnect ─────────────────────────────────────

    async def _establish(self, opts: AgentOptions) -> None:
        self._set_state(AgentState.CONNECTING)
        started = time.monotonic()
        try:
            session_id = await asyncio.wait_for(
                self._handshake(opts), timeout=self._cfg.connect_timeout
            )
        except asyncio.TimeoutError:
            error = AgentConnectionError(
                ConnectionReason.TIMEOUT,
                f"session not confirmed within {self._cfg.connect_timeout:.1f}s",
            )
            await self._abort_connect(error)
            raise error from None
        except AgentConnectionError as e:
            await self._abort_connect(e)
            raise
        except TransportError as e:
            error = AgentConnectionError(ConnectionReason.REFUSED, str(e))
            await self._abort_connect(error)
            raise error from e
        except (OSError, ValueError) as e:
            error = AgentConnectionError(ConnectionReason.REFUSED, str(e))
            await self._abort_connect(error)
            raise error from e
        except asyncio.CancelledError:
            await self._transport.close()
            if not self._closing:
                self._set_state(AgentState.DISCONNECTED)
            raise

        self.session_id = session_id
        self._outbound.clear()
        self._outbound_audio = 0
        self._user_audio_pending = False
        self._response_active = False
        self._sender_task = asyncio.create_task(self._send_loop(), name="agent-send")
        self._receiver_task = asyncio.create_task(
            self._receive_loop(), name="agent-receive"
        )

        self._set_state(AgentState.CONNECTED)
        self._emit(ReadyEvent(session_id=session_id))

        if self._instructions_dirty:
            self._flush_instructions()
        if self._bridge is not None:
            self._bridge.start()

        elapsed_ms = (time.monotonic() - started) * 1000
        metrics.observe("agent.connect_ms", elapsed_ms)
        logger.info("Agent session ready (session=%s, %.0fms)", session_id, elapsed_ms)

    async def _handshake(self, opts: AgentOptions) -> str | None:
        await self._transport.open(opts.model)
        await self._transport.send(
            self._protocol.session_update(opts.instructions, opts.voice, opts.model)
        )
        while True:
            raw = await self._transport.recv()
            try:
                frame = self._protocol.decode(raw)
            except TransportError as e:
                self._count_malformed(e)
                continue

            if frame.type in (wire.SESSION_CREATED, wire.SESSION_UPDATED):
                return self._protocol.session_id(frame)
            if frame.type == wire.ERROR:
                message, code = self._protocol.error_details(frame)
                raise AgentConnectionError(
                    ConnectionReason.PROTOCOL, f"{code or 'error'}: {message}"
                )
            logger.debug("Waiting for session confirmation, got %s", frame.type)

    async def _abort_connect(self, error: AgentConnectionError) -> None:
        await self._transport.close()
        metrics.inc("agent.connect.failed", labels={"reason": error.reason.value})
        logger.error("Agent connect failed (%s): %s", error.reason.value, error)
        self._emit(ErrorEvent(error=error, fatal=True))
        self._set_state(AgentState.DISCONNECTED)

    def _on_connection_lost(self, error: TransportError) -> None:
        if self._closing or self._state == AgentState.DISCONNECTED:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.warning("Agent connection lost: %s", error)
        metrics.inc("agent.connection.lost")
        self._emit(ErrorEvent(error=error, fatal=False))
        self._set_state(AgentState.DISCONNECTED)
        self._reconnect_task = asyncio.create_task(
            self._reconnect(), name="agent-reconnect"
        )

    async def _reconnect(self) -> None:
        """One-shot reconnect with the last-known options."""
        await self._stop_io()
        await asyncio.sleep(self._cfg.reconnect_delay)
        if self._closing or self._options is None:
            return

        metrics.inc("agent.reconnects")
        logger.info("Agent reconnecting")
        try:
            await self._establish(self._options)
        except AgentConnectionError as e:
            # _establish already emitted the fatal error and the terminal state
            logger.error("Agent reconnect failed; manual reconnect required: %s", e)

    async def _stop_io(self) -> None:
        current = asyncio.current_task()
        for task in (self._sender_task, self._receiver_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._sender_task = None
        self._receiver_task = None
        self._outbound.clear()
        self._outbound_audio = 0
        metrics.gauge_set("agent.outbound.pending", 0)
        self._response_active = False
        await self._transport.close()

    # ─── I/O loops ───────────────────────────────────────────────

    async def _send_loop(self) -> None:
        try:
            while True:
                while not self._outbound:
                    self._outbound_wakeup.clear()
                    await self._outbound_wakeup.wait()

                kind, payload = self._outbound.popleft()
                metrics.gauge_set("agent.outbound.pending", len(self._outbound))
                if kind == "audio":
                    self._outbound_audio -= 1
                    message = self._protocol.audio_append(payload)
                    self._audio_sent += 1
                else:
                    message = payload
                await self._transport.send(message)
        except asyncio.CancelledError:
            raise
        except TransportError as e:
            self._on_connection_lost(e)
        except Exception as e:
            logger.error("Agent send loop failed: %s", e, exc_info=True)
            self._on_connection_lost(TransportError(TransportReason.DROPPED, str(e)))

    async def _receive_loop(self) -> None:
        try:
            while True:
                raw = await self._transport.recv()
                try:
                    frame = self._protocol.decode(raw)
                    self._handle_frame(frame)
                except TransportError as e:
                    if e.reason != TransportReason.MALFORMED:
                        raise
                    self._count_malformed(e)
        except asyncio.CancelledError:
            raise
        except TransportError as e:
            self._on_connection_lost(e)
        except Exception as e:
            logger.error("Agent receive loop failed: %s", e, exc_info=True)
            self._on_connection_lost(TransportError(TransportReason.DROPPED, str(e)))

    def _handle_frame(self, frame: ServerFrame) -> None:
        kind = frame.type

        if kind == wire.RESPONSE_AUDIO_DELTA:
            pcm = self._protocol.audio_delta(frame)
            self._set_state(AgentState.SPEAKING)
            self._emit(AudioEvent(pcm=pcm, sample_rate=self.sample_rate))

        elif kind in (wire.RESPONSE_TRANSCRIPT_DELTA, wire.RESPONSE_TEXT_DELTA):
            delta = self._protocol.text_delta(frame)
            if delta:
                self._emit(TextEvent(delta=delta, role=Role.ASSISTANT))

        elif kind == wire.RESPONSE_CREATED:
            self._response_active = True
            if self._state != AgentState.SPEAKING:
                self._set_state(AgentState.PROCESSING)

        elif kind == wire.RESPONSE_DONE:
            self._response_active = False
            self._emit(TextEvent(delta="", role=Role.ASSISTANT, final=True))
            self._set_state(AgentState.LISTENING)
            if self._instructions_dirty:
                self._flush_instructions()

        elif kind == wire.SPEECH_STARTED:
            self._set_state(AgentState.LISTENING)

        elif kind == wire.SPEECH_STOPPED:
            if self._state == AgentState.LISTENING:
                self._set_state(AgentState.PROCESSING)

        elif kind == wire.USER_TRANSCRIPT_DONE:
            transcript = self._protocol.user_transcript(frame)
            self._emit(TextEvent(delta=transcript, role=Role.USER, final=True))

        elif kind == wire.ERROR:
            message, code = self._protocol.error_details(frame)
            logger.warning("Realtime server error (%s): %s", code, message)
            self._emit(ErrorEvent(error=AgentProtocolError(message, code)))

        else:
            logger.debug("Ignoring realtime frame %s", kind)

    # ─── Event dispatch ──────────────────────────────────────────

    def _set_state(self, new: AgentState) -> None:
        if new == self._state:
            return
        previous, self._state = self._state, new
        logger.debug(
            "Agent state %s -> %s",
            previous.value,
            new.value,
            extra={"state": new.value},
        )
        self._emit(StateEvent(state=new, previous=previous))

    def _emit(self, event: AgentEvent) -> None:
        if self._event_queue is None:
            self._event_queue = asyncio.Queue()
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(
                self._dispatch_loop(), name="agent-events"
            )
        self._event_queue.put_nowait(event)

    async def _dispatch_loop(self) -> None:
        assert self._event_queue is not None
        queue = self._event_queue
        while True:
            event = await queue.get()
            try:
                if isinstance(event, StateEvent):
                    self._observed_state = event.state
                await self._events.deliver(event)
            finally:
                queue.task_done()

    async def _drain_events(self) -> None:
        if self._event_queue is None:
            return
        if asyncio.current_task() is self._dispatch_task:
            return
        await self._event_queue.join()

    async def _stop_dispatcher(self) -> None:
        task = self._dispatch_task
        if task is None or task is asyncio.current_task():
            return
        self._dispatch_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ─── Helpers ─────────────────────────────────────────────────

    def _send_control(self, message: str) -> None:
        self._outbound.append(("control", message))
        self._outbound_wakeup.set()

    def _flush_instructions(self) -> None:
        if self._options is None:
            return
        self._send_control(self._protocol.instructions_update(self._options.instructions))
        self._instructions_dirty = False
        logger.debug("Held instruction update applied at turn boundary")

    def _drop_oldest_audio(self) -> None:
        for i, (kind, _) in enumerate(self._outbound):
            if kind == "audio":
                del self._outbound[i]
                self._outbound_audio -= 1
                self._drop_audio("backpressure")
                return

    def _drop_audio(self, reason: str) -> None:
        self._audio_dropped += 1
        metrics.inc("agent.audio.dropped", labels={"reason": reason})
        if self._audio_dropped <= 3 or self._audio_dropped % 500 == 0:
            logger.info(
                "Dropped audio frame (%s); %d dropped so far",
                reason,
                self._audio_dropped,
            )

    def _count_malformed(self, error: TransportError) -> None:
        self._frames_malformed += 1
        metrics.inc("agent.frames.malformed")
        logger.warning("Dropping malformed realtime frame: %s", error)

    def _ignore_call(self, name: str) -> None:
        metrics.inc("agent.calls.ignored", labels={"call": name})
        logger.info("%s() ignored in state %s", name, self._state.value)
