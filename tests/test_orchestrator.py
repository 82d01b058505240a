"""Tests for LearningOrchestrator — the teaching loop.

Most tests drive the orchestrator through FakeAgent, which delivers events
synchronously through a real EventRegistry and records the instruction
updates and turn requests the orchestrator makes. The tests at the end run
the loop on top of a real AgentSession.
"""

import asyncio
import json

import pytest

from parla.agent.events import (
    AgentState,
    ErrorEvent,
    EventRegistry,
    ReadyEvent,
    Role,
    StateEvent,
    TextEvent,
)
from parla.agent.session import AgentOptions, AgentSession
from parla.agent.transport import RealtimeTransport
from parla.core.config import AgentConfig, LearningConfig
from parla.core.errors import (
    AgentProtocolError,
    OrchestratorError,
    OrchestratorReason,
    StorageError,
    StorageReason,
    TransportError,
    TransportReason,
)
from parla.core.metrics import metrics
from parla.learning.models import (
    LearnedSentence,
    LearnedStatus,
    LearningState,
    Memory,
    SessionState,
)
from parla.learning.orchestrator import LearningOrchestrator
from parla.persistence.gateway import InMemoryGateway


class FakeAgent:
    def __init__(self, state=AgentState.LISTENING):
        self.registry = EventRegistry()
        self.state = state
        self.instructions = []
        self.responses = 0

    def on(self, kind, callback):
        self.registry.on(kind, callback)

    def off(self, kind, callback):
        self.registry.off(kind, callback)

    def get_state(self):
        return self.state

    def update_instructions(self, delta, replace_all=False):
        self.instructions.append(delta)

    def respond(self):
        self.responses += 1

    async def emit(self, event):
        if isinstance(event, StateEvent):
            self.state = event.state
        await self.registry.deliver(event)

    async def say(self, text="Listen carefully."):
        await self.emit(TextEvent(delta=text))
        await self.emit(TextEvent(delta="", final=True))

    async def hear(self, text):
        await self.emit(TextEvent(delta=text, role=Role.USER, final=True))


ONE_WORD_BLOCKS = LearningConfig(max_block_words=1, help_threshold=3)


def _orchestrator(agent, gateway=None, cfg=ONE_WORD_BLOCKS, **kw):
    orch = LearningOrchestrator(
        agent, gateway or InMemoryGateway(), "u1", learning_config=cfg, **kw
    )
    orch.attach()
    return orch


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


def _learned(gateway):
    return [w for w in gateway.writes if isinstance(w, LearnedSentence)]


# ─── Scenario ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_hola_amigo_failed_full_attempt_is_attempted():
    agent = FakeAgent()
    gateway = InMemoryGateway()
    transitions = []
    orch = _orchestrator(
        agent, gateway, on_transition=lambda prev, s: transitions.append(s.state)
    )

    session = await orch.start_session("Hola amigo", "es")
    assert session.state == LearningState.INTRO
    assert session.total_blocks == 2
    assert agent.responses == 1

    await agent.say("Hola amigo means hello friend.")
    assert orch.get_session().state == LearningState.BLOCKS
    assert orch.get_session().block_index == 0

    await agent.hear("Hola")
    await agent.hear("amigo")
    assert orch.get_session().state == LearningState.FULL

    await agent.hear("Hola")  # incomplete full sentence
    s = orch.get_session()
    assert s.state == LearningState.BLOCKS
    assert s.block_index == 0
    assert s.attempts == 1

    await agent.hear("Hola")
    await agent.hear("amigo")
    await agent.hear("Hola amigo")
    await orch.flush()

    assert transitions == [
        LearningState.BLOCKS,
        LearningState.BLOCKS,
        LearningState.FULL,
        LearningState.BLOCKS,
        LearningState.BLOCKS,
        LearningState.FULL,
        LearningState.MASTERED,
        LearningState.NEXT,
    ]
    written = _learned(gateway)
    assert len(written) == 1
    assert written[0].status == LearnedStatus.ATTEMPTED
    assert written[0].attempt_count == 2
    assert orch.get_session().state == LearningState.NEXT
    assert orch.get_session().current_sentence is None
    await orch.close()


@pytest.mark.asyncio
async def test_clean_run_is_mastered_then_easy():
    agent = FakeAgent()
    gateway = InMemoryGateway()
    orch = _orchestrator(agent, gateway)

    for _ in range(2):
        await orch.start_session("Hola amigo", "es")
        await agent.say()
        await agent.hear("Hola")
        await agent.hear("amigo")
        await agent.hear("hola, amigo!")
        await orch.flush()

    statuses = [w.status for w in _learned(gateway)]
    assert statuses == [LearnedStatus.MASTERED, LearnedStatus.EASY]
    stored = gateway.records_of(LearnedSentence)
    assert len(stored) == 1
    assert stored[0].attempt_count == 2
    await orch.close()


@pytest.mark.asyncio
async def test_session_state_written_on_start_and_completion():
    agent = FakeAgent()
    gateway = InMemoryGateway()
    orch = _orchestrator(agent, gateway)

    await orch.start_session("Hola amigo", "es")
    await orch.flush()
    state = await gateway.read(SessionState, "u1")
    assert state.current_sentence_text == "Hola amigo"

    await agent.say()
    for heard in ("Hola", "amigo", "Hola amigo"):
        await agent.hear(heard)
    await orch.flush()
    state = await gateway.read(SessionState, "u1")
    assert state.current_sentence_text is None
    await orch.close()


# ─── Blocks ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_block_miss_enters_repeat_with_feedback():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    await agent.say()

    await agent.hear("Ola")  # still close enough
    assert orch.get_session().block_index == 1

    await agent.hear("amigas")
    s = orch.get_session()
    assert s.state == LearningState.REPEAT
    assert s.block_index == 1
    assert s.corrections == 1
    assert 'said "amigas"' in agent.instructions[-1]

    await agent.hear("amigo")
    assert orch.get_session().state == LearningState.FULL
    assert orch.get_session().consecutive_failures == 0
    await orch.close()


@pytest.mark.asyncio
async def test_every_evaluation_requests_a_model_turn():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    assert agent.responses == 1
    await agent.say()
    assert agent.responses == 2
    await agent.hear("Hola")
    assert agent.responses == 3
    assert 'Part 2 of 2: "amigo"' in agent.instructions[-1]
    await orch.close()


@pytest.mark.asyncio
async def test_needs_help_after_threshold():
    agent = FakeAgent()
    gateway = InMemoryGateway()
    signals = []
    orch = _orchestrator(
        agent,
        gateway,
        cfg=LearningConfig(max_block_words=1, help_threshold=2),
        on_needs_help=lambda session, err: signals.append((session, err)),
    )
    await orch.start_session("Hola amigo", "es")
    await agent.say()

    await agent.hear("adios")
    assert signals == []
    await agent.hear("adios")

    assert len(signals) == 1
    session, err = signals[0]
    assert isinstance(err, OrchestratorError)
    assert err.reason == OrchestratorReason.BLOCKED
    assert session.current_block == "Hola"
    assert orch.get_session().consecutive_failures == 0
    assert orch.get_session().corrections == 2
    assert "stuck" in agent.instructions[-1]
    assert metrics.counter("learning.needs_help") == 1

    await orch.flush()
    notes = [w for w in gateway.writes if isinstance(w, Memory)]
    assert len(notes) == 1
    assert "Hola" in notes[0].content
    await orch.close()


@pytest.mark.asyncio
async def test_learner_speech_ignored_during_intro():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")

    await agent.hear("Hola amigo")

    s = orch.get_session()
    assert s.state == LearningState.INTRO
    assert s.attempts == 0
    await orch.close()


# ─── Start / end ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_empty_sentence_is_rejected():
    orch = _orchestrator(FakeAgent())
    with pytest.raises(OrchestratorError) as exc:
        await orch.start_session("   ", "es")
    assert exc.value.reason == OrchestratorReason.INVALID_TRANSITION
    assert orch.get_session() is None


@pytest.mark.asyncio
async def test_start_does_not_interrupt_a_speaking_agent():
    agent = FakeAgent(state=AgentState.SPEAKING)
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")

    assert agent.responses == 0
    assert '"Hola amigo"' in agent.instructions[-1]

    # The turn that was already playing ends: the intro is requested, not skipped
    await agent.say("Well done on the last one!")
    assert orch.get_session().state == LearningState.INTRO
    assert agent.responses == 1

    await agent.say("Hola amigo means hello friend.")
    assert orch.get_session().state == LearningState.BLOCKS
    assert agent.responses == 2
    await orch.close()


@pytest.mark.asyncio
async def test_start_while_disconnected_requests_intro_on_ready():
    agent = FakeAgent(state=AgentState.DISCONNECTED)
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    assert agent.responses == 0

    await agent.emit(StateEvent(state=AgentState.CONNECTING, previous=AgentState.DISCONNECTED))
    await agent.emit(StateEvent(state=AgentState.CONNECTED, previous=AgentState.CONNECTING))
    await agent.emit(ReadyEvent(session_id="sess_1"))
    assert agent.responses == 1

    await agent.say()
    assert orch.get_session().state == LearningState.BLOCKS
    await orch.close()


@pytest.mark.asyncio
async def test_end_session_and_detach_stop_reacting():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    orch.end_session()

    await agent.say()
    assert orch.get_session().state == LearningState.INTRO

    orch.detach()
    orch.detach()
    assert agent.registry.subscriber_count("text") == 0
    await orch.close()


# ─── Pause / freeze ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_disconnect_freezes_without_double_counting():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    await agent.say()
    await agent.hear("adios")  # one correction
    before = orch.get_session()

    await agent.emit(TextEvent(delta="Try ag"))
    await agent.emit(
        ErrorEvent(error=TransportError(TransportReason.DROPPED, "gone"))
    )
    await agent.emit(StateEvent(state=AgentState.DISCONNECTED, previous=AgentState.SPEAKING))
    assert orch.paused

    await agent.hear("adios")
    await agent.emit(TextEvent(delta="", final=True))
    frozen = orch.get_session()
    assert (frozen.attempts, frozen.corrections) == (before.attempts, before.corrections)
    assert frozen.state == before.state

    await agent.emit(StateEvent(state=AgentState.CONNECTING, previous=AgentState.DISCONNECTED))
    await agent.emit(StateEvent(state=AgentState.CONNECTED, previous=AgentState.CONNECTING))
    await agent.emit(ReadyEvent(session_id="sess_2"))
    assert not orch.paused
    resumed = orch.get_session()
    assert (resumed.attempts, resumed.corrections) == (before.attempts, before.corrections)
    assert 'Part 1 of 2: "Hola"' in agent.instructions[-1]

    await agent.hear("Hola")
    assert orch.get_session().block_index == 1
    await orch.close()


@pytest.mark.asyncio
async def test_reconnect_during_intro_asks_for_the_intro_again():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    assert agent.responses == 1

    await agent.emit(TextEvent(delta="Hola amigo me"))
    await agent.emit(StateEvent(state=AgentState.DISCONNECTED, previous=AgentState.SPEAKING))
    await agent.emit(StateEvent(state=AgentState.CONNECTING, previous=AgentState.DISCONNECTED))
    await agent.emit(StateEvent(state=AgentState.CONNECTED, previous=AgentState.CONNECTING))
    await agent.emit(ReadyEvent(session_id="sess_2"))

    assert not orch.paused
    assert agent.responses == 2
    assert "Do not ask them to repeat yet" in agent.instructions[-1]
    assert orch.get_session().state == LearningState.INTRO
    assert orch.get_session().attempts == 0

    await agent.say()
    assert orch.get_session().state == LearningState.BLOCKS
    await orch.close()


@pytest.mark.asyncio
async def test_reconnect_in_full_asks_for_the_sentence_again():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    await agent.say()
    await agent.hear("Hola")
    await agent.hear("amigo")
    responses = agent.responses

    await agent.emit(StateEvent(state=AgentState.DISCONNECTED, previous=AgentState.LISTENING))
    await agent.emit(ReadyEvent(session_id="sess_2"))

    assert agent.responses == responses + 1
    assert "whole sentence" in agent.instructions[-1]
    assert orch.get_session().state == LearningState.FULL
    await orch.close()


@pytest.mark.asyncio
async def test_protocol_error_pauses_until_listening():
    agent = FakeAgent()
    errors = []
    orch = _orchestrator(agent, on_error=errors.append)
    await orch.start_session("Hola amigo", "es")
    await agent.say()

    await agent.emit(ErrorEvent(error=AgentProtocolError("rate limited", "rate_limit")))
    assert orch.paused
    assert isinstance(errors[0], AgentProtocolError)

    await agent.hear("Hola")
    assert orch.get_session().block_index == 0

    await agent.emit(StateEvent(state=AgentState.LISTENING, previous=AgentState.PROCESSING))
    assert not orch.paused
    await agent.hear("Hola")
    assert orch.get_session().block_index == 1
    await orch.close()


@pytest.mark.asyncio
async def test_manual_resume():
    agent = FakeAgent()
    orch = _orchestrator(agent)
    await orch.start_session("Hola amigo", "es")
    await agent.emit(ErrorEvent(error=AgentProtocolError("oops"), fatal=True))
    assert orch.paused
    orch.resume()
    assert not orch.paused
    await orch.close()


# ─── Storage ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_storage_failure_does_not_roll_back_the_session():
    agent = FakeAgent()
    gateway = InMemoryGateway()
    gateway.available = False
    errors = []
    orch = _orchestrator(agent, gateway, on_error=errors.append)

    await orch.start_session("Hola amigo", "es")
    await agent.say()
    for heard in ("Hola", "amigo", "Hola amigo"):
        await agent.hear(heard)
    await orch.flush()

    assert orch.get_session().state == LearningState.NEXT
    assert errors
    assert all(isinstance(e, StorageError) for e in errors)
    assert errors[0].reason == StorageReason.UNAVAILABLE
    assert gateway.writes == []
    await orch.close()


# ─── With a real AgentSession ────────────────────────────────────


class FakeTransport(RealtimeTransport):
    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.opened = 0

    async def open(self, model=None):
        self.opened += 1
        self.push(type="session.created", session={"id": f"sess_{self.opened}"})

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        pass

    def push(self, **frame):
        self.inbound.put_nowait(json.dumps(frame))

    def drop(self):
        self.inbound.put_nowait(TransportError(TransportReason.DROPPED, "peer went away"))

    def count(self, kind, since=0):
        return sum(1 for m in self.sent[since:] if m["type"] == kind)


LIVE = AgentConfig(connect_timeout=0.5, reconnect_delay=0.01)


async def _live(transport):
    agent = AgentSession(transport, agent_config=LIVE)
    orch = LearningOrchestrator(
        agent, InMemoryGateway(), "u1", learning_config=ONE_WORD_BLOCKS
    )
    orch.attach()
    await agent.connect(AgentOptions(instructions="You are a coach."))
    return agent, orch


async def _settle(agent, delay=0.02):
    await asyncio.sleep(delay)
    await agent.flush_events()


@pytest.mark.asyncio
async def test_loop_drives_a_live_agent_session():
    transport = FakeTransport()
    agent, orch = await _live(transport)

    await orch.start_session("Hola amigo", "es")
    await _settle(agent)
    assert [m["type"] for m in transport.sent][-2:] == ["session.update", "response.create"]

    # Model introduces the sentence
    transport.push(type="response.created", response={})
    transport.push(type="response.audio_transcript.delta", delta="Hola amigo means...")
    transport.push(type="response.done", response={})
    await _settle(agent)
    assert orch.get_session().state == LearningState.BLOCKS
    assert 'Part 1 of 2: "Hola"' in transport.sent[-2]["session"]["instructions"]
    assert transport.sent[-1]["type"] == "response.create"

    # Model presents block 0, learner repeats it
    transport.push(type="response.created", response={})
    transport.push(type="response.done", response={})
    transport.push(type="input_audio_buffer.speech_started")
    transport.push(type="input_audio_buffer.speech_stopped")
    transport.push(
        type="conversation.item.input_audio_transcription.completed", transcript="Hola."
    )
    await _settle(agent)

    assert orch.get_session().block_index == 1
    assert 'Part 2 of 2: "amigo"' in transport.sent[-2]["session"]["instructions"]
    assert transport.sent[-1]["type"] == "response.create"

    await agent.disconnect()
    await orch.close()


@pytest.mark.asyncio
async def test_live_drop_during_intro_requests_the_intro_again():
    transport = FakeTransport()
    agent, orch = await _live(transport)
    await orch.start_session("Hola amigo", "es")
    transport.push(type="response.created", response={})
    transport.push(type="response.audio_transcript.delta", delta="Hola amigo me")
    await _settle(agent)
    mark = len(transport.sent)

    transport.drop()
    await _settle(agent, delay=0.1)

    assert transport.opened == 2
    assert not orch.paused
    assert transport.count("response.create", since=mark) == 1
    assert transport.sent[-1]["type"] == "response.create"
    assert "Do not ask them to repeat yet" in transport.sent[-2]["session"]["instructions"]

    # Learner talks over the intro; nothing is scored
    transport.push(type="input_audio_buffer.speech_started")
    transport.push(type="input_audio_buffer.speech_stopped")
    transport.push(
        type="conversation.item.input_audio_transcription.completed", transcript="Hola"
    )
    transport.push(type="response.created", response={})
    transport.push(type="response.done", response={})
    await _settle(agent)

    session = orch.get_session()
    assert session.state == LearningState.BLOCKS
    assert (session.attempts, session.corrections) == (0, 0)
    assert 'Part 1 of 2: "Hola"' in transport.sent[-2]["session"]["instructions"]

    await agent.disconnect()
    await orch.close()


@pytest.mark.asyncio
async def test_live_start_during_a_model_turn_keeps_the_intro():
    transport = FakeTransport()
    agent, orch = await _live(transport)

    # Congratulation turn for the previous sentence is still streaming
    agent.respond()
    transport.push(type="response.created", response={})
    transport.push(type="response.audio_transcript.delta", delta="Muy bien!")
    await _settle(agent)
    assert agent.get_state() == AgentState.PROCESSING

    await orch.start_session("Hola amigo", "es")
    await _settle(agent)
    assert transport.count("response.create") == 1

    transport.push(type="response.done", response={})
    await _settle(agent)

    assert orch.get_session().state == LearningState.INTRO
    assert transport.count("response.create") == 2
    assert transport.sent[-1]["type"] == "response.create"
    assert "Do not ask them to repeat yet" in transport.sent[-2]["session"]["instructions"]

    # The intro turn itself moves the lesson on
    transport.push(type="response.created", response={})
    transport.push(type="response.audio_transcript.delta", delta="Hola amigo means...")
    transport.push(type="response.done", response={})
    await _settle(agent)
    assert orch.get_session().state == LearningState.BLOCKS
    assert 'Part 1 of 2: "Hola"' in transport.sent[-2]["session"]["instructions"]

    await agent.disconnect()
    await orch.close()
