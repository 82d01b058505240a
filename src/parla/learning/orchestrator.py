"""
LearningOrchestrator — the teaching loop for one learner.

Turns a target sentence into a guided practice dialogue, using an
AgentSession as its only interaction channel:

  intro → blocks ⇄ repeat → full → mastered → next
                 ↖──────────────┘ (full-sentence miss restarts at block 0)

Key design:
- on_agent_event() is the only driver of transitions; the AgentSession
  delivers events one at a time, so handlers never overlap
- Each transition pushes stage instructions and asks the model for a turn
- Errors pause, disconnects freeze: the interrupted turn is discarded and
  no counter moves until the agent is ready again, which re-issues the
  current stage
- Persistence is fire-and-forget through an ordered PersistenceWriter
"""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from parla.agent.events import (
    AgentEvent,
    AgentState,
    ErrorEvent,
    EventCallback,
    EventKind,
    ReadyEvent,
    Role,
    StateEvent,
    TextEvent,
)
from parla.core.config import LearningConfig, config
from parla.core.errors import (
    OrchestratorError,
    OrchestratorReason,
    ParlaError,
    StorageError,
)
from parla.core.metrics import metrics
from parla.learning import prompts
from parla.learning.models import (
    FullStage,
    LearnedSentence,
    LearningSession,
    LearningState,
    MasteredStage,
    Memory,
    NextStage,
    Record,
    SessionState,
)
from parla.learning.policy import StatusPolicy
from parla.learning.scoring import MatchResult, evaluate
from parla.learning.segmentation import segment_sentence
from parla.persistence.gateway import PersistenceGateway, PersistenceWriter

logger = logging.getLogger(__name__)


class AgentControls(Protocol):
    """The slice of AgentSession the orchestrator drives."""

    def on(self, event: EventKind | str, callback: EventCallback) -> None: ...

    def off(self, event: EventKind | str, callback: EventCallback) -> None: ...

    def get_state(self) -> AgentState: ...

    def update_instructions(self, delta: str, replace_all: bool = False) -> None: ...

    def respond(self) -> None: ...


class LearningOrchestrator:
    """Drives one LearningSession at a time from AgentSession events."""

    def __init__(
        self,
        agent: AgentControls,
        gateway: PersistenceGateway,
        user_id: str,
        *,
        learning_config: LearningConfig | None = None,
        policy: StatusPolicy | None = None,
        on_needs_help: Callable[[LearningSession, OrchestratorError], None] | None = None,
        on_error: Callable[[ParlaError], None] | None = None,
        on_transition: Callable[[LearningState, LearningSession], None] | None = None,
    ) -> None:
        self.agent = agent
        self.user_id = user_id
        self._cfg = learning_config or config.learning
        self._policy = policy or StatusPolicy(easy_enabled=self._cfg.easy_enabled)
        self._writer = PersistenceWriter(gateway, on_failure=self._on_storage_failure)

        self.on_needs_help = on_needs_help
        self.on_error = on_error
        self.on_transition = on_transition

        self._session: LearningSession | None = None
        self._prior: LearnedSentence | None = None
        self._assistant_text: list[str] = []
        self.last_assistant_turn = ""
        self._active = False
        self._paused = False
        self._frozen = False
        self._attached = False
        # Set once the intro turn of the current session has been requested
        self._intro_requested = False

    # ─── Wiring ──────────────────────────────────────────────────

    def attach(self) -> None:
        if self._attached:
            return
        for kind in (EventKind.TEXT, EventKind.ERROR, EventKind.STATE, EventKind.READY):
            self.agent.on(kind, self.on_agent_event)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        for kind in (EventKind.TEXT, EventKind.ERROR, EventKind.STATE, EventKind.READY):
            self.agent.off(kind, self.on_agent_event)
        self._attached = False

    async def close(self) -> None:
        """Stop reacting and wait for queued writes."""
        self.end_session()
        self.detach()
        await self._writer.close()

    async def flush(self) -> None:
        await self._writer.flush()

    # ─── Session control ─────────────────────────────────────────

    @property
    def paused(self) -> bool:
        return self._paused or self._frozen

    def get_session(self) -> LearningSession | None:
        return self._session

    async def start_session(self, sentence: str, language_code: str) -> LearningSession:
        blocks = segment_sentence(sentence, self._cfg.max_block_words)
        if not blocks:
            raise OrchestratorError(
                OrchestratorReason.INVALID_TRANSITION, "cannot practice an empty sentence"
            )
        text = " ".join(blocks)

        if self._active and self._session and self._session.state != LearningState.NEXT:
            logger.info("Abandoning unfinished sentence %r", self._session.sentence)

        prior = await self._writer.read(LearnedSentence, (self.user_id, language_code, text))
        self._prior = prior if isinstance(prior, LearnedSentence) else None

        self._session = LearningSession(
            user_id=self.user_id,
            language_code=language_code,
            sentence=text,
            blocks=blocks,
        )
        self._assistant_text.clear()
        self._active = True
        self._paused = False
        self._frozen = False

        logger.info(
            "Learning session started: %r (%d blocks, prior=%s)",
            text,
            len(blocks),
            self._prior.status.value if self._prior else "none",
            extra={"user_id": self.user_id, "language_code": language_code},
        )

        self._instruct(
            prompts.build_intro_instructions(self._session, self._cfg.native_language)
        )
        # Otherwise the turn in flight, or the next ready, requests the intro
        self._intro_requested = False
        if self.agent.get_state() in (AgentState.CONNECTED, AgentState.LISTENING):
            self._request_intro()

        self._writer.submit(
            SessionState(
                user_id=self.user_id,
                current_sentence_id=self._prior.id if self._prior else None,
                current_sentence_text=text,
            )
        )
        return self._session

    def end_session(self) -> None:
        """Stop reacting to events. Network operations are left alone."""
        self._active = False
        self._assistant_text.clear()

    def resume(self) -> None:
        """Clear a pause after the operator handled an error."""
        if self._paused or self._frozen:
            logger.info("Learning session resumed")
        self._paused = False
        self._frozen = False

    # ─── Event handling ──────────────────────────────────────────

    def on_agent_event(self, event: AgentEvent) -> None:
        if isinstance(event, TextEvent):
            self._on_text(event)
        elif isinstance(event, StateEvent):
            self._on_state(event)
        elif isinstance(event, ErrorEvent):
            self._on_error(event)
        elif isinstance(event, ReadyEvent):
            self._on_ready()

    def _on_state(self, event: StateEvent) -> None:
        if not self._active:
            return
        if event.state == AgentState.DISCONNECTED and not self._frozen:
            self._frozen = True
            self._assistant_text.clear()
            logger.info(
                "Learning session frozen (agent disconnected)",
                extra={"state": self._session.state.value if self._session else None},
            )
        elif event.state == AgentState.LISTENING and self._paused and not self._frozen:
            # A non-fatal error: the agent is back at a turn boundary
            self._paused = False
            logger.info("Learning session resumed at turn boundary")

    def _on_ready(self) -> None:
        if not self._active or self._session is None:
            return
        if self._frozen or self._paused:
            self._frozen = False
            self._paused = False
            self._assistant_text.clear()
            logger.info(
                "Learning session resumed after reconnect",
                extra={"state": self._session.state.value},
            )
            self._replay_stage()
        elif self._session.state == LearningState.INTRO and not self._intro_requested:
            # Sentence was started before the agent connected
            self._request_intro()

    def _on_error(self, event: ErrorEvent) -> None:
        if self._active:
            self._paused = True
            self._assistant_text.clear()
        logger.warning(
            "Agent error (%s, fatal=%s): %s",
            event.error.reason.value,
            event.fatal,
            event.error,
            extra={"reason": event.error.reason.value},
        )
        if self.on_error:
            self.on_error(event.error)

    def _on_text(self, event: TextEvent) -> None:
        if not self._can_react():
            return
        assert self._session is not None

        if event.role == Role.ASSISTANT:
            if not event.final:
                self._assistant_text.append(event.delta)
                return
            self.last_assistant_turn = "".join(self._assistant_text).strip()
            self._assistant_text.clear()
            if self._session.state != LearningState.INTRO:
                return
            if self._intro_requested:
                self._enter_blocks()
            else:
                # The turn that just ended predates this sentence
                self._request_intro()
            return

        if not event.final:
            return
        heard = event.delta.strip()
        if not heard:
            return

        state = self._session.state
        if state in (LearningState.BLOCKS, LearningState.REPEAT):
            self._evaluate_block(heard)
        elif state == LearningState.FULL:
            self._evaluate_full(heard)
        else:
            logger.debug("Ignoring learner speech during %s", state.value)

    def _can_react(self) -> bool:
        return (
            self._session is not None
            and self._active
            and not self._paused
            and not self._frozen
        )

    # ─── Turn requests ───────────────────────────────────────────

    def _request_intro(self) -> None:
        self._intro_requested = True
        self.agent.respond()

    def _replay_stage(self) -> None:
        """Ask again for the turn a reconnect cut off. Counters stay as they are."""
        session = self._session
        assert session is not None
        state = session.state

        if state == LearningState.INTRO:
            self._instruct(
                prompts.build_intro_instructions(session, self._cfg.native_language)
            )
            self._request_intro()
            return
        if state in (LearningState.BLOCKS, LearningState.REPEAT):
            self._instruct(prompts.build_block_instructions(session))
        elif state == LearningState.FULL:
            self._instruct(prompts.build_full_instructions(session))
        else:
            return
        self.agent.respond()

    # ─── Transitions ─────────────────────────────────────────────

    def _enter_blocks(self) -> None:
        session = self._session
        assert session is not None
        self._transition(session.evolve(stage=session.block_stage(0)))
        self._instruct(prompts.build_block_instructions(self._session))
        self.agent.respond()

    def _evaluate_block(self, heard: str) -> None:
        session = self._session
        assert session is not None and session.block_index is not None
        result = evaluate(session.current_block or "", heard, self._cfg.pass_threshold)
        self._log_result("block", result, session)

        if result.passed:
            metrics.inc("learning.block.passed")
            next_index = session.block_index + 1
            if next_index >= session.total_blocks:
                self._transition(
                    session.evolve(
                        stage=FullStage(),
                        consecutive_failures=0,
                        last_score=result.score,
                    )
                )
                self._instruct(prompts.build_full_instructions(self._session))
            else:
                self._transition(
                    session.evolve(
                        stage=session.block_stage(next_index),
                        consecutive_failures=0,
                        last_score=result.score,
                    )
                )
                self._instruct(prompts.build_block_instructions(self._session))
            self.agent.respond()
            return

        metrics.inc("learning.block.failed")
        failures = session.consecutive_failures + 1
        updated = session.evolve(
            stage=session.block_stage(session.block_index, repeat=True),
            corrections=session.corrections + 1,
            consecutive_failures=failures,
            last_score=result.score,
        )
        if failures >= self._cfg.help_threshold:
            self._transition(updated.evolve(consecutive_failures=0))
            self._signal_needs_help(heard)
            self._instruct(
                prompts.build_help_instructions(self._session, self._cfg.native_language)
            )
        else:
            self._transition(updated)
            self._instruct(prompts.build_repeat_instructions(self._session, heard))
        self.agent.respond()

    def _evaluate_full(self, heard: str) -> None:
        session = self._session
        assert session is not None
        result = evaluate(session.sentence, heard, self._cfg.pass_threshold)
        self._log_result("full", result, session)
        attempts = session.attempts + 1

        if result.passed:
            metrics.inc("learning.full.passed")
            self._transition(
                session.evolve(
                    stage=MasteredStage(),
                    attempts=attempts,
                    consecutive_failures=0,
                    last_score=result.score,
                )
            )
            self._complete()
            return

        metrics.inc("learning.full.failed")
        self._transition(
            session.evolve(
                stage=session.block_stage(0),
                attempts=attempts,
                consecutive_failures=0,
                last_score=result.score,
            )
        )
        self._instruct(prompts.build_restart_instructions(self._session, heard))
        self.agent.respond()

    def _complete(self) -> None:
        session = self._session
        assert session is not None and session.state == LearningState.MASTERED

        record = self._policy.build_record(session, self._prior)
        self._writer.submit(record)
        self._prior = record
        logger.info(
            "Sentence mastered: %r -> %s (attempts=%d, corrections=%d)",
            session.sentence,
            record.status.value,
            session.attempts,
            session.corrections,
            extra={"user_id": self.user_id, "language_code": session.language_code},
        )

        if session.corrections:
            self._writer.submit(
                Memory(
                    user_id=self.user_id,
                    topic=session.language_code,
                    content=(
                        f'Mastered "{session.sentence}" after {session.corrections} '
                        f"corrections and {session.attempts} full attempts."
                    ),
                )
            )

        self._instruct(prompts.build_mastered_instructions(session))
        self.agent.respond()

        self._transition(session.evolve(stage=NextStage()))
        self._writer.submit(SessionState(user_id=self.user_id, next_candidate_id=None))

    def _signal_needs_help(self, heard: str) -> None:
        session = self._session
        assert session is not None
        error = OrchestratorError(
            OrchestratorReason.BLOCKED,
            f"learner needs help with block {session.block_index}: "
            f"{session.current_block!r} (heard {heard!r})",
        )
        metrics.inc("learning.needs_help")
        logger.warning("%s", error, extra={"block_index": session.block_index})
        self._writer.submit(
            Memory(
                user_id=self.user_id,
                topic=session.language_code,
                content=f'Struggles with "{session.current_block}" in "{session.sentence}".',
            )
        )
        if self.on_needs_help:
            self.on_needs_help(session, error)

    # ─── Helpers ─────────────────────────────────────────────────

    def _transition(self, updated: LearningSession) -> None:
        previous = self._session.state if self._session else LearningState.NEXT
        self._session = updated
        if previous != updated.state:
            logger.info(
                "Learning %s -> %s",
                previous.value,
                updated.state.value,
                extra={"state": updated.state.value, "block_index": updated.block_index},
            )
        if self.on_transition:
            self.on_transition(previous, updated)

    def _instruct(self, stage_text: str) -> None:
        base = prompts.build_base_instructions(self._cfg.native_language)
        self.agent.update_instructions(f"{base}\n\n{stage_text}", replace_all=True)

    def _log_result(self, kind: str, result: MatchResult, session: LearningSession) -> None:
        metrics.observe("learning.match_score", result.score, labels={"kind": kind})
        logger.info(
            "%s match %.2f (%s): expected %r, heard %r",
            kind,
            result.score,
            "pass" if result.passed else "miss",
            result.expected,
            result.spoken,
            extra={"block_index": session.block_index},
        )

    def _on_storage_failure(self, record: Record, error: StorageError) -> None:
        if self.on_error:
            self.on_error(error)
