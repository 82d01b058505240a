"""
Learning models — the teaching session and the records it persists.

A LearningSession is a frozen value: the orchestrator replaces it on every
transition rather than mutating it. Its ``stage`` is one variant per
LearningState, and only the block stages carry block fields, so a block index
can never exist while the session is in ``intro`` or ``full``.

Persisted records (LearnedSentence, Memory, Profile, SessionState) mirror
the store's schema. They are plain dataclasses; the store owns their ids.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Union


class LearningState(str, Enum):
    INTRO = "intro"  # Introducing the sentence
    BLOCKS = "blocks"  # Presenting / practicing one block
    REPEAT = "repeat"  # Learner retrying a block after a miss
    FULL = "full"  # Full sentence practice
    MASTERED = "mastered"
    NEXT = "next"  # Ready for the next sentence


class LearnedStatus(str, Enum):
    NEW = "new"
    ATTEMPTED = "attempted"
    MASTERED = "mastered"
    EASY = "easy"


# Allowed forward moves; a status never regresses.
STATUS_RANK = {
    LearnedStatus.NEW: 0,
    LearnedStatus.ATTEMPTED: 1,
    LearnedStatus.MASTERED: 2,
    LearnedStatus.EASY: 2,
}


# ─── Stage variants ──────────────────────────────────────────────


@dataclass(frozen=True)
class IntroStage:
    state = LearningState.INTRO


@dataclass(frozen=True)
class BlocksStage:
    block_index: int
    total_blocks: int
    current_block: str

    state = LearningState.BLOCKS


@dataclass(frozen=True)
class RepeatStage:
    block_index: int
    total_blocks: int
    current_block: str

    state = LearningState.REPEAT


@dataclass(frozen=True)
class FullStage:
    state = LearningState.FULL


@dataclass(frozen=True)
class MasteredStage:
    state = LearningState.MASTERED


@dataclass(frozen=True)
class NextStage:
    state = LearningState.NEXT


Stage = Union[IntroStage, BlocksStage, RepeatStage, FullStage, MasteredStage, NextStage]
BlockStage = Union[BlocksStage, RepeatStage]


@dataclass(frozen=True)
class LearningSession:
    """Practice of one sentence by one learner."""

    user_id: str
    language_code: str
    sentence: str
    blocks: tuple[str, ...]
    stage: Stage = field(default_factory=IntroStage)
    attempts: int = 0
    corrections: int = 0
    consecutive_failures: int = 0
    last_score: float | None = None
    started_at: float = field(default_factory=time.time)

    @property
    def state(self) -> LearningState:
        return self.stage.state

    @property
    def current_sentence(self) -> str | None:
        if isinstance(self.stage, NextStage):
            return None
        return self.sentence

    @property
    def block_index(self) -> int | None:
        return getattr(self.stage, "block_index", None)

    @property
    def total_blocks(self) -> int:
        return len(self.blocks)

    @property
    def current_block(self) -> str | None:
        return getattr(self.stage, "current_block", None)

    def block_stage(self, index: int, repeat: bool = False) -> BlockStage:
        """Stage for practicing block ``index``."""
        cls = RepeatStage if repeat else BlocksStage
        return cls(
            block_index=index,
            total_blocks=len(self.blocks),
            current_block=self.blocks[index],
        )

    def evolve(self, **changes: Any) -> LearningSession:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Flat, read-only snapshot."""
        return {
            "state": self.state.value,
            "current_sentence": self.current_sentence,
            "current_block": self.current_block,
            "block_index": self.block_index,
            "total_blocks": self.total_blocks,
            "attempts": self.attempts,
            "corrections": self.corrections,
        }


# ─── Persisted records ───────────────────────────────────────────


@dataclass(frozen=True)
class LearnedSentence:
    user_id: str
    language_code: str
    sentence_text: str
    status: LearnedStatus = LearnedStatus.NEW
    attempt_count: int = 0
    last_score: float | None = None
    id: int | None = None
    first_seen_at: float = field(default_factory=time.time)
    last_attempted_at: float | None = None
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.language_code, self.sentence_text)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class Memory:
    user_id: str
    content: str
    topic: str | None = None
    id: int | None = None
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.user_id, self.topic)


@dataclass(frozen=True)
class BaseLanguage:
    code: str
    level: str  # native | fluent | conversational | basic | words


@dataclass(frozen=True)
class Profile:
    user_id: str
    name: str
    gender: str | None = None
    base_languages: tuple[BaseLanguage, ...] = ()
    target_languages: tuple[str, ...] = ()
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class SessionState:
    user_id: str
    current_sentence_id: int | None = None
    next_candidate_id: int | None = None
    current_sentence_text: str | None = None
    last_action_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.user_id


Record = Union[LearnedSentence, Memory, Profile, SessionState]
