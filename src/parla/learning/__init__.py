"""
Learning package — the guided sentence-practice loop.

Key components:
- orchestrator.LearningOrchestrator: drives intro → blocks → full → mastered → next
- segment_sentence / evaluate: block splitting and fuzzy matching
- StatusPolicy: what a mastered session writes back
"""

from parla.learning.models import (
    LearnedSentence,
    LearnedStatus,
    LearningSession,
    LearningState,
    Memory,
    Profile,
    SessionState,
)
from parla.learning.policy import StatusPolicy
from parla.learning.scoring import MatchResult, evaluate, match_score, normalize_text
from parla.learning.segmentation import segment_sentence

__all__ = [
    # Models
    "LearnedSentence",
    "LearnedStatus",
    "LearningSession",
    "LearningState",
    "Memory",
    "Profile",
    "SessionState",
    # Loop
    "StatusPolicy",
    "MatchResult",
    "evaluate",
    "match_score",
    "normalize_text",
    "segment_sentence",
]
