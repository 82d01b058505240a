"""
Fuzzy match scoring between what the learner said and the target text.

Transcripts differ from targets in case, punctuation, accents and small
recognition slips, so both sides are normalized first and then compared
with difflib's ratio (0.0 – 1.0).
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from difflib import SequenceMatcher

_PUNCT = re.compile(r"[^\w\s']|_")


def normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFKD", text.casefold())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _PUNCT.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def match_score(expected: str, spoken: str) -> float:
    a = normalize_text(expected)
    b = normalize_text(spoken)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


@dataclass(frozen=True)
class MatchResult:
    expected: str
    spoken: str
    score: float
    passed: bool


def evaluate(expected: str, spoken: str, threshold: float) -> MatchResult:
    score = match_score(expected, spoken)
    return MatchResult(
        expected=expected,
        spoken=spoken,
        score=score,
        passed=score >= threshold,
    )
