"""
Sentence segmentation — split a target sentence into practice blocks.

Policy:
1. Split on clause punctuation (, ; : and dashes), keeping the punctuation
   with the clause it closes.
2. Split every clause longer than ``max_block_words`` into the fewest
   groups that fit, spreading words evenly (earlier groups take the extra
   word). "The cat sat on the mat" with max 3 → ["The cat sat", "on the mat"].

Pure function of (sentence, max_block_words): the same input always yields
the same blocks.
"""

from __future__ import annotations

import math
import re

_CLAUSE_BREAK = re.compile(r"(?<=[,;:])\s+|\s+[-–—]+\s+")


def segment_sentence(sentence: str, max_block_words: int = 3) -> tuple[str, ...]:
    if max_block_words < 1:
        raise ValueError("max_block_words must be at least 1")

    text = re.sub(r"\s+", " ", sentence).strip()
    if not text:
        return ()

    blocks: list[str] = []
    for clause in _CLAUSE_BREAK.split(text):
        words = clause.split()
        if not words:
            continue
        blocks.extend(_balanced_groups(words, max_block_words))
    return tuple(blocks)


def _balanced_groups(words: list[str], max_words: int) -> list[str]:
    count = math.ceil(len(words) / max_words)
    base, extra = divmod(len(words), count)
    groups: list[str] = []
    start = 0
    for i in range(count):
        size = base + (1 if i < extra else 0)
        groups.append(" ".join(words[start : start + size]))
        start += size
    return groups
