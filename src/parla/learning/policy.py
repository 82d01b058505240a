"""
Status policy — what a mastered session writes to LearnedSentence.

- clean session: no corrections and the full sentence passed on the first
  full attempt
- clean + the sentence was already mastered on a prior encounter → easy
  (only when ``easy_enabled``)
- clean otherwise → mastered
- anything else → attempted

A status never moves backwards: a prior mastered/easy record keeps its
status even after a rough session, and easy is final.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace

from parla.learning.models import (
    STATUS_RANK,
    LearnedSentence,
    LearnedStatus,
    LearningSession,
)


@dataclass(frozen=True)
class StatusPolicy:
    easy_enabled: bool = True

    def is_clean(self, session: LearningSession) -> bool:
        return session.corrections == 0 and session.attempts == 1

    def decide(
        self, session: LearningSession, prior: LearnedSentence | None
    ) -> LearnedStatus:
        prior_status = prior.status if prior else LearnedStatus.NEW

        if self.is_clean(session):
            if (
                self.easy_enabled
                and prior is not None
                and prior_status in (LearnedStatus.MASTERED, LearnedStatus.EASY)
            ):
                status = LearnedStatus.EASY
            else:
                status = LearnedStatus.MASTERED
        else:
            status = LearnedStatus.ATTEMPTED

        if prior_status == LearnedStatus.EASY:
            return prior_status
        if STATUS_RANK[status] < STATUS_RANK[prior_status]:
            return prior_status
        return status

    def build_record(
        self, session: LearningSession, prior: LearnedSentence | None
    ) -> LearnedSentence:
        """The LearnedSentence to write when ``session`` is mastered."""
        now = time.time()
        status = self.decide(session, prior)
        if prior is None:
            return LearnedSentence(
                user_id=session.user_id,
                language_code=session.language_code,
                sentence_text=session.sentence,
                status=status,
                attempt_count=session.attempts,
                last_score=session.last_score,
                first_seen_at=session.started_at,
                last_attempted_at=now,
                updated_at=now,
            )
        return replace(
            prior,
            status=status,
            attempt_count=prior.attempt_count + session.attempts,
            last_score=session.last_score,
            last_attempted_at=now,
            updated_at=now,
        )
