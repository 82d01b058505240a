"""Instruction text pushed to the model at each teaching stage."""

from __future__ import annotations

from textwrap import dedent

from parla.learning.models import LearningSession


def build_base_instructions(native_language: str) -> str:
    """Connect-time instructions, before any sentence is selected."""
    return dedent(
        f"""
        You are a patient pronunciation coach. Speak slowly and clearly, keep
        each turn under 10 seconds, and explain things in {native_language}
        only when the learner is stuck. Never move on by yourself: wait for
        new instructions after every learner attempt.
        """
    ).strip()


def build_intro_instructions(session: LearningSession, native_language: str) -> str:
    return dedent(
        f"""
        Lesson sentence ({session.language_code}): "{session.sentence}"
        Introduce this sentence: say it once at natural speed, then give its
        meaning in {native_language} in one short line. Tell the learner you
        will practice it in {session.total_blocks} small parts. Do not ask
        them to repeat yet.
        """
    ).strip()


def build_block_instructions(session: LearningSession) -> str:
    block = session.current_block or ""
    position = (session.block_index or 0) + 1
    return dedent(
        f"""
        Part {position} of {session.total_blocks}: "{block}"
        Say only this part, slowly, and ask the learner to repeat it.
        """
    ).strip()


def build_repeat_instructions(session: LearningSession, heard: str) -> str:
    block = session.current_block or ""
    return dedent(
        f"""
        The learner tried "{block}" but said "{heard}".
        Point out the one sound or word that was off, say "{block}" again
        slowly, and ask them to try once more. Stay encouraging.
        """
    ).strip()


def build_help_instructions(session: LearningSession, native_language: str) -> str:
    block = session.current_block or ""
    return dedent(
        f"""
        The learner is stuck on "{block}". Break it into syllables, explain
        the tricky sound in {native_language}, then model it one more time and
        invite another try.
        """
    ).strip()


def build_full_instructions(session: LearningSession) -> str:
    return dedent(
        f"""
        All parts done. Ask the learner to say the whole sentence:
        "{session.sentence}"
        """
    ).strip()


def build_restart_instructions(session: LearningSession, heard: str) -> str:
    return dedent(
        f"""
        The learner said "{heard}" for the whole sentence "{session.sentence}".
        Briefly say what went wrong, then start over with part 1 of
        {session.total_blocks}: "{session.blocks[0]}". Say only that part and
        ask them to repeat it.
        """
    ).strip()


def build_mastered_instructions(session: LearningSession) -> str:
    return dedent(
        f"""
        The learner said "{session.sentence}" correctly. Congratulate them in
        one short sentence and wait.
        """
    ).strip()
