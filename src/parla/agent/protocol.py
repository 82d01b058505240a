"""
Realtime protocol codec — JSON frames to and from the remote model.

Outbound frames are built from plain values. Inbound frames are decoded and
checked for the minimum structure the session relies on. Anything else raises
TransportError(MALFORMED), which the session counts and drops.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from parla.core.errors import TransportError, TransportReason

logger = logging.getLogger(__name__)

# Inbound frame types the session acts on
SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
RESPONSE_CREATED = "response.created"
RESPONSE_AUDIO_DELTA = "response.audio.delta"
RESPONSE_TRANSCRIPT_DELTA = "response.audio_transcript.delta"
RESPONSE_TEXT_DELTA = "response.text.delta"
RESPONSE_DONE = "response.done"
SPEECH_STARTED = "input_audio_buffer.speech_started"
SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
USER_TRANSCRIPT_DONE = "conversation.item.input_audio_transcription.completed"
ERROR = "error"


@dataclass(frozen=True)
class ServerFrame:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)


class RealtimeProtocol:
    """Encoder/decoder for one realtime session."""

    def __init__(
        self,
        sample_rate: int,
        transcription_model: str = "whisper-1",
        auto_response: bool = False,
    ) -> None:
        self.sample_rate = sample_rate
        self.transcription_model = transcription_model
        self.auto_response = auto_response

    # ─── Outbound ────────────────────────────────────────────────

    def session_update(
        self,
        instructions: str,
        voice: str | None = None,
        model: str | None = None,
    ) -> str:
        session: dict[str, Any] = {
            "modalities": ["text", "audio"],
            "instructions": instructions,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": self.transcription_model},
            "turn_detection": {
                "type": "server_vad",
                "threshold": 0.5,
                "prefix_padding_ms": 300,
                "silence_duration_ms": 500,
                "create_response": self.auto_response,
            },
        }
        if voice:
            session["voice"] = voice
        if model:
            session["model"] = model
        return json.dumps({"type": "session.update", "session": session})

    def instructions_update(self, instructions: str) -> str:
        return json.dumps(
            {"type": "session.update", "session": {"instructions": instructions}}
        )

    def audio_append(self, pcm: bytes) -> str:
        return json.dumps(
            {
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(pcm).decode("ascii"),
            }
        )

    def audio_commit(self) -> str:
        return json.dumps({"type": "input_audio_buffer.commit"})

    def response_create(self) -> str:
        return json.dumps(
            {"type": "response.create", "response": {"modalities": ["text", "audio"]}}
        )

    # ─── Inbound ─────────────────────────────────────────────────

    def decode(self, raw: str | bytes) -> ServerFrame:
        """Parse one inbound frame. Raises TransportError(MALFORMED)."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TransportError(TransportReason.MALFORMED, f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise TransportError(TransportReason.MALFORMED, "frame is not an object")

        frame_type = data.get("type")
        if not isinstance(frame_type, str) or not frame_type:
            raise TransportError(TransportReason.MALFORMED, "frame has no type")

        return ServerFrame(type=frame_type, payload=data)

    def audio_delta(self, frame: ServerFrame) -> bytes:
        encoded = frame.payload.get("delta")
        if not isinstance(encoded, str):
            raise TransportError(TransportReason.MALFORMED, "audio delta missing")
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransportError(
                TransportReason.MALFORMED, f"audio delta not base64: {e}"
            ) from e

    def text_delta(self, frame: ServerFrame) -> str:
        delta = frame.payload.get("delta", "")
        if not isinstance(delta, str):
            raise TransportError(TransportReason.MALFORMED, "text delta not a string")
        return delta

    def user_transcript(self, frame: ServerFrame) -> str:
        transcript = frame.payload.get("transcript", "")
        if not isinstance(transcript, str):
            raise TransportError(TransportReason.MALFORMED, "transcript not a string")
        return transcript.strip()

    def session_id(self, frame: ServerFrame) -> str | None:
        session = frame.payload.get("session") or {}
        if isinstance(session, dict):
            return session.get("id")
        return None

    def error_details(self, frame: ServerFrame) -> tuple[str, str | None]:
        """Return (message, code) for a server error frame."""
        error = frame.payload.get("error") or {}
        if not isinstance(error, dict):
            return str(error), None
        return str(error.get("message", "unknown error")), error.get("code")
