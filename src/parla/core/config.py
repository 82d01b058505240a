"""
Parla Configuration — single source of truth for all settings.

Reads from environment variables with sensible defaults.
No config files, no YAML. Just env vars (and an optional .env).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RealtimeConfig:
    """Remote conversational model endpoint."""

    url: str = "wss://api.openai.com/v1/realtime"
    api_key: str = ""
    model: str = "gpt-4o-realtime-preview"
    voice: str = "alloy"
    transcription_model: str = "whisper-1"
    ping_interval: float = 20.0
    ping_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> RealtimeConfig:
        return cls(
            url=os.getenv("PARLA_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
            api_key=os.getenv("OPENAI_API_KEY", ""),
            model=os.getenv("PARLA_REALTIME_MODEL", "gpt-4o-realtime-preview"),
            voice=os.getenv("PARLA_REALTIME_VOICE", "alloy"),
            transcription_model=os.getenv(
                "PARLA_TRANSCRIPTION_MODEL", "whisper-1"
            ),
            ping_interval=float(os.getenv("PARLA_REALTIME_PING_INTERVAL", "20.0")),
            ping_timeout=float(os.getenv("PARLA_REALTIME_PING_TIMEOUT", "10.0")),
        )


@dataclass(frozen=True)
class AgentConfig:
    """AgentSession lifecycle settings."""

    connect_timeout: float = 10.0
    reconnect_delay: float = 0.5  # seconds before the one-shot reconnect
    outbound_audio_frames: int = 200  # drop-oldest beyond this
    auto_response: bool = False  # server VAD starts model turns by itself

    @classmethod
    def from_env(cls) -> AgentConfig:
        return cls(
            connect_timeout=float(os.getenv("PARLA_CONNECT_TIMEOUT", "10.0")),
            reconnect_delay=float(os.getenv("PARLA_RECONNECT_DELAY", "0.5")),
            outbound_audio_frames=int(
                os.getenv("PARLA_OUTBOUND_AUDIO_FRAMES", "200")
            ),
            auto_response=_env_bool("PARLA_AUTO_RESPONSE", False),
        )


@dataclass(frozen=True)
class AudioConfig:
    """PCM format shared by capture, the wire and playback."""

    sample_rate: int = 24000
    channels: int = 1
    playback_queue_frames: int = 500

    @classmethod
    def from_env(cls) -> AudioConfig:
        return cls(
            sample_rate=int(os.getenv("PARLA_AUDIO_SAMPLE_RATE", "24000")),
            channels=1,
            playback_queue_frames=int(
                os.getenv("PARLA_PLAYBACK_QUEUE_FRAMES", "500")
            ),
        )


@dataclass(frozen=True)
class LearningConfig:
    """Teaching loop tuning knobs."""

    max_block_words: int = 3
    pass_threshold: float = 0.8
    help_threshold: int = 3  # consecutive failures on one block
    easy_enabled: bool = True
    native_language: str = "English"

    @classmethod
    def from_env(cls) -> LearningConfig:
        return cls(
            max_block_words=int(os.getenv("PARLA_MAX_BLOCK_WORDS", "3")),
            pass_threshold=float(os.getenv("PARLA_PASS_THRESHOLD", "0.8")),
            help_threshold=int(os.getenv("PARLA_HELP_THRESHOLD", "3")),
            easy_enabled=_env_bool("PARLA_EASY_ENABLED", True),
            native_language=os.getenv("PARLA_NATIVE_LANGUAGE", "English"),
        )


@dataclass(frozen=True)
class ParlaConfig:
    """Root configuration."""

    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)

    @classmethod
    def from_env(cls) -> ParlaConfig:
        return cls(
            realtime=RealtimeConfig.from_env(),
            agent=AgentConfig.from_env(),
            audio=AudioConfig.from_env(),
            learning=LearningConfig.from_env(),
        )


# Singleton — import this wherever you need config
config = ParlaConfig.from_env()
