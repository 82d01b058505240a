"""Audio capture/playback capability and its bridge to an AgentSession."""

from parla.audio.channel import (
    AudioBridge,
    AudioChannel,
    QueueAudioChannel,
    float_to_pcm16,
    pcm16_to_float,
    to_pcm16,
)

__all__ = [
    "AudioBridge",
    "AudioChannel",
    "QueueAudioChannel",
    "float_to_pcm16",
    "pcm16_to_float",
    "to_pcm16",
]
