"""
Audio channel — capture and playback of mono PCM frames.

The core never talks to a sound card. It consumes an AudioChannel:
  capture()  → lazy async stream of PCM16 frames (cannot be restarted)
  play(frame) → hand a PCM16 frame to the speaker side
  close()    → release the device / track

QueueAudioChannel is the in-process implementation: a WebRTC track, a
microphone callback or a test pushes frames in, and a playback consumer
drains what the model said.

AudioBridge wires one channel to one AgentSession.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator

import numpy as np

from parla.core.metrics import metrics

if TYPE_CHECKING:
    from parla.agent.events import AudioEvent
    from parla.agent.session import AgentSession

logger = logging.getLogger(__name__)

_END = object()


# ─── PCM helpers ─────────────────────────────────────────────────


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Float32 samples in [-1, 1] → little-endian int16 bytes."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32767.0


def to_pcm16(chunk: bytes | bytearray | memoryview | np.ndarray) -> bytes:
    """Normalize a capture chunk to PCM16 bytes."""
    if isinstance(chunk, np.ndarray):
        if chunk.dtype == np.int16:
            return chunk.astype("<i2").tobytes()
        return float_to_pcm16(chunk)
    data = bytes(chunk)
    if len(data) % 2:
        raise ValueError(f"PCM16 frame has odd length ({len(data)} bytes)")
    return data


def frame_rms(pcm: bytes) -> float:
    samples = np.frombuffer(pcm, dtype="<i2")
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


# ─── Channel ─────────────────────────────────────────────────────


class AudioChannel(ABC):
    """Capture/playback capability injected into an AgentSession."""

    @abstractmethod
    def capture(self) -> AsyncIterator[bytes]:
        ...

    @abstractmethod
    async def play(self, frame: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class QueueAudioChannel(AudioChannel):
    """Queue-backed channel.

    Capture is unbounded on the producer side (the agent drops, not the
    microphone). Playback is bounded and drops the oldest frame when the
    consumer falls behind.
    """

    def __init__(self, playback_maxsize: int = 500) -> None:
        self._capture: asyncio.Queue = asyncio.Queue()
        self._playback: asyncio.Queue = asyncio.Queue(maxsize=playback_maxsize)
        self._capture_started = False
        self.closed = False

    def push_capture(self, chunk: bytes | np.ndarray) -> None:
        if self.closed:
            return
        self._capture.put_nowait(chunk)

    async def capture(self) -> AsyncIterator[bytes]:
        if self._capture_started:
            raise RuntimeError("capture() already started; it cannot be restarted")
        self._capture_started = True
        while True:
            item = await self._capture.get()
            if item is _END:
                return
            yield to_pcm16(item)

    async def play(self, frame: bytes) -> None:
        if self.closed:
            return
        if self._playback.full():
            self._playback.get_nowait()
            metrics.inc("audio.playback.dropped")
        self._playback.put_nowait(frame)

    async def playback(self) -> AsyncIterator[bytes]:
        """Consume frames handed to play(), until the channel closes."""
        while True:
            item = await self._playback.get()
            if item is _END:
                return
            yield item

    def pending_playback(self) -> int:
        return self._playback.qsize()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._capture.put_nowait(_END)
        if self._playback.full():
            self._playback.get_nowait()
        self._playback.put_nowait(_END)
        logger.debug("QueueAudioChannel closed")


# ─── Bridge ──────────────────────────────────────────────────────


class AudioBridge:
    """Pumps channel capture into an AgentSession and plays model audio."""

    def __init__(self, agent: "AgentSession", channel: AudioChannel) -> None:
        self.agent = agent
        self.channel = channel
        self._pump_task: asyncio.Task | None = None
        self._frames_in = 0
        self.released = False

    @property
    def running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    def start(self) -> None:
        if self.released or self._pump_task is not None:
            return
        self.agent.on("audio", self._on_audio)
        self._pump_task = asyncio.create_task(self._pump(), name="audio-capture-pump")

    async def stop(self) -> None:
        """Stop pumping and release the channel. Idempotent."""
        if self.released:
            return
        self.released = True
        self.agent.off("audio", self._on_audio)
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        self._pump_task = None
        await self.channel.close()
        logger.info("Audio bridge released (%d frames captured)", self._frames_in)

    async def _pump(self) -> None:
        try:
            async for frame in self.channel.capture():
                self._frames_in += 1
                if self._frames_in <= 3:
                    logger.debug(
                        "Captured frame #%d: %d bytes, rms=%.1f",
                        self._frames_in,
                        len(frame),
                        frame_rms(frame),
                    )
                self.agent.send_audio(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Audio capture pump failed: %s", e, exc_info=True)

    async def _on_audio(self, event: "AudioEvent") -> None:
        await self.channel.play(event.pcm)
