"""Audio decode, playback and microphone capture.

This module is intentionally "dumb hardware I/O": it knows nothing about the
interview, phases or providers.

It provides:
- decoding synthesized payloads (raw 16-bit PCM or WAV) into AudioUnits
- a speaker player that owns one output stream at a time
- microphone capture that hands frames to the event loop
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
import time
import wave
from dataclasses import dataclass

import numpy as np

from roundz_interview.errors import AudioDecodeError, AudioDeviceError, MicrophonePermissionError
from roundz_interview.events import EventChannel, VolumeChanged

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioIOConfig:
    sample_rate: int = 16000
    channels: int = 1
    dtype: str = "int16"  # microphone capture dtype
    block_ms: int = 50
    volume_interval_s: float = 0.1
    playback_grace_s: float = 2.0


@dataclass(frozen=True, eq=False)
class AudioUnit:
    """Decoded mono audio ready for playback."""

    samples: np.ndarray  # float32 in [-1, 1], shape [n]
    sample_rate: int

    @property
    def duration_s(self) -> float:
        return len(self.samples) / float(self.sample_rate) if self.sample_rate else 0.0


def _require_sounddevice():
    try:
        import sounddevice as sd  # type: ignore

        return sd
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "sounddevice is required for voice mode. "
            "If you see 'PortAudio library not found', install PortAudio "
            "(Debian/Ubuntu: sudo apt-get install portaudio19-dev)."
        ) from e


def decode_audio(payload: bytes, *, sample_rate: int = 16000) -> AudioUnit:
    """Decode a synthesis payload into an AudioUnit.

    WAV payloads are detected by their RIFF header; anything else is treated as
    raw little-endian 16-bit mono PCM at ``sample_rate``.
    """
    if not payload:
        raise AudioDecodeError("empty audio payload")

    if payload[:4] == b"RIFF":
        try:
            with wave.open(io.BytesIO(payload), "rb") as wf:
                sr = wf.getframerate()
                n_channels = wf.getnchannels()
                sampwidth = wf.getsampwidth()
                frames = wf.readframes(wf.getnframes())
        except (wave.Error, EOFError) as e:
            raise AudioDecodeError(f"invalid WAV payload: {e}") from e
        if sampwidth != 2:
            raise AudioDecodeError(f"Only 16-bit WAV supported, got sampwidth={sampwidth}")
        frame_bytes = sampwidth * max(n_channels, 1)
        if len(frames) % frame_bytes:
            raise AudioDecodeError(f"WAV data truncated mid-frame ({len(frames)} bytes, frame size {frame_bytes})")
        try:
            audio = np.frombuffer(frames, dtype="<i2")
            if n_channels > 1:
                audio = audio.reshape(-1, n_channels).mean(axis=1)
        except ValueError as e:
            raise AudioDecodeError(f"invalid WAV sample data: {e}") from e
        sample_rate = sr
    else:
        if len(payload) % 2:
            raise AudioDecodeError(f"PCM payload has odd length {len(payload)}")
        audio = np.frombuffer(payload, dtype="<i2")

    if audio.size == 0:
        raise AudioDecodeError("audio payload contains no samples")
    return AudioUnit(samples=(audio.astype(np.float32) / 32768.0), sample_rate=sample_rate)


class AudioIO:
    """Speaker output. Owns at most one output stream, released after each unit."""

    def __init__(self, config: AudioIOConfig | None = None) -> None:
        self._config = config or AudioIOConfig()
        self._stream = None
        self._lock = threading.Lock()
        self._interrupted = False

    @property
    def config(self) -> AudioIOConfig:
        return self._config

    async def play(self, unit: AudioUnit) -> bool:
        """Play one unit to completion. Returns True if :meth:`stop` cut it short."""
        try:
            sd = _require_sounddevice()
        except RuntimeError as e:
            raise AudioDeviceError(str(e)) from e

        data = unit.samples.reshape(-1, 1)
        position = 0
        done = threading.Event()

        def callback(outdata, frames, time_info, status):  # noqa: ANN001
            nonlocal position
            if status:
                logger.debug(f"Output status: {status}")
            chunk = data[position : position + frames]
            outdata[: len(chunk)] = chunk
            if len(chunk) < frames:
                outdata[len(chunk) :] = 0
                raise sd.CallbackStop
            position += frames

        self._interrupted = False
        try:
            stream = sd.OutputStream(
                samplerate=unit.sample_rate,
                channels=1,
                dtype="float32",
                callback=callback,
                finished_callback=done.set,
            )
            with self._lock:
                self._stream = stream
            await asyncio.to_thread(stream.start)
        except sd.PortAudioError as e:
            self._release_stream()
            raise AudioDeviceError(f"could not open audio output: {e}") from e

        try:
            finished = await asyncio.to_thread(done.wait, unit.duration_s + self._config.playback_grace_s)
            if not finished:
                logger.warning(f"[VOICE][AUDIO] playback overran {unit.duration_s:.2f}s; aborting")
        finally:
            self._release_stream()
        return self._interrupted

    def stop(self) -> None:
        """Halt current playback immediately. Safe when idle."""
        with self._lock:
            stream = self._stream
        if stream is None:
            return
        self._interrupted = True
        try:
            stream.abort()
        except Exception as e:
            logger.debug(f"[VOICE][AUDIO] abort failed: {e}")

    def close(self) -> None:
        self.stop()
        self._release_stream()

    def _release_stream(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.close()
        except Exception as e:
            logger.debug(f"[VOICE][AUDIO] close failed: {e}")


def probe_microphone(config: AudioIOConfig | None = None) -> None:
    """Check that an input device is usable with our capture settings.

    Raises:
        MicrophonePermissionError: If no usable input device is available.
    """
    cfg = config or AudioIOConfig()
    try:
        sd = _require_sounddevice()
        sd.check_input_settings(samplerate=cfg.sample_rate, channels=cfg.channels, dtype=cfg.dtype)
    except RuntimeError as e:
        raise MicrophonePermissionError(str(e)) from e
    except Exception as e:
        raise MicrophonePermissionError(f"microphone unavailable: {e}") from e


class MicrophoneStream:
    """Microphone capture. Frames are int16 arrays shaped [samples, channels]."""

    def __init__(self, config: AudioIOConfig | None = None, *, events: EventChannel | None = None) -> None:
        self._config = config or AudioIOConfig()
        self._events = events
        self._stream = None
        self._frames: asyncio.Queue[np.ndarray] | None = None
        self._last_volume_at = 0.0

    @property
    def config(self) -> AudioIOConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    async def open(self) -> None:
        """Start capture. Raises MicrophonePermissionError if the device is refused."""
        if self._stream is not None:
            return
        try:
            sd = _require_sounddevice()
        except RuntimeError as e:
            raise MicrophonePermissionError(str(e)) from e

        loop = asyncio.get_running_loop()
        frames: asyncio.Queue[np.ndarray] = asyncio.Queue()
        self._frames = frames

        def callback(indata, n_frames, time_info, status):  # noqa: ANN001
            if status:
                logger.debug(f"Input status: {status}")
            chunk = indata.copy()
            try:
                loop.call_soon_threadsafe(frames.put_nowait, chunk)
            except RuntimeError:
                return  # loop closed during teardown
            self._report_volume(chunk)

        try:
            stream = sd.InputStream(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype=self._config.dtype,
                blocksize=int(self._config.sample_rate * self._config.block_ms / 1000),
                callback=callback,
            )
            await asyncio.to_thread(stream.start)
        except Exception as e:
            self._frames = None
            raise MicrophonePermissionError(f"microphone access failed: {e}") from e
        self._stream = stream
        logger.info(f"[VOICE][AUDIO] microphone open sr={self._config.sample_rate}")

    async def read(self, timeout: float) -> np.ndarray | None:
        """Next captured frame, or None if nothing arrived within ``timeout``."""
        if self._frames is None:
            return None
        try:
            return await asyncio.wait_for(self._frames.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[np.ndarray]:
        """All frames captured since the last call, without waiting."""
        out: list[np.ndarray] = []
        if self._frames is None:
            return out
        while True:
            try:
                out.append(self._frames.get_nowait())
            except asyncio.QueueEmpty:
                return out

    def close(self) -> None:
        """Stop capture and release the device. Idempotent."""
        stream, self._stream = self._stream, None
        self._frames = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.debug(f"[VOICE][AUDIO] microphone close failed: {e}")
        logger.info("[VOICE][AUDIO] microphone closed")

    def _report_volume(self, chunk: np.ndarray) -> None:
        if self._events is None:
            return
        now = time.monotonic()
        if now - self._last_volume_at < self._config.volume_interval_s:
            return
        self._last_volume_at = now
        rms = float(np.sqrt(np.mean(np.square(chunk.astype(np.float32) / 32768.0))))
        self._events.publish_threadsafe(VolumeChanged(level=min(1.0, rms)))
