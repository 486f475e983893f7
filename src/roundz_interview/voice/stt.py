"""Speech-to-text input channels.

Two implementations share one capability set (connect, start, stop, mute,
close) and report transcripts as ``TranscriptReceived`` events:

- ``LocalSpeechChannel``: continuous on-device recognition
- ``StreamingSpeechChannel``: streaming recognition over a websocket

The implementation is picked once per session from ``SpeechInputMode``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator

from roundz_interview.events import EventChannel, ListeningChanged, SessionEvent, TranscriptReceived

if TYPE_CHECKING:
    from roundz_interview.config import Settings

logger = logging.getLogger(__name__)


class SpeechInputMode(str, Enum):
    LOCAL = "local"
    STREAMING = "streaming"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off for restarting recognition."""

    max_attempts: int = 5
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    # A run lasting at least this long counts as healthy and resets the counter.
    healthy_after_s: float = 5.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_s, self.base_delay_s * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    is_final: bool
    confidence: float | None = None


class Recognizer:
    """One recognition run per ``recognize()`` call; the iterator ending means the run ended."""

    async def prepare(self) -> None:
        """Load models or check configuration. Raise InitializationError if unusable."""

    def recognize(self) -> AsyncIterator[RecognitionResult]:
        raise NotImplementedError

    async def close(self) -> None:
        """Release the microphone and any per-run resources."""


class SpeechInputChannel:
    mode: SpeechInputMode

    def __init__(self, *, events: EventChannel | None = None) -> None:
        self._events = events
        self._muted = False

    @property
    def listening(self) -> bool:
        raise NotImplementedError

    @property
    def muted(self) -> bool:
        return self._muted

    async def connect(self) -> None:
        """Open provider connections needed before listening."""

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    def set_muted(self, muted: bool) -> None:
        """Mute or unmute without tearing the channel down."""
        if muted != self._muted:
            logger.info(f"[VOICE][STT] {'muted' if muted else 'unmuted'}")
        self._muted = muted

    async def close(self) -> None:
        await self.stop()

    def _emit_transcript(self, text: str, is_final: bool, confidence: float | None = None) -> None:
        if self._muted:
            return
        text = (text or "").strip()
        if not text:
            return
        self._publish(TranscriptReceived(text=text, is_final=is_final, confidence=confidence))

    def _set_listening_event(self, listening: bool) -> None:
        self._publish(ListeningChanged(listening=listening))

    def _publish(self, event: SessionEvent) -> None:
        if self._events is not None:
            self._events.publish(event)


def create_speech_channel(
    mode: SpeechInputMode | str,
    *,
    settings: "Settings",
    events: EventChannel,
) -> SpeechInputChannel:
    """Build the input channel for ``mode`` with its own microphone."""
    # Lazy imports so the local mode doesn't require websockets and vice versa.
    from roundz_interview.voice.audio_io import AudioIOConfig, MicrophoneStream

    mode = SpeechInputMode(mode)
    microphone = MicrophoneStream(AudioIOConfig(sample_rate=settings.sample_rate), events=events)
    retry = RetryPolicy(
        max_attempts=settings.stt_restart_max_attempts,
        base_delay_s=settings.stt_restart_base_delay,
        max_delay_s=settings.stt_restart_max_delay,
    )

    if mode is SpeechInputMode.LOCAL:
        from roundz_interview.voice.local_stt import (
            LocalSpeechChannel,
            WhisperRecognizer,
            WhisperRecognizerConfig,
        )

        recognizer = WhisperRecognizer(
            WhisperRecognizerConfig(
                model_size=settings.whisper_model_size,
                device=settings.whisper_device,
                language=settings.stt_language,
            ),
            microphone=microphone,
        )
        return LocalSpeechChannel(recognizer, events=events, retry=retry)

    if mode is SpeechInputMode.STREAMING:
        from roundz_interview.voice.streaming_stt import StreamingSpeechChannel, StreamingSTTConfig

        return StreamingSpeechChannel(
            StreamingSTTConfig(
                url=settings.deepgram_url,
                api_key=settings.deepgram_api_key,
                frame_interval_s=settings.stt_frame_interval_ms / 1000.0,
            ),
            microphone=microphone,
            events=events,
        )

    raise ValueError(f"Unsupported speech input mode: {mode}")
