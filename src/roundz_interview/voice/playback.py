"""Speech output queue.

text -> TTS provider -> decode -> FIFO -> speaker

Each ``speak`` call reserves its place in the queue before synthesis starts,
so play order always equals call order even when synthesis requests finish
out of order. At most one unit plays at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Protocol

from roundz_interview.errors import AudioDecodeError, AudioDeviceError, NetworkError, SessionStateError
from roundz_interview.events import ComponentError, EventChannel, PlaybackFinished, PlaybackIdle, PlaybackStarted
from roundz_interview.voice.audio_io import AudioUnit, decode_audio
from roundz_interview.voice.tts import TTSProvider

logger = logging.getLogger(__name__)


class AudioPlayer(Protocol):
    async def play(self, unit: AudioUnit) -> bool: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


class _Slot:
    __slots__ = ("text", "unit", "ready")

    def __init__(self, text: str) -> None:
        self.text = text
        self.unit: AudioUnit | None = None
        self.ready = asyncio.Event()


class SpeechOutputQueue:
    def __init__(
        self,
        *,
        tts: TTSProvider,
        player: AudioPlayer,
        events: EventChannel | None = None,
    ) -> None:
        self._tts = tts
        self._player = player
        self._events = events
        self._slots: deque[_Slot] = deque()
        self._current: _Slot | None = None
        self._worker: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = True

    @property
    def is_busy(self) -> bool:
        """True while a unit is playing or any speak request is pending."""
        return self._current is not None or bool(self._slots)

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def queued_units(self) -> int:
        """Decoded units waiting for their turn."""
        return sum(1 for s in self._slots if s.unit is not None)

    async def open(self) -> None:
        """Acquire the synthesis provider. Raises InitializationError if unusable."""
        await self._tts.initialize()
        self._closed = False

    async def speak(self, text: str) -> AudioUnit | None:
        """
        Synthesize ``text`` and queue it for playback.

        Returns:
            The queued unit, or None if ``stop()`` ran while it was synthesizing.

        Raises:
            NetworkError: If synthesis fails or returns an undecodable payload.
        """
        if self._closed:
            raise SessionStateError("speech output is not open")
        text = (text or "").strip()
        if not text:
            raise ValueError("Cannot speak empty text")

        slot = _Slot(text)
        self._slots.append(slot)
        self._idle.clear()

        try:
            payload = await self._tts.synthesize(text)
            unit = decode_audio(payload, sample_rate=self._tts.sample_rate)
        except NetworkError as e:
            self._discard(slot)
            logger.warning(f"[VOICE][TTS] speak failed: {e}")
            raise
        except AudioDecodeError as e:
            self._discard(slot)
            logger.warning(f"[VOICE][TTS] undecodable payload: {e}")
            raise NetworkError(f"Malformed audio payload: {e}") from e
        except BaseException:
            self._discard(slot)
            raise

        if slot not in self._slots:
            logger.info(f"[VOICE][TTS] dropped synthesized unit after stop text={text[:40]!r}")
            return None

        slot.unit = unit
        slot.ready.set()
        self._ensure_worker()
        return unit

    def stop(self) -> None:
        """Clear the queue and halt current playback. Safe when idle."""
        was_busy = self.is_busy
        for slot in self._slots:
            slot.ready.set()
        self._slots.clear()

        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()

        self._player.stop()
        self._current = None
        self._idle.set()
        if was_busy:
            logger.info("[VOICE][AUDIO] playback stopped")
            self._publish(PlaybackIdle())

    async def wait_idle(self) -> None:
        """Wait until nothing is playing or pending."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop playback and release the output device and provider client once."""
        if self._closed:
            return
        self._closed = True
        worker = self._worker
        self.stop()
        if worker is not None:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        try:
            self._player.close()
        finally:
            await self._tts.close()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="speech-output")

    async def _run(self) -> None:
        try:
            while self._slots:
                slot = self._slots[0]
                await slot.ready.wait()
                if self._slots and self._slots[0] is slot:
                    self._slots.popleft()
                if slot.unit is None:
                    continue

                self._current = slot
                self._publish(PlaybackStarted(text=slot.text))
                interrupted = False
                try:
                    interrupted = await self._player.play(slot.unit)
                except AudioDeviceError as e:
                    logger.warning(f"[VOICE][AUDIO] playback failed: {e}")
                    self._publish(ComponentError(operation="speech_output", error=e))
                except Exception as e:
                    logger.exception(f"[VOICE][AUDIO] playback crashed: {e}")
                    error = AudioDeviceError(f"playback failed: {e}")
                    self._publish(ComponentError(operation="speech_output", error=error))
                finally:
                    self._current = None
                self._publish(PlaybackFinished(text=slot.text, interrupted=interrupted))
        finally:
            if self._worker is asyncio.current_task():
                self._worker = None
                if not self._slots:
                    self._idle.set()
                    self._publish(PlaybackIdle())

    def _discard(self, slot: _Slot) -> None:
        try:
            self._slots.remove(slot)
        except ValueError:
            pass
        slot.ready.set()
        if not self.is_busy and self._worker is None:
            self._idle.set()

    def _publish(self, event) -> None:  # noqa: ANN001
        if self._events is not None:
            self._events.publish(event)
