"""Continuous on-device speech recognition.

``WhisperRecognizer`` segments microphone audio by energy and transcribes it
with faster-whisper: interim text while the candidate is speaking, a final
segment once they pause. ``LocalSpeechChannel`` keeps a recognizer running
and restarts it under a bounded back-off when a run ends unexpectedly.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

import numpy as np

from roundz_interview.errors import InitializationError, InterviewError, MicrophonePermissionError, RecognizerError
from roundz_interview.events import ComponentError, EventChannel
from roundz_interview.voice.stt import RecognitionResult, Recognizer, RetryPolicy, SpeechInputChannel, SpeechInputMode

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    async def open(self) -> None: ...

    async def read(self, timeout: float) -> np.ndarray | None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class WhisperRecognizerConfig:
    model_size: str = "small"
    # Default to CPU to avoid hard crashes when CUDA/cuDNN aren't present.
    device: str = "cpu"  # cpu|cuda|auto
    compute_type: str | None = None  # e.g. int8, float16
    language: str | None = None
    sample_rate: int = 16000
    speech_rms_threshold: float = 0.015
    silence_s: float = 0.8
    interim_interval_s: float = 1.0
    max_utterance_s: float = 30.0
    stall_timeout_s: float = 5.0
    beam_size: int = 1


class WhisperRecognizer(Recognizer):
    """faster-whisper over live microphone audio."""

    def __init__(self, config: WhisperRecognizerConfig | None = None, *, microphone: FrameSource) -> None:
        self._config = config or WhisperRecognizerConfig()
        self._mic = microphone
        self._model = None

    @property
    def config(self) -> WhisperRecognizerConfig:
        return self._config

    def _load_model(self):
        if self._model is not None:
            return self._model

        try:
            from faster_whisper import WhisperModel  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "faster-whisper is required for local recognition. Install with: pip install -e '.[local-stt]'"
            ) from e

        device = self._config.device
        if device == "auto":
            # Be conservative: prefer CPU unless user explicitly requests CUDA.
            device = "cpu"

        kwargs = {}
        if self._config.compute_type:
            kwargs["compute_type"] = self._config.compute_type

        self._model = WhisperModel(self._config.model_size, device=device, **kwargs)
        return self._model

    async def prepare(self) -> None:
        try:
            await asyncio.to_thread(self._load_model)
        except Exception as e:
            raise InitializationError(f"Local speech recognizer unavailable: {e}") from e
        logger.info(f"[VOICE][STT] whisper model ready size={self._config.model_size}")

    async def recognize(self) -> AsyncIterator[RecognitionResult]:
        cfg = self._config
        await self.prepare()
        await self._mic.open()

        buffer: list[np.ndarray] = []
        in_speech = False
        silence = 0.0
        speech = 0.0
        since_interim = 0.0
        try:
            while True:
                frame = await self._mic.read(timeout=cfg.stall_timeout_s)
                if frame is None:
                    raise RecognizerError(f"no microphone audio for {cfg.stall_timeout_s:.1f}s")

                seconds = len(frame) / float(cfg.sample_rate)
                rms = float(np.sqrt(np.mean(np.square(frame.astype(np.float32) / 32768.0))))
                if rms >= cfg.speech_rms_threshold:
                    in_speech = True
                    silence = 0.0
                elif in_speech:
                    silence += seconds
                if not in_speech:
                    continue

                buffer.append(frame)
                speech += seconds
                since_interim += seconds

                if silence >= cfg.silence_s or speech >= cfg.max_utterance_s:
                    result = await self._transcribe(buffer, is_final=True)
                    buffer = []
                    in_speech = False
                    silence = speech = since_interim = 0.0
                    if result is not None:
                        yield result
                elif since_interim >= cfg.interim_interval_s:
                    since_interim = 0.0
                    result = await self._transcribe(buffer, is_final=False)
                    if result is not None:
                        yield result
        finally:
            self._mic.close()

    async def _transcribe(self, frames: list[np.ndarray], *, is_final: bool) -> RecognitionResult | None:
        audio = np.concatenate(frames, axis=0)
        if audio.ndim > 1:
            audio = audio[:, 0]
        samples = audio.astype(np.float32) / 32768.0

        def _run() -> RecognitionResult | None:
            model = self._load_model()
            segments, _info = model.transcribe(
                samples,
                language=self._config.language,
                beam_size=self._config.beam_size,
                vad_filter=False,
            )
            texts: list[str] = []
            logprobs: list[float] = []
            for s in segments:
                if s.text:
                    texts.append(s.text.strip())
                    logprobs.append(s.avg_logprob)
            text = " ".join(t for t in texts if t).strip()
            if not text:
                return None
            confidence = None
            if logprobs:
                confidence = max(0.0, min(1.0, math.exp(sum(logprobs) / len(logprobs))))
            return RecognitionResult(text=text, is_final=is_final, confidence=confidence)

        try:
            return await asyncio.to_thread(_run)
        except Exception as e:
            raise RecognizerError(f"transcription failed: {e}") from e

    async def close(self) -> None:
        self._mic.close()


class LocalSpeechChannel(SpeechInputChannel):
    """Keeps a recognizer running while the channel should be listening."""

    mode = SpeechInputMode.LOCAL

    def __init__(
        self,
        recognizer: Recognizer,
        *,
        events: EventChannel | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(events=events)
        self._recognizer = recognizer
        self._retry = retry or RetryPolicy()
        self._should_listen = False
        self._task: asyncio.Task | None = None
        self._restarts = 0

    @property
    def listening(self) -> bool:
        return self._should_listen

    @property
    def restarts(self) -> int:
        """Consecutive unexpected run endings since the last healthy run."""
        return self._restarts

    async def connect(self) -> None:
        await self._recognizer.prepare()

    async def start(self) -> None:
        if self._should_listen:
            return
        self._should_listen = True
        self._restarts = 0
        self._task = asyncio.create_task(self._supervise(), name="local-stt")
        logger.info("[VOICE][STT] listening (local)")
        self._set_listening_event(True)

    async def stop(self) -> None:
        if not self._should_listen:
            return
        self._should_listen = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._recognizer.close()
        logger.info("[VOICE][STT] stopped listening (local)")
        self._set_listening_event(False)

    async def _supervise(self) -> None:
        while self._should_listen:
            started = time.monotonic()
            produced = False
            failed = False
            try:
                async for result in self._recognizer.recognize():
                    produced = True
                    self._restarts = 0
                    self._emit_transcript(result.text, result.is_final, result.confidence)
                logger.info("[VOICE][STT] recognition run ended")
            except MicrophonePermissionError as e:
                await self._give_up(e)
                return
            except InterviewError as e:
                failed = True
                logger.warning(f"[VOICE][STT] recognition run failed: {e}")

            if not self._should_listen:
                return
            # A failed run counts toward the bound however long it lasted.
            if produced or (not failed and time.monotonic() - started >= self._retry.healthy_after_s):
                self._restarts = 0

            self._restarts += 1
            if self._restarts > self._retry.max_attempts:
                await self._give_up(
                    RecognizerError(f"speech recognition failed {self._restarts} times in a row; giving up")
                )
                return

            delay = self._retry.delay_for(self._restarts)
            logger.info(
                f"[VOICE][STT] restarting recognition attempt={self._restarts}/{self._retry.max_attempts} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    async def _give_up(self, error: InterviewError) -> None:
        logger.error(f"[VOICE][STT] {error}")
        self._should_listen = False
        self._task = None
        await self._recognizer.close()
        self._publish(ComponentError(operation="speech_input", error=error, fatal=True))
        self._set_listening_event(False)
