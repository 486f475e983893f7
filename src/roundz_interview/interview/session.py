"""Conversation session (glue layer).

This module orchestrates:
phase -> system message -> TTS queue -> playback -> settle -> STT channel -> transcript

It owns the observable SessionState and is the only writer of it. Voice
components report back through the EventChannel; one pump task applies their
events in order.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from roundz_interview.config import Settings, get_settings
from roundz_interview.errors import (
    ErrorKind,
    InitializationError,
    InterviewError,
    MicrophonePermissionError,
    NetworkError,
    SessionStateError,
)
from roundz_interview.events import (
    ComponentError,
    EventChannel,
    ListeningChanged,
    PlaybackFinished,
    PlaybackIdle,
    PlaybackStarted,
    SessionEvent,
    TranscriptReceived,
    VolumeChanged,
)
from roundz_interview.interview.backend import (
    ConversationBackendBase,
    HttpConversationBackend,
    LoggingConversationBackend,
)
from roundz_interview.interview.phases import PhaseController
from roundz_interview.interview.schemas import (
    ErrorInfo,
    Phase,
    ScoreResult,
    ScoringMetadata,
    SessionState,
    SessionStatus,
    Speaker,
    TranscriptEntry,
)
from roundz_interview.interview.transcript import TranscriptStore
from roundz_interview.voice.playback import SpeechOutputQueue
from roundz_interview.voice.stt import SpeechInputChannel, SpeechInputMode, create_speech_channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionConfig:
    interview_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    candidate_name: str | None = None
    # Pause after a phase greeting finishes before the microphone reopens.
    settle_delay_s: float = 1.0
    greet_on_start: bool = True
    auto_listen: bool = True
    max_permission_failures: int = 2


class ConversationSession:
    """
    Drives one voice interview.

    Commands (start_call, speak, next_phase, ...) are issued by the caller;
    component events are consumed by an internal pump task. Operation-local
    failures are recorded on ``state.error`` and cleared by the next success of
    the same operation. Connection-level failures release every resource and
    leave the session in ``error``.
    """

    def __init__(
        self,
        *,
        output: SpeechOutputQueue,
        channel: SpeechInputChannel,
        events: EventChannel,
        transcript: TranscriptStore | None = None,
        phases: PhaseController | None = None,
        backend: ConversationBackendBase | None = None,
        config: SessionConfig | None = None,
        microphone_probe: Callable[[], None] | None = None,
    ) -> None:
        self._output = output
        self._channel = channel
        self._events = events
        self._transcript = transcript if transcript is not None else TranscriptStore()
        self._phases = phases if phases is not None else PhaseController()
        self._backend = backend if backend is not None else LoggingConversationBackend()
        self._config = config if config is not None else SessionConfig()
        self._probe = microphone_probe

        self._state = SessionState(current_phase=self._phases.current)
        self._pump: asyncio.Task | None = None
        self._transition_lock = asyncio.Lock()
        self._permission_failures = 0
        self._mic_denied = False
        self._started_at: float | None = None
        self._ended_at: float | None = None

    @property
    def state(self) -> SessionState:
        """Get a copy of the current session state."""
        return self._state.model_copy(deep=True)

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def interview_id(self) -> str:
        return self._config.interview_id

    @property
    def transcript(self) -> TranscriptStore:
        return self._transcript

    @property
    def phases(self) -> PhaseController:
        return self._phases

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def duration_s(self) -> float:
        """Seconds since the call connected, frozen once it ends."""
        if self._started_at is None:
            return 0.0
        end = self._ended_at if self._ended_at is not None else time.monotonic()
        return max(0.0, end - self._started_at)

    async def start_call(self) -> None:
        """
        Connect the providers and open the conversation.

        Raises:
            SessionStateError: If the session is not idle or in error.
            InitializationError: If a provider is unreachable or misconfigured.
        """
        if self._state.status not in (SessionStatus.IDLE, SessionStatus.ERROR):
            raise SessionStateError(f"Cannot start a call while {self._state.status.value}")

        logger.info(f"[SESSION] starting call interview={self.interview_id} mode={self._channel.mode.value}")
        self._set(status=SessionStatus.CONNECTING, error=None)
        self._events.bind_loop(asyncio.get_running_loop())
        self._ensure_pump()

        try:
            await self._output.open()
            await self._channel.connect()
        except InitializationError as e:
            logger.error(f"[SESSION] connection failed: {e}")
            await self._release()
            self._set(
                status=SessionStatus.ERROR,
                connected=False,
                listening=False,
                speaking=False,
                error=self._error_info("connection", e, fatal=True),
            )
            raise

        self._started_at = time.monotonic()
        self._ended_at = None
        self._permission_failures = 0
        self._mic_denied = False
        self._set(connected=True, error=None)
        logger.info("[SESSION] connected")

        if self._probe is not None:
            try:
                await asyncio.to_thread(self._probe)
            except MicrophonePermissionError as e:
                await self._permission_denied(e)
                if not self._state.connected:
                    return

        if self._config.greet_on_start:
            await self._speak_and_settle(self._phases.opening_utterance())

        if self._config.auto_listen and self._state.connected and not self._mic_denied:
            await self.start_listening()

    async def stop_call(self) -> None:
        """End the call and release every resource. Safe to call repeatedly."""
        if self._state.status is SessionStatus.ENDED:
            return
        logger.info(f"[SESSION] stopping call interview={self.interview_id}")
        if self._started_at is not None and self._ended_at is None:
            self._ended_at = time.monotonic()
        await self._release()
        await self._stop_pump()
        self._set(
            status=SessionStatus.ENDED,
            connected=False,
            listening=False,
            speaking=False,
            interim_text="",
            volume_level=0.0,
        )

    async def send_system_message(self, text: str) -> None:
        """Forward an out-of-band instruction to the conversation backend."""
        self._require_connected("send a system message")
        try:
            await self._backend.send_system_message(text)
        except NetworkError as e:
            self._record_error("system_message", e)
            raise
        self._clear_error("system_message")

    def set_muted(self, muted: bool) -> None:
        self._channel.set_muted(muted)
        self._set(muted=muted)

    async def speak(self, text: str) -> TranscriptEntry | None:
        """
        Queue interviewer speech.

        Returns:
            The AI transcript entry, or None if playback was stopped before the
            audio was queued.

        Raises:
            SessionStateError: If the session is not connected.
            NetworkError: If synthesis failed. Nothing is queued in that case.
        """
        self._require_connected("speak")
        if not (text or "").strip():
            raise ValueError("Cannot speak empty text")

        self._set(speaking=True)
        try:
            unit = await self._output.speak(text)
        except NetworkError as e:
            self._record_error("speech_output", e)
            self._set(speaking=self._output.is_busy)
            raise
        self._clear_error("speech_output")
        if unit is None:
            return None
        return self._transcript.record(Speaker.AI, text)

    async def start_listening(self) -> bool:
        """
        Open the speech input channel.

        Returns:
            False if microphone access was refused.
        """
        self._require_connected("start listening")
        try:
            await self._channel.start()
        except MicrophonePermissionError as e:
            await self._permission_denied(e)
            return False
        except InterviewError as e:
            self._record_error("speech_input", e)
            raise
        self._permission_failures = 0
        self._mic_denied = False
        self._clear_error("speech_input")
        self._set(listening=True)
        return True

    async def stop_listening(self) -> None:
        await self._channel.stop()
        self._set(listening=False, interim_text="")

    async def next_phase(self) -> Phase | None:
        """
        Advance the interview one phase.

        Returns:
            The new phase, or None if already DONE.
        """
        async with self._transition_lock:
            phase = self._phases.advance()
            if phase is None:
                return None
            self._set(current_phase=phase)
            if not self._state.connected:
                return phase

            try:
                await self.stop_listening()
                try:
                    await self.send_system_message(self._phases.transition_message(phase))
                except NetworkError as e:
                    logger.warning(f"[SESSION] transition message not delivered: {e}")

                await self._speak_and_settle(self._phases.opening_utterance(phase))

                if phase is not Phase.DONE and self._state.connected and not self._mic_denied:
                    await self.start_listening()
            except SessionStateError:
                logger.info(f"[SESSION] call ended during transition to {phase.value}")
            return phase

    async def submit_for_scoring(self) -> ScoreResult:
        """
        Send the transcript and session metadata for scoring.

        A local backup is written when the scoring service cannot be reached.

        Raises:
            NetworkError: If scoring failed.
        """
        metadata = ScoringMetadata(
            candidate_name=self._config.candidate_name,
            duration=round(self.duration_s, 3),
            completed_phases=self._phases.completed_phases(),
        )
        try:
            result = await self._transcript.send_for_scoring(self.interview_id, metadata)
        except NetworkError as e:
            logger.error(f"[SESSION] scoring failed, keeping local backup: {e}")
            self._transcript.persist_locally(self.interview_id)
            self._record_error("scoring", e)
            raise
        self._clear_error("scoring")
        logger.info(f"[SESSION] scored interview={self.interview_id} overall={result.overall_score}")
        return result

    async def _speak_and_settle(self, text: str) -> None:
        try:
            await self.speak(text)
        except NetworkError as e:
            logger.warning(f"[SESSION] greeting not spoken: {e}")
        await self._output.wait_idle()
        await asyncio.sleep(self._config.settle_delay_s)

    async def _permission_denied(self, error: MicrophonePermissionError) -> None:
        self._permission_failures += 1
        self._mic_denied = True
        logger.warning(
            f"[SESSION] microphone refused ({self._permission_failures}/{self._config.max_permission_failures}): {error}"
        )
        if self._permission_failures >= self._config.max_permission_failures:
            await self._fail("speech_input", error)
            return
        self._record_error("speech_input", error)
        self._set(listening=False)

    async def _fail(self, operation: str, error: InterviewError) -> None:
        logger.error(f"[SESSION] {operation} failed fatally: {error}")
        await self._release()
        self._set(
            status=SessionStatus.ERROR,
            connected=False,
            listening=False,
            speaking=False,
            error=self._error_info(operation, error, fatal=True),
        )

    async def _release(self) -> None:
        releases = (
            ("speech_input", self._channel.close),
            ("speech_output", self._output.close),
            ("backend", self._backend.close),
        )
        for name, release in releases:
            try:
                await release()
            except Exception as e:
                logger.error(f"[SESSION] releasing {name} failed: {e}")

    def _require_connected(self, action: str) -> None:
        if not self._state.connected:
            raise SessionStateError(f"Cannot {action}: session is {self._state.status.value}")

    # --- state ---

    def _set(self, **changes) -> None:  # noqa: ANN003
        state = self._state.model_copy(update=changes)
        if state.connected:
            if state.speaking:
                status = SessionStatus.SPEAKING
            elif state.listening:
                status = SessionStatus.LISTENING
            else:
                status = SessionStatus.CONNECTED
            state = state.model_copy(update={"status": status})
        self._state = state

    @staticmethod
    def _error_info(operation: str, error: Exception, *, fatal: bool = False) -> ErrorInfo:
        kind = error.kind if isinstance(error, InterviewError) else ErrorKind.NETWORK
        return ErrorInfo(kind=kind, operation=operation, message=str(error), fatal=fatal)

    def _record_error(self, operation: str, error: Exception) -> None:
        logger.warning(f"[SESSION] {operation} error: {error}")
        self._set(error=self._error_info(operation, error))

    def _clear_error(self, operation: str) -> None:
        err = self._state.error
        if err is not None and err.operation == operation and not err.fatal:
            self._set(error=None)

    # --- events ---

    def _ensure_pump(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._pump_events(), name="session-events")

    async def _stop_pump(self) -> None:
        pump, self._pump = self._pump, None
        if pump is None or pump.done():
            return
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass

    async def _pump_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except Exception:
                logger.exception(f"[SESSION] handling {type(event).__name__} failed")
            finally:
                self._events.task_done()

    async def _handle_event(self, event: SessionEvent) -> None:
        if isinstance(event, TranscriptReceived):
            if not self._state.connected:
                return
            if event.is_final:
                self._transcript.record(Speaker.CANDIDATE, event.text, event.confidence)
                self._set(interim_text="")
                self._clear_error("speech_input")
            else:
                self._set(interim_text=event.text)
        elif isinstance(event, ListeningChanged):
            if event.listening:
                self._set(listening=True)
            else:
                self._set(listening=False, interim_text="")
        elif isinstance(event, VolumeChanged):
            self._set(volume_level=event.level)
        elif isinstance(event, PlaybackStarted):
            self._set(speaking=True)
        elif isinstance(event, PlaybackFinished):
            logger.debug(f"[SESSION] playback finished interrupted={event.interrupted}")
        elif isinstance(event, PlaybackIdle):
            self._set(speaking=self._output.is_busy)
        elif isinstance(event, ComponentError):
            if event.operation == "speech_input" and isinstance(event.error, MicrophonePermissionError):
                await self._permission_denied(event.error)
            elif event.fatal:
                if self._state.connected:
                    await self._fail(event.operation, event.error)
            else:
                self._record_error(event.operation, event.error)


def build_session(
    settings: Settings | None = None,
    *,
    config: SessionConfig | None = None,
    stt_mode: SpeechInputMode | str | None = None,
) -> ConversationSession:
    """Wire a session with its own provider instances from settings."""
    # Lazy imports so importing the session doesn't require audio deps.
    from roundz_interview.voice.audio_io import AudioIO, AudioIOConfig, probe_microphone
    from roundz_interview.voice.tts import ElevenLabsTTS, TTSConfig

    settings = settings or get_settings()
    events = EventChannel()
    audio_config = AudioIOConfig(sample_rate=settings.sample_rate)

    tts = ElevenLabsTTS(
        TTSConfig(
            api_key=settings.elevenlabs_api_key,
            voice_id=settings.elevenlabs_voice_id,
            model_id=settings.elevenlabs_model_id,
            base_url=settings.elevenlabs_base_url,
            stability=settings.tts_stability,
            similarity_boost=settings.tts_similarity_boost,
            sample_rate=settings.sample_rate,
            timeout_s=settings.tts_timeout,
            verify_on_start=settings.tts_verify_on_start,
        )
    )
    output = SpeechOutputQueue(tts=tts, player=AudioIO(audio_config), events=events)
    channel = create_speech_channel(stt_mode or settings.stt_mode, settings=settings, events=events)

    if settings.llm_backend_url:
        backend: ConversationBackendBase = HttpConversationBackend(
            settings.llm_backend_url,
            timeout=settings.llm_backend_timeout,
        )
    else:
        backend = LoggingConversationBackend()

    transcript = TranscriptStore(
        scoring_url=settings.scoring_api_url,
        scoring_timeout=settings.scoring_timeout,
        backup_dir=settings.transcript_backup_dir,
    )

    return ConversationSession(
        output=output,
        channel=channel,
        events=events,
        transcript=transcript,
        phases=PhaseController(),
        backend=backend,
        config=config or SessionConfig(settle_delay_s=settings.settle_delay_ms / 1000.0),
        microphone_probe=functools.partial(probe_microphone, audio_config),
    )
