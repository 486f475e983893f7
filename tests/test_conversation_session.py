"""
Tests for ConversationSession.

Voice components are replaced by in-module fakes; HTTP providers use
httpx.MockTransport.
"""

import asyncio
import io
import json
import wave

import httpx
import numpy as np
import pytest

from roundz_interview.config import Settings
from roundz_interview.errors import (
    ErrorKind,
    InitializationError,
    MicrophonePermissionError,
    NetworkError,
    SessionStateError,
)
from roundz_interview.events import ComponentError, EventChannel, PlaybackIdle
from roundz_interview.interview.backend import ConversationBackendBase, LoggingConversationBackend
from roundz_interview.interview.phases import PHASE_SCRIPTS
from roundz_interview.interview.schemas import Phase, SessionStatus, Speaker
from roundz_interview.interview.session import ConversationSession, SessionConfig, build_session
from roundz_interview.interview.transcript import TranscriptStore, backup_key
from roundz_interview.voice.playback import SpeechOutputQueue
from roundz_interview.voice.stt import SpeechInputChannel, SpeechInputMode
from roundz_interview.voice.tts import ElevenLabsTTS, TTSConfig, TTSProvider


class FakeTTS(TTSProvider):
    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.closed = False

    async def synthesize(self, text: str) -> bytes:
        self.spoken.append(text)
        return np.zeros(160, dtype="<i2").tobytes()

    async def close(self) -> None:
        self.closed = True


class FakePlayer:
    def __init__(self, *, fail_close: bool = False) -> None:
        self.played = 0
        self._fail_close = fail_close

    async def play(self, unit) -> bool:
        self.played += 1
        await asyncio.sleep(0.005)
        return False

    def stop(self) -> None:
        pass

    def close(self) -> None:
        if self._fail_close:
            raise RuntimeError("device vanished")


class FakeChannel(SpeechInputChannel):
    mode = SpeechInputMode.LOCAL

    def __init__(self, events: EventChannel, *, deny: int = 0, connect_error: Exception | None = None) -> None:
        super().__init__(events=events)
        self.deny = deny
        self.connect_error = connect_error
        self.starts = 0
        self.closes = 0
        self._listening = False

    @property
    def listening(self) -> bool:
        return self._listening

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def start(self) -> None:
        self.starts += 1
        if self.deny:
            self.deny -= 1
            raise MicrophonePermissionError("microphone access denied")
        if not self._listening:
            self._listening = True
            self._set_listening_event(True)

    async def stop(self) -> None:
        if self._listening:
            self._listening = False
            self._set_listening_event(False)

    async def close(self) -> None:
        self.closes += 1
        await self.stop()

    def hear(self, text: str, *, final: bool) -> None:
        self._emit_transcript(text, final)


class RecordingBackend(ConversationBackendBase):
    def __init__(self) -> None:
        self.messages: list[str] = []
        self.closed = False

    async def send_system_message(self, text: str) -> None:
        self.messages.append(text)

    async def close(self) -> None:
        self.closed = True


def _session(
    *,
    tts: TTSProvider | None = None,
    player: FakePlayer | None = None,
    channel_kwargs: dict | None = None,
    backend: ConversationBackendBase | None = None,
    transcript: TranscriptStore | None = None,
    probe=None,
    **config,
):
    events = EventChannel()
    output = SpeechOutputQueue(tts=tts or FakeTTS(), player=player or FakePlayer(), events=events)
    channel = FakeChannel(events, **(channel_kwargs or {}))
    session = ConversationSession(
        output=output,
        channel=channel,
        events=events,
        transcript=transcript,
        backend=backend or LoggingConversationBackend(),
        config=SessionConfig(**{"interview_id": "int-1", "settle_delay_s": 0.0, "greet_on_start": False, **config}),
        microphone_probe=probe,
    )
    return session, channel, output


@pytest.mark.asyncio
async def test_start_call_connects_and_listens() -> None:
    session, channel, _ = _session()

    await session.start_call()
    await session.events.drain()

    state = session.state
    assert state.connected
    assert state.listening
    assert state.status is SessionStatus.LISTENING
    assert channel.starts == 1
    await session.stop_call()


@pytest.mark.asyncio
async def test_start_call_greets_with_current_phase_opening() -> None:
    tts = FakeTTS()
    session, _, _ = _session(tts=tts, greet_on_start=True)

    await session.start_call()

    assert tts.spoken == [PHASE_SCRIPTS[Phase.FIT].opening]
    entries = session.transcript.entries
    assert [(e.speaker, e.text) for e in entries] == [(Speaker.AI, PHASE_SCRIPTS[Phase.FIT].opening)]
    await session.stop_call()


@pytest.mark.asyncio
async def test_tts_server_error_is_recorded_and_nothing_is_queued() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="synthesis unavailable"))
    tts = ElevenLabsTTS(TTSConfig(api_key="k", verify_on_start=False), transport=transport)
    session, _, output = _session(tts=tts, auto_listen=False)
    await session.start_call()

    with pytest.raises(NetworkError):
        await session.speak("Tell me about a project you are proud of.")

    state = session.state
    assert state.error is not None
    assert state.error.kind is ErrorKind.NETWORK
    assert state.error.operation == "speech_output"
    assert not state.error.fatal
    assert state.speaking is False
    assert state.connected
    assert output.queued_units == 0
    assert len(session.transcript) == 0
    await session.stop_call()


@pytest.mark.asyncio
async def test_speech_output_error_is_cleared_by_next_success() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, content=np.zeros(160, dtype="<i2").tobytes())

    tts = ElevenLabsTTS(TTSConfig(api_key="k", verify_on_start=False), transport=httpx.MockTransport(handler))
    session, _, output = _session(tts=tts, player=FakePlayer(), auto_listen=False)
    await session.start_call()

    with pytest.raises(NetworkError):
        await session.speak("first")
    entry = await session.speak("second")
    await output.wait_idle()

    assert entry is not None and entry.speaker is Speaker.AI
    assert session.state.error is None
    await session.stop_call()


@pytest.mark.asyncio
async def test_final_transcript_becomes_one_candidate_entry() -> None:
    session, channel, _ = _session()
    await session.start_call()

    channel.hear("I think", final=False)
    await session.events.drain()
    assert session.state.interim_text == "I think"

    channel.hear("I think two weighings", final=True)
    await session.events.drain()

    entries = session.transcript.entries
    assert len(entries) == 1
    assert entries[0].speaker is Speaker.CANDIDATE
    assert entries[0].text == "I think two weighings"
    assert session.state.interim_text == ""
    await session.stop_call()


@pytest.mark.asyncio
async def test_muted_session_records_nothing() -> None:
    session, channel, _ = _session()
    await session.start_call()

    session.set_muted(True)
    channel.hear("off the record", final=True)
    await session.events.drain()

    assert session.state.muted
    assert len(session.transcript) == 0
    await session.stop_call()


@pytest.mark.asyncio
async def test_permission_denied_before_call_skips_listening() -> None:
    def deny() -> None:
        raise MicrophonePermissionError("no input device")

    session, channel, _ = _session(probe=deny)

    await session.start_call()

    state = session.state
    assert state.error is not None
    assert state.error.kind is ErrorKind.PERMISSION
    assert state.connected
    assert not state.listening
    assert channel.starts == 0
    await session.stop_call()


@pytest.mark.asyncio
async def test_second_consecutive_permission_refusal_is_fatal() -> None:
    def deny() -> None:
        raise MicrophonePermissionError("no input device")

    session, channel, _ = _session(probe=deny, channel_kwargs={"deny": 1})
    await session.start_call()

    assert await session.start_listening() is False

    state = session.state
    assert state.status is SessionStatus.ERROR
    assert not state.connected
    assert state.error is not None and state.error.fatal
    assert state.error.kind is ErrorKind.PERMISSION
    assert channel.closes == 1


@pytest.mark.asyncio
async def test_initialization_failure_sets_error_and_allows_retry() -> None:
    session, channel, _ = _session(channel_kwargs={"connect_error": InitializationError("recognizer model missing")})

    with pytest.raises(InitializationError):
        await session.start_call()

    state = session.state
    assert state.status is SessionStatus.ERROR
    assert not state.connected
    assert state.error is not None
    assert state.error.kind is ErrorKind.INITIALIZATION
    assert state.error.operation == "connection"

    channel.connect_error = None
    await session.start_call()
    assert session.state.connected
    await session.stop_call()


@pytest.mark.asyncio
async def test_next_phase_reframes_greets_and_resumes_listening() -> None:
    tts = FakeTTS()
    backend = RecordingBackend()
    session, channel, _ = _session(tts=tts, backend=backend)
    await session.start_call()

    phase = await session.next_phase()
    await session.events.drain()

    assert phase is Phase.TECH
    assert session.state.current_phase is Phase.TECH
    assert backend.messages[0].startswith("PHASE TRANSITION: The interview is now moving to the TECH phase.")
    assert tts.spoken == [PHASE_SCRIPTS[Phase.TECH].opening]
    assert session.transcript.entries[-1].text == PHASE_SCRIPTS[Phase.TECH].opening
    assert session.state.listening
    assert channel.starts == 2
    await session.stop_call()


@pytest.mark.asyncio
async def test_next_phase_into_done_stops_listening_and_then_is_a_no_op() -> None:
    session, channel, _ = _session()
    await session.start_call()

    assert await session.next_phase() is Phase.TECH
    assert await session.next_phase() is Phase.BRAINTEASER
    assert await session.next_phase() is Phase.DONE
    await session.events.drain()

    assert not session.state.listening
    assert not channel.listening
    assert await session.next_phase() is None
    assert session.phases.completed_phases() == [Phase.FIT, Phase.TECH, Phase.BRAINTEASER]
    await session.stop_call()


@pytest.mark.asyncio
async def test_transition_message_failure_is_not_fatal() -> None:
    class DownBackend(RecordingBackend):
        async def send_system_message(self, text: str) -> None:
            raise NetworkError("backend down", status_code=502)

    tts = FakeTTS()
    session, _, _ = _session(tts=tts, backend=DownBackend())
    await session.start_call()

    assert await session.next_phase() is Phase.TECH

    state = session.state
    assert state.connected
    assert state.error is not None and state.error.operation == "system_message"
    assert tts.spoken == [PHASE_SCRIPTS[Phase.TECH].opening]
    await session.stop_call()


@pytest.mark.asyncio
async def test_commands_require_a_connected_session() -> None:
    session, _, _ = _session()

    with pytest.raises(SessionStateError):
        await session.speak("hello?")
    with pytest.raises(SessionStateError):
        await session.send_system_message("framing")


@pytest.mark.asyncio
async def test_start_call_twice_is_rejected() -> None:
    session, _, _ = _session()
    await session.start_call()

    with pytest.raises(SessionStateError):
        await session.start_call()
    await session.stop_call()


@pytest.mark.asyncio
async def test_stop_call_releases_everything_even_if_output_release_fails() -> None:
    backend = RecordingBackend()
    tts = FakeTTS()
    session, channel, _ = _session(tts=tts, player=FakePlayer(fail_close=True), backend=backend)
    await session.start_call()

    await session.stop_call()
    await session.stop_call()

    assert channel.closes == 1
    assert tts.closed
    assert backend.closed
    state = session.state
    assert state.status is SessionStatus.ENDED
    assert not state.connected


@pytest.mark.asyncio
async def test_fatal_connection_event_moves_session_to_error() -> None:
    session, channel, _ = _session()
    await session.start_call()

    session.events.publish(
        ComponentError(operation="connection", error=NetworkError("socket closed by provider"), fatal=True)
    )
    await session.events.drain()

    state = session.state
    assert state.status is SessionStatus.ERROR
    assert not state.connected
    assert state.error is not None and state.error.operation == "connection"
    assert channel.closes == 1
    await session.stop_call()


@pytest.mark.asyncio
async def test_scoring_failure_writes_local_backup(tmp_path) -> None:
    transcript = TranscriptStore(
        scoring_url="http://scoring.test",
        backup_dir=tmp_path,
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    session, channel, _ = _session(transcript=transcript)
    await session.start_call()
    channel.hear("I would weigh three against three", final=True)
    await session.events.drain()

    with pytest.raises(NetworkError):
        await session.submit_for_scoring()

    backup = tmp_path / f"{backup_key('int-1')}.json"
    data = json.loads(backup.read_text(encoding="utf-8"))
    assert data["interviewId"] == "int-1"
    assert data["transcript"][0]["text"] == "I would weigh three against three"
    assert session.state.error is not None and session.state.error.operation == "scoring"
    await session.stop_call()


@pytest.mark.asyncio
async def test_scoring_sends_session_metadata(tmp_path) -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={"overallScore": 81, "fitScore": 85, "techScore": 77, "brainScore": 80, "feedback": "Good."},
        )

    transcript = TranscriptStore(
        scoring_url="http://scoring.test",
        backup_dir=tmp_path,
        transport=httpx.MockTransport(handler),
    )
    session, _, _ = _session(transcript=transcript, candidate_name="Ada")
    await session.start_call()
    for _ in range(3):
        await session.next_phase()

    result = await session.submit_for_scoring()
    await session.stop_call()

    assert result.overall_score == 81
    assert captured["interviewId"] == "int-1"
    assert captured["metadata"]["candidateName"] == "Ada"
    assert captured["metadata"]["completedPhases"] == ["FIT", "TECH", "BRAINTEASER"]
    assert captured["metadata"]["duration"] >= 0
    assert not list(tmp_path.iterdir())


@pytest.mark.asyncio
async def test_injected_empty_transcript_store_is_kept(tmp_path) -> None:
    transcript = TranscriptStore(scoring_url="http://scoring.test", backup_dir=tmp_path)
    assert len(transcript) == 0

    session, _, _ = _session(transcript=transcript)

    assert session.transcript is transcript


def test_build_session_wires_settings_into_collaborators(tmp_path) -> None:
    settings = Settings(
        _env_file=None,
        stt_mode="local",
        scoring_api_url="http://scoring.example",
        scoring_timeout=12.0,
        transcript_backup_dir=str(tmp_path),
        settle_delay_ms=250,
    )

    session = build_session(settings)

    assert session.transcript.scoring_url == "http://scoring.example"
    assert session.transcript.backup_dir == tmp_path
    assert len(session.transcript) == 0
    assert session.config.settle_delay_s == pytest.approx(0.25)
    assert session.state.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_stale_playback_idle_does_not_clear_speaking_while_synthesizing() -> None:
    class GatedTTS(FakeTTS):
        def __init__(self) -> None:
            super().__init__()
            self.gate = asyncio.Event()

        async def synthesize(self, text: str) -> bytes:
            await self.gate.wait()
            return await super().synthesize(text)

    tts = GatedTTS()
    session, _, output = _session(tts=tts, auto_listen=False)
    await session.start_call()

    pending = asyncio.create_task(session.speak("Walk me through your last project."))
    while not output.is_busy:
        await asyncio.sleep(0)
    session.events.publish(PlaybackIdle())
    await session.events.drain()
    assert session.state.speaking
    assert session.state.status is SessionStatus.SPEAKING

    tts.gate.set()
    await pending
    await output.wait_idle()
    await session.events.drain()
    assert not session.state.speaking
    await session.stop_call()


@pytest.mark.asyncio
async def test_malformed_opening_audio_does_not_break_phase_transition() -> None:
    class TruncatingTTS(FakeTTS):
        async def synthesize(self, text: str) -> bytes:
            buf = io.BytesIO()
            with wave.open(buf, "wb") as wf:
                wf.setnchannels(2)
                wf.setsampwidth(2)
                wf.setframerate(16000)
                wf.writeframes(np.zeros((100, 2), dtype="<i2").tobytes())
            return buf.getvalue()[:-2]

    session, channel, _ = _session(tts=TruncatingTTS())
    await session.start_call()

    assert await session.next_phase() is Phase.TECH
    await session.events.drain()

    state = session.state
    assert state.connected
    assert state.listening
    assert state.error is not None and state.error.operation == "speech_output"
    assert channel.starts == 2
    assert len(session.transcript) == 0
    await session.stop_call()
