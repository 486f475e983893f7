"""
Pydantic schemas for the interview session.

Defines phases, transcript entries, session state and the scoring payloads.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from roundz_interview.errors import ErrorKind


def _now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """Phases of the interview, in their fixed order."""

    FIT = "FIT"
    TECH = "TECH"
    BRAINTEASER = "BRAINTEASER"
    DONE = "DONE"


PHASE_ORDER: tuple[Phase, ...] = (Phase.FIT, Phase.TECH, Phase.BRAINTEASER, Phase.DONE)


class Speaker(str, Enum):
    """Who produced a transcript entry."""

    AI = "ai"
    CANDIDATE = "candidate"


class SessionStatus(str, Enum):
    """Lifecycle of a conversation session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SPEAKING = "speaking"
    LISTENING = "listening"
    ENDED = "ended"
    ERROR = "error"


class TranscriptEntry(BaseModel):
    """One timestamped utterance attributed to the AI or the candidate."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Identifier unique within the session")
    speaker: Speaker = Field(..., description="Who spoke")
    text: str = Field(..., description="Spoken text")
    timestamp: datetime = Field(default_factory=_now_utc, description="Capture time")
    confidence: float | None = Field(default=None, ge=0.0, le=1.0, description="Recognition confidence")

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ErrorInfo(BaseModel):
    """Latest error surfaced to the session's consumers."""

    kind: ErrorKind
    operation: str = Field(..., description="Activity that failed (speech_output, speech_input, ...)")
    message: str
    fatal: bool = False


class SessionState(BaseModel):
    """Observable state of a session. Written only by ConversationSession."""

    status: SessionStatus = SessionStatus.IDLE
    connected: bool = False
    listening: bool = False
    speaking: bool = False
    muted: bool = False
    current_phase: Phase = Phase.FIT
    interim_text: str = ""
    error: ErrorInfo | None = None
    volume_level: float = 0.0


class ScoringMetadata(BaseModel):
    """Session metadata sent alongside the transcript for scoring."""

    model_config = ConfigDict(populate_by_name=True)

    candidate_name: str | None = Field(default=None, alias="candidateName")
    duration: float = Field(..., ge=0.0, description="Interview duration in seconds")
    completed_phases: list[Phase] = Field(default_factory=list, alias="completedPhases")


class ScoreResult(BaseModel):
    """Structured score returned by the scoring service."""

    model_config = ConfigDict(populate_by_name=True)

    overall_score: float = Field(..., alias="overallScore")
    fit_score: float = Field(..., alias="fitScore")
    tech_score: float = Field(..., alias="techScore")
    brain_score: float = Field(..., alias="brainScore")
    feedback: str = ""
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
