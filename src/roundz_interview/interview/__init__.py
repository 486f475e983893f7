"""Interview orchestration: phases, transcript and the conversation session."""

from roundz_interview.interview.phases import PHASE_SCRIPTS, PhaseController, PhaseScript
from roundz_interview.interview.schemas import (
    PHASE_ORDER,
    ErrorInfo,
    Phase,
    ScoreResult,
    ScoringMetadata,
    SessionState,
    SessionStatus,
    Speaker,
    TranscriptEntry,
)
from roundz_interview.interview.session import ConversationSession, SessionConfig, build_session
from roundz_interview.interview.transcript import TranscriptStore

__all__ = [
    "PHASE_SCRIPTS",
    "PhaseController",
    "PhaseScript",
    "PHASE_ORDER",
    "ErrorInfo",
    "Phase",
    "ScoreResult",
    "ScoringMetadata",
    "SessionState",
    "SessionStatus",
    "Speaker",
    "TranscriptEntry",
    "ConversationSession",
    "SessionConfig",
    "build_session",
    "TranscriptStore",
]
