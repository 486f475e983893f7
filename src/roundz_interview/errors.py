"""
Error taxonomy shared by the voice components and the session.

Components raise these at their boundary; ConversationSession turns them
into ``ErrorInfo`` records on its state.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """User-facing error categories."""

    INITIALIZATION = "initialization"
    PERMISSION = "permission"
    NETWORK = "network"
    STATE = "state"


class InterviewError(Exception):
    """Base class for all interview engine errors."""

    kind: ErrorKind = ErrorKind.NETWORK


class InitializationError(InterviewError):
    """A provider is unreachable or misconfigured at session start."""

    kind = ErrorKind.INITIALIZATION


class MicrophonePermissionError(InterviewError):
    """Microphone access was refused or no input device is usable."""

    kind = ErrorKind.PERMISSION


class NetworkError(InterviewError):
    """A single synthesis, transcription, messaging or scoring request failed."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SessionStateError(InterviewError):
    """A command was issued while the session cannot accept it."""

    kind = ErrorKind.STATE


class AudioDecodeError(InterviewError):
    """Synthesized audio payload could not be decoded."""


class AudioDeviceError(InterviewError):
    """The audio output device failed during playback."""


class RecognizerError(InterviewError):
    """A recognition run ended with an error."""
