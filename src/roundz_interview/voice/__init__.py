"""Voice subsystem.

This package provides the speech I/O channels of an interview session:

text -> TTS -> playback queue -> speaker
mic -> STT channel (local or streaming) -> transcript events

The session remains the single authority for interview flow and state.
"""

from roundz_interview.voice.audio_io import AudioIO, AudioIOConfig, AudioUnit, decode_audio
from roundz_interview.voice.playback import SpeechOutputQueue
from roundz_interview.voice.stt import (
    RecognitionResult,
    Recognizer,
    RetryPolicy,
    SpeechInputChannel,
    SpeechInputMode,
    create_speech_channel,
)
from roundz_interview.voice.tts import ElevenLabsTTS, TTSConfig, TTSProvider

__all__ = [
    "AudioIO",
    "AudioIOConfig",
    "AudioUnit",
    "decode_audio",
    "SpeechOutputQueue",
    "RecognitionResult",
    "Recognizer",
    "RetryPolicy",
    "SpeechInputChannel",
    "SpeechInputMode",
    "create_speech_channel",
    "ElevenLabsTTS",
    "TTSConfig",
    "TTSProvider",
]
