"""
Application configuration using pydantic-settings.

Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Speech output (ElevenLabs-compatible)
    elevenlabs_api_key: str = Field(
        default="",
        description="API key sent as xi-api-key",
    )
    elevenlabs_voice_id: str = Field(
        default="pNInz6obpgDQGcFmaJgB",
        description="Voice identifier used for synthesis",
    )
    elevenlabs_model_id: str = Field(
        default="eleven_monolingual_v1",
        description="Synthesis model identifier",
    )
    elevenlabs_base_url: str = Field(
        default="https://api.elevenlabs.io",
        description="Base URL of the text-to-speech provider",
    )
    tts_stability: float = Field(default=0.5, ge=0.0, le=1.0)
    tts_similarity_boost: float = Field(default=0.75, ge=0.0, le=1.0)
    tts_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for a synthesis request",
    )
    tts_verify_on_start: bool = Field(
        default=True,
        description="Look up the configured voice when the call starts",
    )

    # Speech input
    stt_mode: Literal["local", "streaming"] = Field(
        default="local",
        description="Speech input implementation selected at session start",
    )
    deepgram_api_key: str = Field(default="", description="Streaming recognition API key")
    deepgram_url: str = Field(
        default=(
            "wss://api.deepgram.com/v1/listen"
            "?encoding=linear16&sample_rate=16000&language=en-US&interim_results=true"
        ),
        description="Streaming recognition websocket URL",
    )
    stt_frame_interval_ms: int = Field(
        default=250,
        description="Cadence at which microphone audio is forwarded to the socket",
    )
    whisper_model_size: str = Field(default="small", description="faster-whisper model size")
    whisper_device: Literal["cpu", "cuda", "auto"] = Field(default="cpu")
    stt_language: str | None = Field(default="en", description="Recognition language hint")
    stt_restart_max_attempts: int = Field(
        default=5,
        description="Consecutive recognizer restarts allowed before giving up",
    )
    stt_restart_base_delay: float = Field(default=0.5, description="First restart delay in seconds")
    stt_restart_max_delay: float = Field(default=8.0, description="Restart delay ceiling in seconds")

    # Audio devices
    sample_rate: int = Field(default=16000, description="Microphone and synthesis sample rate")

    # Collaborators
    scoring_api_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the scoring service",
    )
    scoring_timeout: float = Field(default=30.0, description="Timeout in seconds for scoring")
    llm_backend_url: str | None = Field(
        default=None,
        description="Conversation backend receiving system messages (logged only when unset)",
    )
    llm_backend_timeout: float = Field(default=10.0)
    transcript_backup_dir: str = Field(
        default="./data/transcripts",
        description="Directory for local transcript backups",
    )

    # Session
    settle_delay_ms: int = Field(
        default=1000,
        description="Pause between the end of a phase greeting and resuming listening",
    )

    # Application
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
