"""Text-to-speech providers.

Default implementation talks to an ElevenLabs-compatible HTTP API and asks for
raw 16-bit PCM so the payload decodes without a codec.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from roundz_interview.errors import InitializationError, NetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TTSConfig:
    api_key: str = ""
    voice_id: str = "pNInz6obpgDQGcFmaJgB"
    model_id: str = "eleven_monolingual_v1"
    base_url: str = "https://api.elevenlabs.io"
    stability: float = 0.5
    similarity_boost: float = 0.75
    sample_rate: int = 16000
    timeout_s: float = 30.0
    verify_on_start: bool = True


class TTSProvider:
    """Synthesis contract: text in, encoded audio bytes out."""

    sample_rate: int = 16000

    async def initialize(self) -> None:
        """Acquire provider resources. Raise InitializationError if unusable."""

    async def synthesize(self, text: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        """Release provider resources."""


class ElevenLabsTTS(TTSProvider):
    """ElevenLabs HTTP synthesis. One client per instance, one instance per session."""

    def __init__(self, config: TTSConfig | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config or TTSConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.sample_rate = self._config.sample_rate

    @property
    def config(self) -> TTSConfig:
        return self._config

    async def initialize(self) -> None:
        if not self._config.api_key:
            raise InitializationError("Text-to-speech API key is not configured (ELEVENLABS_API_KEY).")
        if not self._config.voice_id:
            raise InitializationError("Text-to-speech voice id is not configured (ELEVENLABS_VOICE_ID).")

        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.timeout_s,
                headers={"xi-api-key": self._config.api_key},
                transport=self._transport,
            )

        if not self._config.verify_on_start:
            return
        try:
            response = await self._client.get(f"/v1/voices/{self._config.voice_id}")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            await self.close()
            raise InitializationError(
                f"Text-to-speech provider rejected voice {self._config.voice_id!r} "
                f"(status={e.response.status_code})"
            ) from e
        except httpx.HTTPError as e:
            await self.close()
            raise InitializationError(f"Text-to-speech provider unreachable: {e}") from e
        logger.info(f"[VOICE][TTS] provider ready voice={self._config.voice_id}")

    async def synthesize(self, text: str) -> bytes:
        if self._client is None:
            raise NetworkError("Text-to-speech client is not initialized")

        payload = {
            "text": text,
            "model_id": self._config.model_id,
            "voice_settings": {
                "stability": self._config.stability,
                "similarity_boost": self._config.similarity_boost,
            },
        }
        t0 = time.perf_counter()
        try:
            response = await self._client.post(
                f"/v1/text-to-speech/{self._config.voice_id}",
                params={"output_format": f"pcm_{self._config.sample_rate}"},
                headers={"Accept": "audio/pcm"},
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Text-to-speech API error: {e.response.status_code} {e.response.reason_phrase}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Text-to-speech request failed: {e!r}") from e

        audio = response.content
        logger.info(f"[VOICE][TTS] synthesized len={len(text)} bytes={len(audio)} dur={time.perf_counter() - t0:.2f}s")
        return audio

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
