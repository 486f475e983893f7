"""
Conversation backend adapters.

The backend drives the interviewer's language model. The session only ever
sends it out-of-band system instructions (phase transition framing).
"""

import logging
from abc import ABC, abstractmethod

import httpx

from roundz_interview.errors import NetworkError

logger = logging.getLogger(__name__)


class ConversationBackendBase(ABC):
    """Abstract base class for conversation backends."""

    @abstractmethod
    async def send_system_message(self, text: str) -> None:
        """
        Inject a system instruction into the conversation.

        Args:
            text: Free-text instruction.

        Raises:
            NetworkError: If the backend could not be reached.
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""


class LoggingConversationBackend(ConversationBackendBase):
    """
    Backend used when no conversation service is configured.

    Records messages locally so they can be inspected.
    """

    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send_system_message(self, text: str) -> None:
        self.messages.append(text)
        logger.info(f"[SESSION] system message ({len(text)} chars): {text.splitlines()[0] if text else ''}")


class HttpConversationBackend(ConversationBackendBase):
    """
    HTTP conversation backend.

    Posts ``add-message`` envelopes with a ``system`` role to ``/messages``.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the backend.

        Args:
            endpoint: Base URL of the conversation service.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests).
        """
        self._endpoint = endpoint
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._endpoint,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def send_system_message(self, text: str) -> None:
        client = await self._get_client()
        envelope = {"type": "add-message", "message": {"role": "system", "content": text}}
        try:
            response = await client.post("/messages", json=envelope)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Conversation backend returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Conversation backend unreachable: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
