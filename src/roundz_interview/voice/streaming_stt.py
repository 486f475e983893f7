"""Streaming speech recognition over a websocket.

mic -> PCM frames every ~250 ms -> socket -> JSON transcript events

Inbound messages carry ``transcript`` and ``is_final`` either at the top level
or in Deepgram's ``channel.alternatives[0]`` shape.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import numpy as np
import websockets

from roundz_interview.errors import InitializationError, NetworkError, SessionStateError
from roundz_interview.events import ComponentError, EventChannel
from roundz_interview.voice.stt import SpeechInputChannel, SpeechInputMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamingSTTConfig:
    url: str
    api_key: str = ""
    frame_interval_s: float = 0.25
    open_timeout_s: float = 10.0
    ping_interval_s: float = 20.0


class FrameBuffer(Protocol):
    async def open(self) -> None: ...

    def drain(self) -> list[np.ndarray]: ...

    def close(self) -> None: ...


Connector = Callable[..., Awaitable[Any]]


def parse_transcript_message(data: dict[str, Any]) -> tuple[str, bool, float | None]:
    """Extract (text, is_final, confidence) from one provider message."""
    confidence = None
    text = data.get("transcript")
    if text is None:
        alternatives = (data.get("channel") or {}).get("alternatives") or [{}]
        first = alternatives[0] if isinstance(alternatives[0], dict) else {}
        text = first.get("transcript")
        confidence = first.get("confidence")
    if not isinstance(text, str):
        text = ""
    if confidence is not None:
        try:
            confidence = max(0.0, min(1.0, float(confidence)))
        except (TypeError, ValueError):
            confidence = None
    return text.strip(), bool(data.get("is_final", False)), confidence


class StreamingSpeechChannel(SpeechInputChannel):
    """Duplex recognition socket fed by the microphone."""

    mode = SpeechInputMode.STREAMING

    def __init__(
        self,
        config: StreamingSTTConfig,
        *,
        microphone: FrameBuffer,
        events: EventChannel | None = None,
        connector: Connector | None = None,
    ) -> None:
        super().__init__(events=events)
        self._config = config
        self._mic = microphone
        self._connector = connector or websockets.connect
        self._ws: Any = None
        self._receiver: asyncio.Task | None = None
        self._sender: asyncio.Task | None = None
        self._listening = False
        self._closing = False

    @property
    def config(self) -> StreamingSTTConfig:
        return self._config

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        if not self._config.api_key:
            raise InitializationError("Streaming recognition API key is not configured (DEEPGRAM_API_KEY).")
        try:
            self._ws = await self._connector(
                self._config.url,
                additional_headers={"Authorization": f"Token {self._config.api_key}"},
                open_timeout=self._config.open_timeout_s,
                ping_interval=self._config.ping_interval_s,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise InitializationError(f"Streaming recognition provider unreachable: {e}") from e
        self._closing = False
        self._receiver = asyncio.create_task(self._receive_loop(self._ws), name="streaming-stt-recv")
        logger.info("[VOICE][STT] streaming socket connected")

    async def start(self) -> None:
        if self._listening:
            return
        if self._ws is None:
            raise SessionStateError("Streaming recognition socket is not connected")
        await self._mic.open()
        self._listening = True
        self._sender = asyncio.create_task(self._send_loop(self._ws), name="streaming-stt-send")
        logger.info("[VOICE][STT] listening (streaming)")
        self._set_listening_event(True)

    async def stop(self) -> None:
        if not self._listening:
            return
        self._listening = False
        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
        self._mic.close()
        logger.info("[VOICE][STT] stopped listening (streaming)")
        self._set_listening_event(False)

    async def close(self) -> None:
        await self.stop()
        self._closing = True
        receiver, self._receiver = self._receiver, None
        if receiver is not None and not receiver.done():
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.send(json.dumps({"type": "CloseStream"}))
        except (OSError, websockets.WebSocketException) as e:
            logger.debug(f"[VOICE][STT] CloseStream not sent: {e}")
        try:
            await ws.close()
        except (OSError, websockets.WebSocketException) as e:
            logger.debug(f"[VOICE][STT] socket close failed: {e}")
        logger.info("[VOICE][STT] streaming socket closed")

    async def _send_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._config.frame_interval_s)
            frames = self._mic.drain()
            if not frames or self._muted:
                continue
            payload = b"".join(np.ascontiguousarray(f, dtype="<i2").tobytes() for f in frames)
            try:
                await ws.send(payload)
            except websockets.ConnectionClosed:
                logger.warning("[VOICE][STT] socket closed while sending audio")
                return

    async def _receive_loop(self, ws: Any) -> None:
        reason = "socket closed by provider"
        try:
            async for message in ws:
                if isinstance(message, (bytes, bytearray)):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.debug("[VOICE][STT] ignoring non-JSON message")
                    continue
                if not isinstance(data, dict):
                    continue
                if data.get("type") == "Error":
                    logger.error(f"[VOICE][STT] provider error: {data.get('message') or data.get('description')}")
                    continue
                text, is_final, confidence = parse_transcript_message(data)
                if text and self._listening:
                    self._emit_transcript(text, is_final, confidence)
        except websockets.ConnectionClosed as e:
            reason = f"socket closed: {e}"

        if self._closing:
            return
        logger.error(f"[VOICE][STT] {reason}")
        self._publish(
            ComponentError(
                operation="connection",
                error=NetworkError(f"Speech recognition connection lost ({reason})"),
                fatal=True,
            )
        )
