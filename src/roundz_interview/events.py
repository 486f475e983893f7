"""Typed event channel between the voice components and the session.

Components publish immutable event records; the session consumes them in
FIFO order from a single task. Publishing never blocks and may happen from
audio threads through :meth:`EventChannel.publish_threadsafe`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Union

from roundz_interview.errors import InterviewError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscriptReceived:
    text: str
    is_final: bool
    confidence: float | None = None


@dataclass(frozen=True)
class ListeningChanged:
    listening: bool


@dataclass(frozen=True)
class VolumeChanged:
    level: float


@dataclass(frozen=True)
class PlaybackStarted:
    text: str


@dataclass(frozen=True)
class PlaybackFinished:
    text: str
    interrupted: bool = False


@dataclass(frozen=True)
class PlaybackIdle:
    """The speech output queue has nothing left to play."""


@dataclass(frozen=True)
class ComponentError:
    operation: str
    error: InterviewError
    fatal: bool = False


SessionEvent = Union[
    TranscriptReceived,
    ListeningChanged,
    VolumeChanged,
    PlaybackStarted,
    PlaybackFinished,
    PlaybackIdle,
    ComponentError,
]


class EventChannel:
    """FIFO queue of SessionEvent with at-least-once delivery to one consumer."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def publish(self, event: SessionEvent) -> None:
        self._queue.put_nowait(event)

    def publish_threadsafe(self, event: SessionEvent) -> None:
        """Publish from a non-loop thread (audio callbacks)."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def get(self) -> SessionEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()

    async def drain(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()
