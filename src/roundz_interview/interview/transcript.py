"""
Transcript store.

Append-only, chronologically ordered log of what the interviewer said and what
the candidate said, with export, local backup and scoring hand-off.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from roundz_interview.errors import NetworkError
from roundz_interview.interview.schemas import ScoreResult, ScoringMetadata, Speaker, TranscriptEntry

logger = logging.getLogger(__name__)

_ENTRY_LIST = TypeAdapter(list[TranscriptEntry])

SPEAKER_LABELS = {Speaker.AI: "AI", Speaker.CANDIDATE: "Candidate"}


def backup_key(interview_id: str) -> str:
    return f"interview_transcript_{interview_id}"


class TranscriptStore:
    """
    Ordered log of TranscriptEntry objects for one session.

    Entries are never reordered or removed. Final entries with empty text and
    entries older than the last stored one are dropped with a warning.
    """

    def __init__(
        self,
        *,
        scoring_url: str = "http://localhost:8000",
        scoring_timeout: float = 30.0,
        backup_dir: str | Path = "./data/transcripts",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._entries: list[TranscriptEntry] = []
        self._scoring_url = scoring_url.rstrip("/")
        self._scoring_timeout = scoring_timeout
        self._backup_dir = Path(backup_dir)
        self._transport = transport
        self._seq = itertools.count(1)

    @property
    def entries(self) -> list[TranscriptEntry]:
        """Get a copy of all entries in order."""
        return self._entries.copy()

    @property
    def scoring_url(self) -> str:
        return self._scoring_url

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: TranscriptEntry) -> TranscriptEntry | None:
        """
        Add an entry to the end of the transcript.

        Returns:
            The stored entry, or None if it was dropped.
        """
        if not entry.text.strip():
            logger.warning(f"[TRANSCRIPT] dropped empty entry id={entry.id} speaker={entry.speaker.value}")
            return None
        if self._entries and entry.timestamp < self._entries[-1].timestamp:
            logger.warning(
                f"[TRANSCRIPT] dropped out-of-order entry id={entry.id} "
                f"ts={entry.timestamp.isoformat()} last={self._entries[-1].timestamp.isoformat()}"
            )
            return None
        self._entries.append(entry)
        return entry

    def record(self, speaker: Speaker, text: str, confidence: float | None = None) -> TranscriptEntry | None:
        """Create an entry stamped now and append it."""
        text = (text or "").strip()
        now = datetime.now(timezone.utc)
        if self._entries and now < self._entries[-1].timestamp:
            # Wall clock stepped back; keep the log non-decreasing.
            now = self._entries[-1].timestamp
        entry_id = f"{speaker.value}-{time.time_ns() // 1_000_000}-{next(self._seq)}"
        return self.append(
            TranscriptEntry(id=entry_id, speaker=speaker, text=text, timestamp=now, confidence=confidence)
        )

    def format(self) -> str:
        """Render entries as ``[HH:MM:SS] Speaker: text`` lines."""
        return "\n".join(
            f"[{e.timestamp.strftime('%H:%M:%S')}] {SPEAKER_LABELS[e.speaker]}: {e.text}" for e in self._entries
        )

    def export_text(self, path: str | Path | None = None) -> str:
        content = self.format()
        if path is not None:
            Path(path).write_text(content + "\n", encoding="utf-8")
        return content

    def export_json(self, path: str | Path | None = None) -> str:
        content = json.dumps(self._dump_entries(), indent=2, ensure_ascii=False)
        if path is not None:
            Path(path).write_text(content, encoding="utf-8")
        return content

    @staticmethod
    def parse_json(raw: str | bytes) -> list[TranscriptEntry]:
        """Parse a JSON array produced by :meth:`export_json`."""
        return _ENTRY_LIST.validate_json(raw)

    def persist_locally(self, interview_id: str) -> Path | None:
        """
        Write a session-keyed backup of the transcript.

        Best-effort: failures are logged and None is returned.
        """
        data = {
            "interviewId": interview_id,
            "transcript": self._dump_entries(),
            "savedAt": datetime.now(timezone.utc).isoformat(),
        }
        path = self._backup_dir / f"{backup_key(interview_id)}.json"
        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.error(f"[TRANSCRIPT] local backup failed for {interview_id}: {e}")
            return None
        logger.info(f"[TRANSCRIPT] saved local backup {path}")
        return path

    def load_local(self, interview_id: str) -> list[TranscriptEntry] | None:
        """Read back a local backup, or None if missing or unreadable."""
        path = self._backup_dir / f"{backup_key(interview_id)}.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return _ENTRY_LIST.validate_python(data.get("transcript", []))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError, AttributeError) as e:
            logger.error(f"[TRANSCRIPT] could not read local backup {path}: {e}")
            return None

    async def send_for_scoring(self, interview_id: str, metadata: ScoringMetadata) -> ScoreResult:
        """
        Send the full transcript to the scoring service.

        Raises:
            NetworkError: On transport failure, non-success status or malformed response.
        """
        payload = {
            "interviewId": interview_id,
            "transcript": self._dump_entries(),
            "metadata": metadata.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        logger.info(f"[TRANSCRIPT] sending {len(self._entries)} entries for scoring interview={interview_id}")
        try:
            async with httpx.AsyncClient(
                base_url=self._scoring_url,
                timeout=self._scoring_timeout,
                transport=self._transport,
            ) as client:
                response = await client.post("/score-interview", json=payload)
                response.raise_for_status()
                return ScoreResult.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Scoring service returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Scoring request failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise NetworkError(f"Malformed scoring response: {e}") from e

    def _dump_entries(self) -> list[dict[str, Any]]:
        return [e.model_dump(mode="json", exclude_none=True) for e in self._entries]
