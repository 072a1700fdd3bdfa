"""Data models for call transcripts: timeline recordings and indexed chunks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TranscriptWord:
    """A single word-level token from the speech-to-text output."""

    text: str
    start: float
    end: float
    type: str = "word"
    speaker_id: str | None = None


@dataclass(frozen=True)
class TimelineChunk:
    """A timestamped window of one recording's conversation."""

    chunk_index: int
    start_timestamp: float
    end_timestamp: float
    speakers: tuple[str, ...] = ()
    full_text: str = ""
    message_count: int = 0


@dataclass(frozen=True)
class TimelineRecording:
    """One call recording with its ordered chunks."""

    recording_index: int
    chunks: tuple[TimelineChunk, ...] = ()
    recording_date: str = ""
    recording_time: str = ""
    recording_url: str = ""
    call_id: str = ""
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class TranscriptChunk:
    """Immutable unit of transcript evidence.

    Identity is ``(recording_index, chunk_index)``. Recording metadata is
    denormalized so a chunk can be quoted without looking up its recording.
    """

    recording_index: int
    chunk_index: int
    start_timestamp: float
    end_timestamp: float
    speakers: tuple[str, ...]
    full_text: str
    recording_date: str = "N/A"
    recording_time: str = "N/A"
    recording_url: str = "N/A"

    @property
    def ref(self) -> ChunkRef:
        return ChunkRef(self.recording_index, self.chunk_index)


@dataclass(frozen=True, order=True)
class ChunkRef:
    """Reference to a chunk, ordered by ``(recording_index, chunk_index)``."""

    recording_index: int
    chunk_index: int


@dataclass
class StoredRecording:
    """A recording as held by durable transcript storage.

    Only one of ``chunks``, ``words`` or ``transcription_text`` is needed to
    rebuild the timeline; they are tried in that order.
    """

    call_id: str
    recording_url: str = ""
    recording_date: str = ""
    recording_time: str = ""
    duration_seconds: float | None = None
    has_transcription: bool = True
    chunks: list[TimelineChunk] = field(default_factory=list)
    words: list[TranscriptWord] = field(default_factory=list)
    transcription_text: str | None = None


def timeline_from_payload(payload: list[dict[str, Any]]) -> list[TimelineRecording]:
    """Parse the upstream timeline JSON shape into :class:`TimelineRecording` objects.

    Expected shape::

        [{"recording_index": 0, "recording_date": "...", "recording_time": "...",
          "recording_url": "...",
          "chunks": [{"chunk_index": 0, "start_timestamp": 0.0,
                      "end_timestamp": 12.5, "speakers": ["speaker_0"],
                      "full_text": "..."}]}]

    Raises:
        ValueError: If a recording or chunk is missing its index.
    """
    recordings: list[TimelineRecording] = []
    for rec in payload:
        if not isinstance(rec.get("recording_index"), int):
            msg = f"Timeline recording without an integer recording_index: {sorted(rec)}"
            raise ValueError(msg)
        chunks: list[TimelineChunk] = []
        for ch in rec.get("chunks") or []:
            if not isinstance(ch.get("chunk_index"), int):
                msg = f"Timeline chunk without an integer chunk_index in recording {rec['recording_index']}"
                raise ValueError(msg)
            chunks.append(
                TimelineChunk(
                    chunk_index=ch["chunk_index"],
                    start_timestamp=float(ch.get("start_timestamp") or 0.0),
                    end_timestamp=float(ch.get("end_timestamp") or 0.0),
                    speakers=tuple(ch.get("speakers") or ()),
                    full_text=str(ch.get("full_text") or ""),
                    message_count=int(ch.get("message_count") or 0),
                )
            )
        recordings.append(
            TimelineRecording(
                recording_index=rec["recording_index"],
                chunks=tuple(chunks),
                recording_date=rec.get("recording_date") or "",
                recording_time=rec.get("recording_time") or "",
                recording_url=rec.get("recording_url") or "",
                call_id=rec.get("call_id") or "",
                duration_seconds=float(rec.get("duration_seconds") or 0.0),
            )
        )
    return recordings
