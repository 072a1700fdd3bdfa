"""In-memory chunk index over one call's transcript timeline."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from src.transcript.models import ChunkRef, TimelineRecording, TranscriptChunk
from src.transcript.normalize import normalize_for_match


@dataclass(frozen=True)
class IndexedChunk:
    """A transcript chunk paired with its precomputed normalized text."""

    chunk: TranscriptChunk
    normalized_text: str


class ChunkIndex:
    """Queryable, read-only index over transcript chunks.

    Provides exact lookup by ``(recording_index, chunk_index)`` and a flat,
    ordered sequence of all chunks for search. Instances hold no mutable state
    after construction and can be shared across threads.
    """

    def __init__(self, chunks: Iterable[IndexedChunk], recording_count: int = 0) -> None:
        ordered = sorted(chunks, key=lambda c: (c.chunk.recording_index, c.chunk.chunk_index))
        self._chunks: tuple[IndexedChunk, ...] = tuple(ordered)
        self._by_ref: dict[ChunkRef, IndexedChunk] = {c.chunk.ref: c for c in ordered}
        self.recording_count = recording_count

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def chunks(self) -> tuple[IndexedChunk, ...]:
        return self._chunks

    def get(self, recording_index: int, chunk_index: int) -> IndexedChunk | None:
        """Return the chunk at ``(recording_index, chunk_index)`` or None."""
        return self._by_ref.get(ChunkRef(recording_index, chunk_index))

    def contains(self, ref: ChunkRef) -> bool:
        return ref in self._by_ref


def build_chunk_index(timeline: Iterable[TimelineRecording]) -> ChunkIndex:
    """Build a :class:`ChunkIndex` from a call's timeline.

    Empty input yields an index with zero chunks. Recording metadata missing
    upstream is reported as ``"N/A"``.
    """
    indexed: list[IndexedChunk] = []
    recording_count = 0
    for rec in timeline:
        recording_count += 1
        for ch in rec.chunks:
            chunk = TranscriptChunk(
                recording_index=rec.recording_index,
                chunk_index=ch.chunk_index,
                start_timestamp=ch.start_timestamp,
                end_timestamp=ch.end_timestamp,
                speakers=tuple(ch.speakers),
                full_text=ch.full_text or "",
                recording_date=rec.recording_date or "N/A",
                recording_time=rec.recording_time or "N/A",
                recording_url=rec.recording_url or "N/A",
            )
            indexed.append(IndexedChunk(chunk=chunk, normalized_text=normalize_for_match(chunk.full_text)))
    return ChunkIndex(indexed, recording_count=recording_count)
