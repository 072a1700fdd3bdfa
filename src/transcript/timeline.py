"""Timeline building: group word-level transcripts into timestamped chunks.

The chunk boundaries must stay stable between the original audit and any later
re-run, because citations refer to chunks by ``(recording_index, chunk_index)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.transcript.models import (
    StoredRecording,
    TimelineChunk,
    TimelineRecording,
    TranscriptWord,
)

if TYPE_CHECKING:
    from src.audit.collaborators import TranscriptSource

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10  # messages per chunk


@dataclass
class _Message:
    speaker: str
    words: list[str]
    start: float
    end: float


def _group_messages(words: list[TranscriptWord]) -> list[_Message]:
    """Group consecutive words by the same speaker into messages."""
    messages: list[_Message] = []
    for word in words:
        if word.type == "spacing":
            continue
        speaker = word.speaker_id or "unknown"
        if messages and messages[-1].speaker == speaker:
            messages[-1].words.append(word.text)
            messages[-1].end = word.end
        else:
            messages.append(_Message(speaker=speaker, words=[word.text], start=word.start, end=word.end))
    return messages


def build_chunks_from_words(
    words: list[TranscriptWord],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[TimelineChunk]:
    """Build conversation chunks from word-level transcript tokens.

    Consecutive words by the same speaker form a message; every ``chunk_size``
    messages form a chunk whose text lists one ``speaker: text`` line per
    message.

    Args:
        words: Word tokens in chronological order.
        chunk_size: Number of messages per chunk.

    Returns:
        List of :class:`TimelineChunk` with dense 0-based ``chunk_index``.
    """
    messages = _group_messages(words)
    size = max(1, int(chunk_size))

    chunks: list[TimelineChunk] = []
    for i in range(0, len(messages), size):
        window = messages[i : i + size]
        speakers = tuple(dict.fromkeys(m.speaker for m in window))
        chunks.append(
            TimelineChunk(
                chunk_index=len(chunks),
                start_timestamp=window[0].start,
                end_timestamp=window[-1].end,
                speakers=speakers,
                full_text="\n".join(f"{m.speaker}: {' '.join(m.words)}" for m in window),
                message_count=len(window),
            )
        )
    return chunks


def words_from_plain_text(text: str, duration_seconds: float | None = None) -> list[TranscriptWord]:
    """Synthesize evenly spaced word tokens from a plain-text transcript.

    Used when only the flat transcript text survived in storage. Speakers are
    unknown without diarization, so words alternate between two placeholder
    speakers every ten words to keep chunk sizes comparable.
    """
    tokens = text.split()
    if not tokens:
        return []
    duration = duration_seconds if duration_seconds and duration_seconds > 0 else max(1, round(len(tokens) * 0.5))
    word_duration = max(0.05, duration / len(tokens))
    return [
        TranscriptWord(
            text=token,
            start=i * word_duration,
            end=(i + 1) * word_duration,
            speaker_id="speaker_0" if i % 20 < 10 else "speaker_1",
        )
        for i, token in enumerate(tokens)
    ]


def _chunks_for_recording(rec: StoredRecording, chunk_size: int) -> list[TimelineChunk]:
    if rec.chunks:
        return sorted(rec.chunks, key=lambda c: c.chunk_index)
    if rec.words:
        return build_chunks_from_words(rec.words, chunk_size)
    if rec.transcription_text and rec.transcription_text.strip():
        return build_chunks_from_words(
            words_from_plain_text(rec.transcription_text, rec.duration_seconds),
            chunk_size,
        )
    return []


def rebuild_timeline(
    source: TranscriptSource,
    fiche_id: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[TimelineRecording]:
    """Rebuild a call's timeline from durable per-recording transcript storage.

    Stored chunks are preferred; otherwise chunks are rebuilt from word-level
    data, then from plain text. Recordings without any transcript are skipped
    with a warning, so the returned timeline may be partial.

    Args:
        source: Transcript storage collaborator.
        fiche_id: The sale/file whose recordings are loaded.
        chunk_size: Messages per chunk when chunks must be rebuilt.

    Returns:
        Timeline recordings with dense 0-based ``recording_index``.
    """
    stored = source.load_recordings(fiche_id)
    logger.info("Loaded %d recordings for fiche %s", len(stored), fiche_id)

    timeline: list[TimelineRecording] = []
    for rec in stored:
        if not rec.has_transcription:
            logger.warning("Skipping recording %s of fiche %s: no transcription", rec.call_id, fiche_id)
            continue

        chunks = _chunks_for_recording(rec, chunk_size)
        if not chunks:
            logger.warning("Skipping recording %s of fiche %s: empty transcription", rec.call_id, fiche_id)
            continue

        timeline.append(
            TimelineRecording(
                recording_index=len(timeline),
                chunks=tuple(chunks),
                recording_date=rec.recording_date,
                recording_time=rec.recording_time,
                recording_url=rec.recording_url,
                call_id=rec.call_id,
                duration_seconds=rec.duration_seconds or 0.0,
            )
        )

    logger.info(
        "Timeline rebuilt for fiche %s: %d recordings, %d chunks",
        fiche_id,
        len(timeline),
        sum(len(r.chunks) for r in timeline),
    )
    return timeline
