"""Constrained transcript access tools for the model.

Two operations over a :class:`~src.transcript.index.ChunkIndex`:

- ``search_transcript``: keyword search returning chunk references and short
  previews, for evidence discovery;
- ``get_transcript_chunks``: verbatim chunk text under a character budget, for
  exact quoting in citations.

The full transcript is never placed in the prompt; these tools are the only way
verbatim text reaches the model.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.config import settings
from src.transcript.index import ChunkIndex, IndexedChunk
from src.transcript.models import ChunkRef
from src.transcript.normalize import format_minutage, normalize_for_match

logger = logging.getLogger(__name__)

MAX_QUERY_TERMS = 40
DEFAULT_MIN_TERM_LENGTH = 3
MAX_CHUNK_CHARS_CEILING = 80_000
TRUNCATION_MARKER = "…"

NO_TERMS_NOTE = "No usable terms extracted from query. Provide more specific keywords/phrases."
SEARCH_NOTE = "Indices are 0-based. Use get_transcript_chunks to fetch full_text for quoting and citations."
CHUNKS_NOTE = (
    "Use the returned full_text to quote exact texte in citations. "
    "Copy minutage/minutage_secondes/recording_* fields from this tool output."
)

SEARCH_TRANSCRIPT_TOOL: dict[str, Any] = {
    "name": "search_transcript",
    "description": (
        "Search transcript chunks for keywords/phrases and return the best matching "
        "chunk references + previews (for evidence discovery)."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": (
                    "Search query. Include key phrases/keywords (French OK). "
                    "Prefer batching multiple terms in one query."
                ),
            },
            "maxResults": {
                "type": ["integer", "null"],
                "minimum": 1,
                "maximum": 50,
                "description": "Maximum number of results to return. Use null for the server default.",
            },
            "minTermLength": {
                "type": ["integer", "null"],
                "minimum": 2,
                "maximum": 8,
                "description": "Minimum term length for tokenization. Use null for the default.",
            },
        },
        "required": ["query"],
    },
}

GET_TRANSCRIPT_CHUNKS_TOOL: dict[str, Any] = {
    "name": "get_transcript_chunks",
    "description": (
        "Fetch full transcript chunk text + metadata for exact quoting and citations. "
        "Use after you identified relevant chunk references."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "chunks": {
                "type": "array",
                "minItems": 1,
                "maxItems": 60,
                "description": "Chunk references to fetch (0-based indices).",
                "items": {
                    "type": "object",
                    "properties": {
                        "recording_index": {"type": "integer", "minimum": 0},
                        "chunk_index": {"type": "integer", "minimum": 0},
                    },
                    "required": ["recording_index", "chunk_index"],
                },
            },
            "includeNeighbors": {
                "type": ["integer", "null"],
                "minimum": 0,
                "maximum": 2,
                "description": "Also include N neighbor chunks around each reference. Use null for the default.",
            },
            "maxChars": {
                "type": ["integer", "null"],
                "minimum": 1_000,
                "maximum": 80_000,
                "description": "Max total characters across all returned full_text. Use null for the server default.",
            },
        },
        "required": ["chunks"],
    },
}


# ── Tool input validation ─────────────────────────────────────────────────


class SearchTranscriptInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    max_results: int | None = Field(default=None, alias="maxResults", ge=1, le=50)
    min_term_length: int | None = Field(default=None, alias="minTermLength", ge=2, le=8)


class ChunkRefInput(BaseModel):
    recording_index: int = Field(ge=0)
    chunk_index: int = Field(ge=0)


class GetTranscriptChunksInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chunks: list[ChunkRefInput] = Field(min_length=1, max_length=60)
    include_neighbors: int | None = Field(default=None, alias="includeNeighbors", ge=0, le=2)
    max_chars: int | None = Field(default=None, alias="maxChars", ge=1_000, le=80_000)


# ── Limits ────────────────────────────────────────────────────────────────


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(value)))


@dataclass(frozen=True)
class TranscriptToolLimits:
    """Server-side defaults and caps for the transcript tools."""

    max_search_results: int = 25
    max_chunk_fetch: int = 20
    max_chunk_chars: int = 20_000
    max_preview_chars: int = 450

    @classmethod
    def from_settings(cls) -> TranscriptToolLimits:
        return cls(
            max_search_results=_clamp(settings.transcript_max_search_results, 1, 50),
            max_chunk_fetch=_clamp(settings.transcript_max_chunk_fetch, 1, 40),
            max_chunk_chars=_clamp(settings.transcript_max_chunk_chars, 1_000, MAX_CHUNK_CHARS_CEILING),
            max_preview_chars=_clamp(settings.transcript_max_preview_chars, 80, 2_000),
        )


DEFAULT_LIMITS = TranscriptToolLimits()


# ── Operations ────────────────────────────────────────────────────────────


def _chunk_payload(entry: IndexedChunk) -> dict[str, Any]:
    chunk = entry.chunk
    return {
        "recording_index": chunk.recording_index,
        "chunk_index": chunk.chunk_index,
        "minutage_secondes": chunk.start_timestamp,
        "minutage": format_minutage(chunk.start_timestamp),
        "start_timestamp": chunk.start_timestamp,
        "end_timestamp": chunk.end_timestamp,
        "speakers": list(chunk.speakers),
        "recording_date": chunk.recording_date,
        "recording_time": chunk.recording_time,
        "recording_url": chunk.recording_url,
    }


def extract_terms(query: str, min_term_length: int = DEFAULT_MIN_TERM_LENGTH) -> list[str]:
    """Distinct normalized query terms of at least ``min_term_length`` chars (first 40)."""
    terms = [t for t in normalize_for_match(query).split(" ") if len(t) >= min_term_length]
    return list(dict.fromkeys(terms))[:MAX_QUERY_TERMS]


def search(
    index: ChunkIndex,
    query: str,
    max_results: int | None = None,
    min_term_length: int | None = None,
    *,
    limits: TranscriptToolLimits = DEFAULT_LIMITS,
) -> dict[str, Any]:
    """Rank chunks by how many distinct query terms they contain.

    Ties are broken by ascending ``(recording_index, chunk_index)``. Chunks
    matching no term are omitted. A query with no usable terms returns an empty
    match list with an explanatory note.

    Args:
        index: The call's chunk index.
        query: Free-text keywords/phrases.
        max_results: Result cap (1-50). Defaults to ``limits.max_search_results``.
        min_term_length: Minimum term length (2-8). Defaults to 3.
        limits: Server-side defaults.

    Returns:
        A JSON-serializable dict with ``matches`` and bookkeeping fields.
    """
    max_res = _clamp(max_results if max_results is not None else limits.max_search_results, 1, 50)
    min_len = _clamp(min_term_length if min_term_length is not None else DEFAULT_MIN_TERM_LENGTH, 2, 8)

    normalized_query = normalize_for_match(query)
    terms = extract_terms(query, min_len)

    if not terms:
        return {
            "query": query,
            "totalRecordings": index.recording_count,
            "totalChunks": len(index),
            "matches": [],
            "note": NO_TERMS_NOTE,
        }

    scored: list[tuple[int, IndexedChunk]] = []
    for entry in index.chunks:
        if not entry.normalized_text:
            continue
        score = sum(1 for term in terms if term in entry.normalized_text)
        if score > 0:
            scored.append((score, entry))

    scored.sort(key=lambda s: (-s[0], s[1].chunk.recording_index, s[1].chunk.chunk_index))

    matches: list[dict[str, Any]] = []
    for score, entry in scored[:max_res]:
        text = entry.chunk.full_text
        preview = text[: limits.max_preview_chars] + TRUNCATION_MARKER if len(text) > limits.max_preview_chars else text
        matches.append({**_chunk_payload(entry), "score": score, "preview_text": preview})

    return {
        "query": query,
        "normalizedQuery": normalized_query,
        "terms": terms,
        "totalRecordings": index.recording_count,
        "totalChunks": len(index),
        "matches": matches,
        "note": SEARCH_NOTE,
    }


def _expand_refs(requested: list[ChunkRef], neighbors: int) -> list[ChunkRef]:
    expanded: list[ChunkRef] = []
    for ref in requested:
        expanded.append(ref)
        for d in range(1, neighbors + 1):
            expanded.append(ChunkRef(ref.recording_index, ref.chunk_index - d))
            expanded.append(ChunkRef(ref.recording_index, ref.chunk_index + d))
    return [r for r in dict.fromkeys(expanded) if r.chunk_index >= 0]


def get_chunks(
    index: ChunkIndex,
    refs: Iterable[ChunkRef | tuple[int, int]],
    include_neighbors: int | None = None,
    max_chars: int | None = None,
    *,
    limits: TranscriptToolLimits = DEFAULT_LIMITS,
) -> dict[str, Any]:
    """Return verbatim chunk text for the given references under a character budget.

    Requested references are deduplicated and capped at
    ``limits.max_chunk_fetch``, expanded with up to ``include_neighbors`` chunks
    on each side within the same recording, stripped of out-of-range references
    and sorted. Chunks are then emitted in order until the budget runs out; the
    last one may be cut and suffixed with ``…``, which sets ``truncated``.

    Args:
        index: The call's chunk index.
        refs: ``ChunkRef`` objects or ``(recording_index, chunk_index)`` pairs.
        include_neighbors: Neighbours per side (0-2). Defaults to 0.
        max_chars: Total character budget. Defaults to ``limits.max_chunk_chars``;
            capped at 80 000.
        limits: Server-side defaults.

    Returns:
        A JSON-serializable dict with ``chunks`` and bookkeeping fields.
    """
    neighbors = _clamp(include_neighbors if include_neighbors is not None else 0, 0, 2)
    budget = _clamp(max_chars if max_chars is not None else limits.max_chunk_chars, 1, MAX_CHUNK_CHARS_CEILING)

    requested = list(dict.fromkeys(r if isinstance(r, ChunkRef) else ChunkRef(*r) for r in refs))
    requested = requested[: limits.max_chunk_fetch]

    valid = sorted(r for r in _expand_refs(requested, neighbors) if index.contains(r))

    remaining = budget
    truncated = False
    out: list[dict[str, Any]] = []
    for ref in valid:
        entry = index.get(ref.recording_index, ref.chunk_index)
        if entry is None:
            continue
        if remaining <= 0:
            truncated = True
            break

        text = entry.chunk.full_text
        included = text
        if len(text) > remaining:
            included = text[:remaining] + TRUNCATION_MARKER
            truncated = True
        remaining -= len(included)

        out.append({**_chunk_payload(entry), "full_text": included})

    return {
        "requested": len(requested),
        "returned": len(out),
        "maxChars": budget,
        "truncated": truncated,
        "chunks": out,
        "note": CHUNKS_NOTE,
    }


class TranscriptTools:
    """Transcript tools bound to one call's index, dispatchable by tool name."""

    def __init__(self, index: ChunkIndex, limits: TranscriptToolLimits | None = None) -> None:
        self.index = index
        self.limits = limits or TranscriptToolLimits.from_settings()

    @property
    def definitions(self) -> list[dict[str, Any]]:
        return [SEARCH_TRANSCRIPT_TOOL, GET_TRANSCRIPT_CHUNKS_TOOL]

    @property
    def names(self) -> set[str]:
        return {SEARCH_TRANSCRIPT_TOOL["name"], GET_TRANSCRIPT_CHUNKS_TOOL["name"]}

    def search(self, query: str, max_results: int | None = None, min_term_length: int | None = None) -> dict[str, Any]:
        return search(self.index, query, max_results, min_term_length, limits=self.limits)

    def get_chunks(
        self,
        refs: Iterable[ChunkRef | tuple[int, int]],
        include_neighbors: int | None = None,
        max_chars: int | None = None,
    ) -> dict[str, Any]:
        return get_chunks(self.index, refs, include_neighbors, max_chars, limits=self.limits)

    def execute(self, name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
        """Validate model-supplied input and run the named tool.

        Invalid input and unknown tool names produce an ``{"error": ...}``
        payload for the model instead of raising.
        """
        try:
            if name == SEARCH_TRANSCRIPT_TOOL["name"]:
                args = SearchTranscriptInput.model_validate(tool_input)
                return self.search(args.query, args.max_results, args.min_term_length)
            if name == GET_TRANSCRIPT_CHUNKS_TOOL["name"]:
                fetch = GetTranscriptChunksInput.model_validate(tool_input)
                refs = [ChunkRef(c.recording_index, c.chunk_index) for c in fetch.chunks]
                return self.get_chunks(refs, fetch.include_neighbors, fetch.max_chars)
        except ValidationError as exc:
            logger.warning("Invalid %s input from model: %s", name, exc)
            return {"error": f"Invalid input for {name}", "details": str(exc)}

        logger.warning("Model called unknown tool %s", name)
        return {"error": f"Unknown tool {name!r}"}
