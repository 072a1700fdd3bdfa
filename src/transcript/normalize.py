"""Text normalization shared by indexing, search, and citation gating."""

from __future__ import annotations

import re
import unicodedata

# Anything that is not a letter or a digit (underscore counts as a separator).
_NON_ALNUM_RE = re.compile(r"[\W_]+")


def normalize_for_match(text: str | None) -> str:
    """Normalize text for literal matching.

    Lower-cases, strips diacritics (NFD decomposition, combining marks
    dropped), collapses every run of non-alphanumeric characters to a single
    space and trims. Total and idempotent.
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", str(text).lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _NON_ALNUM_RE.sub(" ", stripped).strip()


def format_minutage(seconds: float) -> str:
    """Format a timestamp in seconds as ``MM:SS``."""
    try:
        total = max(0, int(seconds))
    except (TypeError, ValueError, OverflowError):
        total = 0
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"
