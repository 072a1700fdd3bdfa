"""Evidence validation and gating for audit step results.

A deterministic post-processing pass applied after every model analysis:

- citations whose quoted text does not appear in the referenced chunk are
  removed;
- PRESENT/PARTIEL control points left without a valid citation are downgraded
  to ABSENT;
- the step score and conformity are re-derived from the surviving evidence and
  only ever lowered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass

from src.audit.errors import ConfigurationError
from src.audit.models import Citation, ControlPointStatus, StepResult
from src.audit.scoring import (
    conformity_from_ratio,
    derived_score,
    evidence_ratio,
    is_stricter,
    level_from_conformity,
    unique_minutages,
)
from src.config import settings
from src.policy_config import DEFAULT_GATING_POLICY, GatingPolicy
from src.transcript.index import ChunkIndex
from src.transcript.normalize import normalize_for_match

logger = logging.getLogger(__name__)

CONTROL_POINT_DOWNGRADE_NOTE = (
    "[Auto-check] Aucune citation valide trouvée dans la transcription pour confirmer ce point."
)
SCORE_REDUCED_NOTE = "[Auto-check] Score ajusté à la baisse faute de preuves/citations valides suffisantes."
CONFORMITY_ADJUSTED_NOTE = "[Auto-check] Conformité ajustée ({before} → {after}) d'après les preuves validées."

_CITATION_FREE = (ControlPointStatus.ABSENT, ControlPointStatus.NON_APPLICABLE)


@dataclass
class GatingStats:
    """Counters describing what gating changed."""

    enabled: bool = True
    total_citations: int = 0
    removed_citations: int = 0
    downgraded_control_points: int = 0
    steps_score_reduced: int = 0
    steps_conforme_adjusted: int = 0

    def merge(self, other: GatingStats) -> None:
        """Add another run's counters into this one."""
        self.enabled = self.enabled and other.enabled
        self.total_citations += other.total_citations
        self.removed_citations += other.removed_citations
        self.downgraded_control_points += other.downgraded_control_points
        self.steps_score_reduced += other.steps_score_reduced
        self.steps_conforme_adjusted += other.steps_conforme_adjusted

    def to_dict(self) -> dict[str, int | bool]:
        return asdict(self)


def _append_note(text: str, note: str, separator: str) -> str:
    return f"{text}{separator}{note}" if text else note


def is_citation_valid(
    citation: Citation,
    index: ChunkIndex,
    policy: GatingPolicy = DEFAULT_GATING_POLICY,
) -> bool:
    """Return True if the citation's quote literally appears in its chunk.

    The reference must resolve in the index, and the normalized quote must be
    at least ``policy.min_quote_chars`` long and a substring of the chunk's
    normalized text.
    """
    entry = index.get(citation.recording_index, citation.chunk_index)
    if entry is None or not entry.normalized_text:
        return False

    quoted = normalize_for_match(citation.texte)
    if not quoted or len(quoted) < policy.min_quote_chars:
        return False

    return quoted in entry.normalized_text


def _resolve_weight(result: StepResult, weight: int | None) -> int:
    if weight is None and result.step_metadata is not None:
        weight = result.step_metadata.weight
    if weight is None:
        msg = "Step weight is required for evidence gating (pass weight= or attach step_metadata)"
        raise ConfigurationError(msg)
    return max(0, int(weight))


def gate_step_result(
    result: StepResult,
    index: ChunkIndex,
    *,
    weight: int | None = None,
    policy: GatingPolicy = DEFAULT_GATING_POLICY,
    enabled: bool | None = None,
) -> tuple[StepResult, GatingStats]:
    """Validate citations and conservatively gate one step result.

    The input is never mutated; a deep copy is gated and returned.

    Args:
        result: The step result as produced by the model.
        index: Chunk index of the audited call.
        weight: Step weight. Defaults to ``result.step_metadata.weight``.
        policy: Gating thresholds.
        enabled: Overrides ``settings.audit_evidence_gating``.

    Returns:
        A ``(gated_result, stats)`` tuple.

    Raises:
        ConfigurationError: If no weight is available.
    """
    if enabled is None:
        enabled = settings.audit_evidence_gating
    if not enabled:
        return result.model_copy(deep=True), GatingStats(enabled=False)

    step_weight = _resolve_weight(result, weight)
    stats = GatingStats()
    gated = result.model_copy(deep=True)

    for cp in gated.points_controle:
        original = cp.citations
        stats.total_citations += len(original)

        if cp.statut in _CITATION_FREE:
            kept: list[Citation] = []
        else:
            kept = [c for c in original if is_citation_valid(c, index, policy)]
        stats.removed_citations += len(original) - len(kept)
        cp.citations = kept

        if cp.statut in (ControlPointStatus.PRESENT, ControlPointStatus.PARTIEL) and not kept:
            cp.statut = ControlPointStatus.ABSENT
            cp.commentaire = _append_note(cp.commentaire, CONTROL_POINT_DOWNGRADE_NOTE, "\n")
            stats.downgraded_control_points += 1

        cp.minutages = unique_minutages(c.minutage for c in kept)

    ratio = evidence_ratio(gated.points_controle)

    new_score = min(derived_score(ratio, step_weight), gated.score, step_weight)
    if new_score < gated.score:
        gated.score = new_score
        gated.commentaire_global = _append_note(gated.commentaire_global, SCORE_REDUCED_NOTE, "\n\n")
        stats.steps_score_reduced += 1

    ratio_conforme = conformity_from_ratio(ratio, policy)
    if is_stricter(ratio_conforme, gated.conforme):
        note = CONFORMITY_ADJUSTED_NOTE.format(before=gated.conforme.value, after=ratio_conforme.value)
        gated.conforme = ratio_conforme
        gated.niveau_conformite = level_from_conformity(ratio_conforme, ratio, policy)
        gated.commentaire_global = _append_note(gated.commentaire_global, note, "\n\n")
        stats.steps_conforme_adjusted += 1

    gated.minutages = unique_minutages(c.minutage for cp in gated.points_controle for c in cp.citations)

    if stats.removed_citations or stats.steps_score_reduced or stats.steps_conforme_adjusted:
        logger.info(
            "Evidence gating changed step %s: removed %d/%d citations, downgraded %d points, score %d -> %d",
            gated.step_metadata.name if gated.step_metadata else "?",
            stats.removed_citations,
            stats.total_citations,
            stats.downgraded_control_points,
            result.score,
            gated.score,
        )

    return gated, stats


def gate_step_results(
    results: Iterable[StepResult],
    index: ChunkIndex,
    *,
    policy: GatingPolicy = DEFAULT_GATING_POLICY,
    enabled: bool | None = None,
) -> tuple[list[StepResult], GatingStats]:
    """Gate several step results, each weighted by its own ``step_metadata``.

    Returns:
        The gated results in input order and the aggregated stats.
    """
    if enabled is None:
        enabled = settings.audit_evidence_gating
    total = GatingStats(enabled=enabled)
    gated_results: list[StepResult] = []
    for result in results:
        gated, stats = gate_step_result(result, index, policy=policy, enabled=enabled)
        gated_results.append(gated)
        total.merge(stats)
    return gated_results, total


def enrich_citations(result: StepResult, index: ChunkIndex) -> StepResult:
    """Fill citation recording metadata from the index.

    The model frequently reports ``N/A`` for recording date/time/url; the index
    holds the authoritative values. Unresolvable citations are left as-is.
    """
    enriched = result.model_copy(deep=True)
    for cp in enriched.points_controle:
        for citation in cp.citations:
            entry = index.get(citation.recording_index, citation.chunk_index)
            if entry is None:
                continue
            chunk = entry.chunk
            citation.recording_date = chunk.recording_date
            citation.recording_time = chunk.recording_time
            citation.recording_url = chunk.recording_url
            if citation.minutage_secondes is None:
                citation.minutage_secondes = chunk.start_timestamp
    return enriched
