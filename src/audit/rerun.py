"""Targeted re-runs of one audit step or one control point.

A re-run rebuilds the transcript context from durable storage, re-analyzes
with optional operator instructions, gates the result and produces a
before/after comparison. Re-runs are never double-checked.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.audit.analyzer import analyze_step
from src.audit.collaborators import AuditStore, ProductLinker, TranscriptSource
from src.audit.double_check import StepAnalyzer
from src.audit.errors import AnalysisError, ConfigurationError
from src.audit.evidence import GatingStats, enrich_citations, gate_step_result
from src.audit.models import (
    AuditConfig,
    AuditRecord,
    ControlPoint,
    ProductContext,
    StepDefinition,
    StepResult,
)
from src.audit.scoring import compute_audit_compliance, derive_step_from_control_points
from src.config import settings
from src.policy_config import DEFAULT_GATING_POLICY, GatingPolicy
from src.transcript.index import ChunkIndex, build_chunk_index
from src.transcript.normalize import normalize_for_match
from src.transcript.timeline import rebuild_timeline

logger = logging.getLogger(__name__)

MAX_PREVIOUS_COMMENT_CHARS = 1200


@dataclass(frozen=True)
class ControlPointSummary:
    """Condensed view of a control point's previous result.

    ``position`` is the 1-based index of the matched point in the stored step.
    """

    position: int
    statut: str
    commentaire: str
    citations: int
    minutages: list[str] = field(default_factory=list)


@dataclass
class StepRerunComparison:
    """Before/after artifact for a whole-step re-run."""

    audit_id: str
    fiche_id: str
    step_position: int
    step_name: str
    original: StepResult
    rerun: StepResult
    statut_changed: bool
    score_changed: bool
    conforme_changed: bool
    citations_changed: bool
    gating_stats: GatingStats
    rerun_at: str
    duration_ms: int
    tokens_used: int
    custom_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "fiche_id": self.fiche_id,
            "step_position": self.step_position,
            "step_name": self.step_name,
            "original": self.original.model_dump(mode="json"),
            "rerun": self.rerun.model_dump(mode="json"),
            "comparison": {
                "statut_changed": self.statut_changed,
                "score_changed": self.score_changed,
                "conforme_changed": self.conforme_changed,
                "citations_changed": self.citations_changed,
                "original_score": self.original.score,
                "new_score": self.rerun.score,
                "original_conforme": self.original.conforme.value,
                "new_conforme": self.rerun.conforme.value,
            },
            "gating": self.gating_stats.to_dict(),
            "metadata": {
                "rerun_at": self.rerun_at,
                "duration_ms": self.duration_ms,
                "tokens_used": self.tokens_used,
            },
            "custom_prompt": self.custom_prompt,
        }


@dataclass
class ControlPointRerunComparison:
    """Before/after artifact for a single control-point re-run.

    ``projected_step`` is the stored step with the new control point spliced in
    and its verdict re-derived; None when the stored step has no entry at
    ``control_point_index``.
    """

    audit_id: str
    fiche_id: str
    step_position: int
    step_name: str
    control_point_index: int
    control_point_text: str
    original_step: StepResult
    original_control_point: ControlPointSummary | None
    rerun_control_point: ControlPoint
    rerun_step: StepResult
    projected_step: StepResult | None
    statut_changed: bool
    citations_changed: bool
    score_changed: bool
    conforme_changed: bool
    gating_stats: GatingStats
    rerun_at: str
    duration_ms: int
    tokens_used: int
    custom_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        original = self.original_control_point
        return {
            "audit_id": self.audit_id,
            "fiche_id": self.fiche_id,
            "step_position": self.step_position,
            "step_name": self.step_name,
            "control_point_index": self.control_point_index,
            "control_point_text": self.control_point_text,
            "original_control_point": asdict(original) if original else None,
            "rerun_control_point": self.rerun_control_point.model_dump(mode="json"),
            "projected_step": self.projected_step.model_dump(mode="json") if self.projected_step else None,
            "comparison": {
                "statut_changed": self.statut_changed,
                "citations_changed": self.citations_changed,
                "score_changed": self.score_changed,
                "conforme_changed": self.conforme_changed,
                "original_statut": original.statut if original else None,
                "new_statut": self.rerun_control_point.statut.value,
                "original_citations": original.citations if original else None,
                "new_citations": len(self.rerun_control_point.citations),
            },
            "gating": self.gating_stats.to_dict(),
            "metadata": {
                "rerun_at": self.rerun_at,
                "duration_ms": self.duration_ms,
                "tokens_used": self.tokens_used,
            },
            "custom_prompt": self.custom_prompt,
        }


@dataclass
class _RerunContext:
    audit: AuditRecord
    original: StepResult
    config: AuditConfig
    step: StepDefinition


def _operator_block(custom_prompt: str | None) -> str:
    if not custom_prompt or not custom_prompt.strip():
        return ""
    return f"OPERATOR INSTRUCTIONS (APPLY WITH PRIORITY):\n{custom_prompt.strip()}"


def _join_instructions(*parts: str | None) -> str | None:
    joined = "\n\n".join(p.strip() for p in parts if p and p.strip())
    return joined or None


def summarize_control_point(
    result: StepResult,
    control_point_index: int,
    control_point_text: str,
) -> ControlPointSummary | None:
    """Summarize the stored result for a control point.

    The point is matched by normalized text, checking the entry at
    ``control_point_index`` (1-based) first; failing a text match, the entry at
    that position is used. The summary records where the match was found.
    """
    points = result.points_controle
    if not points:
        return None

    by_index = control_point_index - 1 if 0 < control_point_index <= len(points) else None
    wanted = normalize_for_match(control_point_text)
    order = ([by_index] if by_index is not None else []) + list(range(len(points)))
    matched = next((i for i in order if normalize_for_match(points[i].point) == wanted), by_index)
    if matched is None:
        return None

    cp = points[matched]
    return ControlPointSummary(
        position=matched + 1,
        statut=cp.statut.value,
        commentaire=cp.commentaire,
        citations=len(cp.citations),
        minutages=list(cp.minutages),
    )


def pick_rerun_control_point(result: StepResult, control_point_text: str) -> ControlPoint:
    """Return the control point of a narrowed re-run matching ``control_point_text``.

    Raises:
        AnalysisError: If the analyzer returned no control points.
    """
    points = result.points_controle
    if not points:
        msg = "Analyzer returned no points_controle"
        raise AnalysisError(msg)
    if len(points) == 1:
        return points[0]
    wanted = normalize_for_match(control_point_text)
    return next((p for p in points if normalize_for_match(p.point) == wanted), points[0])


def build_control_point_instructions(
    step: StepDefinition,
    control_point_index: int,
    control_point_text: str,
    previous: ControlPointSummary | None,
    custom_prompt: str | None = None,
) -> str | None:
    """Compose re-run instructions: operator text, previous result, original instructions."""
    lines = [
        "TARGETED RE-RUN: SINGLE CONTROL POINT",
        f"- Index: {control_point_index}/{len(step.control_points)}",
        f"- Point: {control_point_text}",
    ]
    if previous is not None:
        lines.append("\nPREVIOUS RESULT FOR THIS POINT:")
        lines.append(f"- Statut: {previous.statut}")
        lines.append(f"- Citations: {previous.citations}")
        if previous.minutages:
            lines.append(f"- Minutages: {', '.join(previous.minutages)}")
        comment = previous.commentaire.strip()
        if comment:
            if len(comment) > MAX_PREVIOUS_COMMENT_CHARS:
                comment = comment[:MAX_PREVIOUS_COMMENT_CHARS] + "…"
            lines.append(f"- Commentaire: {comment}")

    return _join_instructions(_operator_block(custom_prompt), "\n".join(lines), step.custom_instructions)


def splice_control_point(
    original: StepResult,
    control_point_index: int,
    control_point: ControlPoint,
    weight: int,
    policy: GatingPolicy = DEFAULT_GATING_POLICY,
) -> StepResult | None:
    """Replace one control point of a stored step and re-derive the step verdict.

    Returns None if the stored step has no control point at that position.
    """
    if not 0 < control_point_index <= len(original.points_controle):
        return None

    projected = original.model_copy(deep=True)
    projected.points_controle[control_point_index - 1] = control_point.model_copy(deep=True)
    derived = derive_step_from_control_points(projected.points_controle, weight, policy)
    projected.score = derived.score
    projected.conforme = derived.conforme
    projected.niveau_conformite = derived.niveau_conformite
    projected.minutages = derived.minutages
    return projected


def _statuts(result: StepResult) -> list[str]:
    return [p.statut.value for p in result.points_controle]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RerunService:
    """Re-runs steps and control points of stored audits.

    Args:
        store: Audit persistence.
        transcripts: Durable transcript storage used to rebuild the timeline.
        product_linker: Optional product resolver for product-verification steps.
        analyze: Step analyzer (defaults to the Claude analyzer).
        policy: Evidence gating thresholds.
        chunk_size: Messages per chunk when the timeline is rebuilt from words.
    """

    def __init__(
        self,
        store: AuditStore,
        transcripts: TranscriptSource,
        product_linker: ProductLinker | None = None,
        analyze: StepAnalyzer = analyze_step,
        policy: GatingPolicy = DEFAULT_GATING_POLICY,
        chunk_size: int | None = None,
    ) -> None:
        self.store = store
        self.transcripts = transcripts
        self.product_linker = product_linker
        self.analyze = analyze
        self.policy = policy
        self.chunk_size = chunk_size or settings.timeline_chunk_size

    # ── Loading ───────────────────────────────────────────────────────────

    def _load_context(self, audit_id: str, step_position: int) -> _RerunContext:
        audit = self.store.get_audit(audit_id)
        if audit is None:
            msg = f"Audit {audit_id} not found"
            raise ConfigurationError(msg)

        original = audit.step_result(step_position)
        if original is None:
            msg = f"Step {step_position} not found in audit {audit_id}"
            raise ConfigurationError(msg)

        config = self.store.get_audit_config(audit.audit_config_id)
        if config is None:
            msg = f"Audit config {audit.audit_config_id} not found"
            raise ConfigurationError(msg)

        step = config.step(step_position)
        if step is None:
            msg = f"Step definition not found for position {step_position} in config {config.id}"
            raise ConfigurationError(msg)

        return _RerunContext(audit=audit, original=original, config=config, step=step)

    def _build_index(self, fiche_id: str) -> ChunkIndex:
        timeline = rebuild_timeline(self.transcripts, fiche_id, self.chunk_size)
        return build_chunk_index(timeline)

    def _link_product(self, step: StepDefinition, fiche_id: str) -> ProductContext | None:
        if not step.verify_product_info or self.product_linker is None:
            return None
        try:
            return self.product_linker.link(fiche_id)
        except Exception:
            logger.warning("Product linking failed for fiche %s; continuing without product context", fiche_id, exc_info=True)
            return None

    # ── Re-runs ───────────────────────────────────────────────────────────

    def rerun_step(
        self,
        audit_id: str,
        step_position: int,
        custom_prompt: str | None = None,
    ) -> StepRerunComparison:
        """Re-run a whole step and compare it with the stored result.

        Raises:
            ConfigurationError: If the audit, stored step, config or step
                definition cannot be found.
        """
        started = time.monotonic()
        ctx = self._load_context(audit_id, step_position)
        fiche_id = ctx.audit.fiche_id
        logger.info("Re-running step %d of audit %s (fiche %s)", step_position, audit_id, fiche_id)

        index = self._build_index(fiche_id)
        product = self._link_product(ctx.step, fiche_id)

        step = ctx.step
        operator = _operator_block(custom_prompt)
        if operator:
            step = step.model_copy(
                update={"custom_instructions": _join_instructions(operator, ctx.step.custom_instructions)}
            )

        raw = self.analyze(step, ctx.config, index, product=product)
        gated, stats = gate_step_result(raw, index, weight=ctx.step.weight, policy=self.policy)
        rerun = enrich_citations(gated, index)
        if rerun.step_metadata is None:
            rerun.step_metadata = ctx.original.step_metadata

        original = ctx.original
        comparison = StepRerunComparison(
            audit_id=audit_id,
            fiche_id=fiche_id,
            step_position=step_position,
            step_name=ctx.step.name,
            original=original,
            rerun=rerun,
            statut_changed=_statuts(original) != _statuts(rerun),
            score_changed=original.score != rerun.score,
            conforme_changed=original.conforme != rerun.conforme,
            citations_changed=original.total_citations != rerun.total_citations,
            gating_stats=stats,
            rerun_at=_now_iso(),
            duration_ms=int((time.monotonic() - started) * 1000),
            tokens_used=rerun.usage.total_tokens if rerun.usage else 0,
            custom_prompt=custom_prompt,
        )
        logger.info(
            "Step %d re-run complete: %d/%d (%s) -> %d/%d (%s)",
            step_position,
            original.score,
            ctx.step.weight,
            original.conforme.value,
            rerun.score,
            ctx.step.weight,
            rerun.conforme.value,
        )
        return comparison

    def rerun_control_point(
        self,
        audit_id: str,
        step_position: int,
        control_point_index: int,
        custom_prompt: str | None = None,
    ) -> ControlPointRerunComparison:
        """Re-run a single control point (1-based ``control_point_index``) of a step.

        The step is narrowed to the targeted control point and the previous
        result for that point is passed to the model as context.

        Raises:
            ConfigurationError: If anything required is missing or the index
                is outside ``1..len(control_points)``.
        """
        started = time.monotonic()
        ctx = self._load_context(audit_id, step_position)
        fiche_id = ctx.audit.fiche_id

        total = len(ctx.step.control_points)
        if total == 0:
            msg = f"Step {step_position} has no control points configured"
            raise ConfigurationError(msg)
        if not 1 <= control_point_index <= total:
            msg = f"control_point_index {control_point_index} out of range (1-{total})"
            raise ConfigurationError(msg)

        text = ctx.step.control_points[control_point_index - 1]
        logger.info(
            "Re-running control point %d/%d of step %d, audit %s",
            control_point_index,
            total,
            step_position,
            audit_id,
        )

        index = self._build_index(fiche_id)
        product = self._link_product(ctx.step, fiche_id)

        previous = summarize_control_point(ctx.original, control_point_index, text)
        narrowed = ctx.step.model_copy(
            update={
                "control_points": (text,),
                "custom_instructions": build_control_point_instructions(
                    ctx.step, control_point_index, text, previous, custom_prompt
                ),
            }
        )

        raw = self.analyze(narrowed, ctx.config, index, product=product)
        gated, stats = gate_step_result(raw, index, weight=ctx.step.weight, policy=self.policy)
        rerun_step = enrich_citations(gated, index)

        picked = pick_rerun_control_point(rerun_step, text).model_copy(update={"point": text})
        splice_at = previous.position if previous is not None else control_point_index
        projected = splice_control_point(ctx.original, splice_at, picked, ctx.step.weight, self.policy)
        original = ctx.original

        comparison = ControlPointRerunComparison(
            audit_id=audit_id,
            fiche_id=fiche_id,
            step_position=step_position,
            step_name=ctx.step.name,
            control_point_index=control_point_index,
            control_point_text=text,
            original_step=original,
            original_control_point=previous,
            rerun_control_point=picked,
            rerun_step=rerun_step,
            projected_step=projected,
            statut_changed=previous is None or previous.statut != picked.statut.value,
            citations_changed=previous is None or previous.citations != len(picked.citations),
            score_changed=projected is not None and projected.score != original.score,
            conforme_changed=projected is not None and projected.conforme != original.conforme,
            gating_stats=stats,
            rerun_at=_now_iso(),
            duration_ms=int((time.monotonic() - started) * 1000),
            tokens_used=rerun_step.usage.total_tokens if rerun_step.usage else 0,
            custom_prompt=custom_prompt,
        )
        logger.info(
            "Control point %d re-run complete: %s -> %s",
            control_point_index,
            previous.statut if previous else "UNKNOWN",
            picked.statut.value,
        )
        return comparison

    # ── Saving ────────────────────────────────────────────────────────────

    def _replace_step(self, audit_id: str, step_position: int, result: StepResult) -> None:
        audit = self.store.get_audit(audit_id)
        if audit is None:
            msg = f"Audit {audit_id} not found"
            raise ConfigurationError(msg)

        results = [
            result if r.step_metadata is not None and r.step_metadata.position == step_position else r
            for r in audit.step_results
        ]
        # Nothing is written unless compliance can be computed for the new results
        compliance = compute_audit_compliance(results)
        self.store.update_step_result(audit_id, step_position, result)
        self.store.update_audit_compliance(audit_id, compliance)

    def save_step_rerun(self, comparison: StepRerunComparison, update_audit: bool = False) -> bool:
        """Record a step re-run event; optionally replace the stored step.

        Returns:
            True if the stored audit was updated.
        """
        event = {
            "kind": "step_rerun",
            "occurred_at": comparison.rerun_at,
            "custom_prompt": comparison.custom_prompt,
            "previous_score": comparison.original.score,
            "previous_conforme": comparison.original.conforme.value,
            "previous_citations": comparison.original.total_citations,
            "next_score": comparison.rerun.score,
            "next_conforme": comparison.rerun.conforme.value,
            "next_citations": comparison.rerun.total_citations,
            "gating": comparison.gating_stats.to_dict(),
        }
        self.store.record_rerun_event(comparison.audit_id, comparison.step_position, event)
        if not update_audit:
            return False

        self._replace_step(comparison.audit_id, comparison.step_position, comparison.rerun)
        logger.info("Audit %s updated with re-run of step %d", comparison.audit_id, comparison.step_position)
        return True

    def save_control_point_rerun(self, comparison: ControlPointRerunComparison, update_audit: bool = False) -> bool:
        """Record a control-point re-run event; optionally splice it into the stored step.

        Returns:
            True if the stored audit was updated.
        """
        previous = comparison.original_control_point
        projected = comparison.projected_step
        event = {
            "kind": "control_point_rerun",
            "occurred_at": comparison.rerun_at,
            "custom_prompt": comparison.custom_prompt,
            "control_point_index": comparison.control_point_index,
            "point": comparison.control_point_text,
            "previous_statut": previous.statut if previous else None,
            "previous_commentaire": previous.commentaire if previous else None,
            "previous_citations": previous.citations if previous else None,
            "previous_step_score": comparison.original_step.score,
            "previous_step_conforme": comparison.original_step.conforme.value,
            "next_statut": comparison.rerun_control_point.statut.value,
            "next_commentaire": comparison.rerun_control_point.commentaire,
            "next_citations": len(comparison.rerun_control_point.citations),
            "next_step_score": projected.score if projected else None,
            "next_step_conforme": projected.conforme.value if projected else None,
            "gating": comparison.gating_stats.to_dict(),
        }
        self.store.record_rerun_event(comparison.audit_id, comparison.step_position, event)
        if not update_audit:
            return False

        if projected is None:
            logger.warning(
                "Stored step %d of audit %s has no control point %d; audit not updated",
                comparison.step_position,
                comparison.audit_id,
                comparison.control_point_index,
            )
            return False

        self._replace_step(comparison.audit_id, comparison.step_position, projected)
        logger.info(
            "Audit %s updated with re-run of control point %d in step %d",
            comparison.audit_id,
            comparison.control_point_index,
            comparison.step_position,
        )
        return True
