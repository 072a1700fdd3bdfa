"""Audit runner: analyzes every step of one call and summarizes compliance."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

from src.audit.analyzer import analyze_step
from src.audit.collaborators import ProductLinker
from src.audit.double_check import DoubleCheckState, StepAnalyzer, analyze_step_with_double_check
from src.audit.evidence import GatingStats, enrich_citations, gate_step_result
from src.audit.models import (
    AuditConfig,
    ComplianceSummary,
    ProductContext,
    StepDefinition,
    StepMetadata,
    StepResult,
)
from src.audit.scoring import compute_audit_compliance
from src.config import settings
from src.policy_config import (
    DEFAULT_DOUBLE_CHECK_POLICY,
    DEFAULT_GATING_POLICY,
    DoubleCheckPolicy,
    GatingPolicy,
)
from src.transcript.index import ChunkIndex, build_chunk_index
from src.transcript.models import TimelineRecording

logger = logging.getLogger(__name__)


@dataclass
class StepFailure:
    """A step whose analysis raised."""

    position: int
    name: str
    error: str


@dataclass
class AuditRunResult:
    """Outcome of one full audit run."""

    step_results: list[StepResult]
    failures: list[StepFailure]
    gating_stats: GatingStats
    compliance: ComplianceSummary
    double_checked: list[int] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "compliance": self.compliance.model_dump(mode="json"),
            "steps": [r.model_dump(mode="json") for r in self.step_results],
            "failures": [vars(f) for f in self.failures],
            "gating": self.gating_stats.to_dict(),
            "double_checked": self.double_checked,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _StepOutcome:
    result: StepResult
    stats: GatingStats
    double_checked: bool


def _link_product(
    steps: Iterable[StepDefinition], linker: ProductLinker | None, fiche_id: str
) -> ProductContext | None:
    if linker is None or not any(s.verify_product_info for s in steps):
        return None
    try:
        return linker.link(fiche_id)
    except Exception:
        logger.warning("Product linking failed for fiche %s; continuing without product context", fiche_id, exc_info=True)
        return None


def _run_step(
    step: StepDefinition,
    audit_config: AuditConfig,
    index: ChunkIndex,
    product: ProductContext | None,
    analyze: StepAnalyzer,
    double_check: bool,
    gating_policy: GatingPolicy,
    double_check_policy: DoubleCheckPolicy,
    gating_enabled: bool,
) -> _StepOutcome:
    step_product = product if step.verify_product_info else None
    if double_check:
        outcome = analyze_step_with_double_check(
            step,
            audit_config,
            index,
            step_product,
            analyze=analyze,
            policy=double_check_policy,
            gating_policy=gating_policy,
            gating_enabled=gating_enabled,
        )
        result, stats = outcome.final_result, outcome.gating_stats
        checked = outcome.state == DoubleCheckState.DOUBLE_CHECKED
    else:
        raw = analyze(step, audit_config, index, product=step_product)
        result, stats = gate_step_result(raw, index, weight=step.weight, policy=gating_policy, enabled=gating_enabled)
        checked = False

    if result.step_metadata is None:
        result.step_metadata = StepMetadata(
            position=step.position, name=step.name, weight=step.weight, is_critical=step.is_critical
        )
    return _StepOutcome(result=enrich_citations(result, index), stats=stats, double_checked=checked)


def run_audit(
    audit_config: AuditConfig,
    timeline: Iterable[TimelineRecording],
    *,
    fiche_id: str = "",
    product_linker: ProductLinker | None = None,
    analyze: StepAnalyzer = analyze_step,
    max_workers: int | None = None,
    double_check: bool | None = None,
    gating_enabled: bool | None = None,
    gating_policy: GatingPolicy = DEFAULT_GATING_POLICY,
    double_check_policy: DoubleCheckPolicy = DEFAULT_DOUBLE_CHECK_POLICY,
) -> AuditRunResult:
    """Run every step of an audit over one call's timeline.

    The chunk index is built once and shared by all steps. Steps are analyzed
    concurrently; a step that raises is recorded as a failure and the rest of
    the audit continues.

    Args:
        audit_config: The audit configuration.
        timeline: The call's timeline.
        fiche_id: Identifier of the audited sale, for product linking and logs.
        product_linker: Optional product resolver.
        analyze: Step analyzer (defaults to the Claude analyzer).
        max_workers: Concurrent steps. Defaults to ``settings.audit_step_concurrency``.
        double_check: Overrides ``settings.audit_double_check``.
        gating_enabled: Overrides ``settings.audit_evidence_gating``.
        gating_policy: Evidence gating thresholds.
        double_check_policy: Escalation thresholds.

    Returns:
        An :class:`AuditRunResult` with step results in position order.
    """
    started = time.monotonic()
    if double_check is None:
        double_check = settings.audit_double_check
    if gating_enabled is None:
        gating_enabled = settings.audit_evidence_gating
    workers = max(1, max_workers or settings.audit_step_concurrency)

    index = build_chunk_index(timeline)
    steps = sorted(audit_config.steps, key=lambda s: s.position)
    product = _link_product(steps, product_linker, fiche_id)

    logger.info(
        "Running audit %s on fiche %s: %d steps, %d chunks, concurrency %d",
        audit_config.name,
        fiche_id or "?",
        len(steps),
        len(index),
        workers,
    )

    outcomes: dict[int, _StepOutcome] = {}
    failures: list[StepFailure] = []

    if steps:
        with ThreadPoolExecutor(max_workers=min(workers, len(steps))) as executor:
            futures = {
                executor.submit(
                    _run_step,
                    step,
                    audit_config,
                    index,
                    product,
                    analyze,
                    double_check,
                    gating_policy,
                    double_check_policy,
                    gating_enabled,
                ): step
                for step in steps
            }
            for future in as_completed(futures):
                step = futures[future]
                try:
                    outcomes[step.position] = future.result()
                except Exception as exc:
                    logger.exception("Step %d (%s) failed", step.position, step.name)
                    failures.append(StepFailure(position=step.position, name=step.name, error=str(exc)))

    stats = GatingStats(enabled=gating_enabled)
    results: list[StepResult] = []
    double_checked: list[int] = []
    for position in sorted(outcomes):
        outcome = outcomes[position]
        results.append(outcome.result)
        stats.merge(outcome.stats)
        if outcome.double_checked:
            double_checked.append(position)

    compliance = compute_audit_compliance(results)
    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Audit %s complete: %.2f%% %s, %d/%d steps succeeded, %d citations removed by gating",
        audit_config.name,
        compliance.score,
        compliance.niveau.value,
        len(results),
        len(steps),
        stats.removed_citations,
    )

    return AuditRunResult(
        step_results=results,
        failures=sorted(failures, key=lambda f: f.position),
        gating_stats=stats,
        compliance=compliance,
        double_checked=double_checked,
        duration_ms=duration_ms,
    )
