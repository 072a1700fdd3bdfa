"""Deterministic scoring helpers shared by evidence gating and re-run saving."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from src.audit.errors import ConfigurationError
from src.audit.models import (
    ComplianceSummary,
    Conformity,
    ConformityLevel,
    ControlPoint,
    ControlPointStatus,
    StepResult,
)
from src.policy_config import (
    DEFAULT_COMPLIANCE_THRESHOLDS,
    DEFAULT_GATING_POLICY,
    ComplianceThresholds,
    GatingPolicy,
)

CONFORMITY_ORDER: dict[Conformity, int] = {
    Conformity.CONFORME: 2,
    Conformity.PARTIEL: 1,
    Conformity.NON_CONFORME: 0,
}

_STATUS_CREDIT: dict[ControlPointStatus, float] = {
    ControlPointStatus.PRESENT: 1.0,
    ControlPointStatus.PARTIEL: 0.5,
    ControlPointStatus.ABSENT: 0.0,
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (``2.5 -> 3``)."""
    return math.floor(value + 0.5)


def evidence_ratio(points: Iterable[ControlPoint]) -> float:
    """Share of applicable control points that are satisfied.

    PRESENT counts 1, PARTIEL 0.5, ABSENT 0; NON_APPLICABLE points are
    excluded. With no applicable point the ratio is 1.
    """
    applicable = [p for p in points if p.statut != ControlPointStatus.NON_APPLICABLE]
    if not applicable:
        return 1.0
    return sum(_STATUS_CREDIT[p.statut] for p in applicable) / len(applicable)


def derived_score(ratio: float, weight: int) -> int:
    """Score implied by ``ratio`` for a step of ``weight``, clamped to ``[0, weight]``."""
    weight = max(0, weight)
    return max(0, min(weight, round_half_up(ratio * weight)))


def conformity_from_ratio(ratio: float, policy: GatingPolicy = DEFAULT_GATING_POLICY) -> Conformity:
    if ratio >= policy.conforme_ratio:
        return Conformity.CONFORME
    if ratio >= policy.partiel_ratio:
        return Conformity.PARTIEL
    return Conformity.NON_CONFORME


def level_from_conformity(
    conforme: Conformity,
    ratio: float,
    policy: GatingPolicy = DEFAULT_GATING_POLICY,
) -> ConformityLevel:
    if conforme == Conformity.CONFORME:
        return ConformityLevel.EXCELLENT if ratio >= policy.excellent_ratio else ConformityLevel.BON
    if conforme == Conformity.PARTIEL:
        return ConformityLevel.ACCEPTABLE
    return ConformityLevel.INSUFFISANT


def is_stricter(candidate: Conformity, current: Conformity) -> bool:
    """Return True if ``candidate`` is a strictly harsher verdict than ``current``."""
    return CONFORMITY_ORDER[candidate] < CONFORMITY_ORDER[current]


def unique_minutages(values: Iterable[str | None]) -> list[str]:
    """Deduplicate non-empty timestamps, keeping first-seen order."""
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))


@dataclass(frozen=True)
class DerivedStep:
    """Step verdict derived purely from control-point statuses."""

    ratio: float
    score: int
    conforme: Conformity
    niveau_conformite: ConformityLevel
    total_citations: int
    minutages: list[str]


def derive_step_from_control_points(
    points: list[ControlPoint],
    weight: int,
    policy: GatingPolicy = DEFAULT_GATING_POLICY,
) -> DerivedStep:
    """Derive score, conformity and minutages for a step from its control points.

    Used when a single control point is replaced after a re-run: the step
    verdict is recomputed from the statuses rather than asked of the model.
    """
    ratio = evidence_ratio(points)
    conforme = conformity_from_ratio(ratio, policy)
    return DerivedStep(
        ratio=ratio,
        score=derived_score(ratio, weight),
        conforme=conforme,
        niveau_conformite=level_from_conformity(conforme, ratio, policy),
        total_citations=sum(len(p.citations) for p in points),
        minutages=unique_minutages(c.minutage for p in points for c in p.citations),
    )


def compute_audit_compliance(
    results: Iterable[StepResult],
    thresholds: ComplianceThresholds = DEFAULT_COMPLIANCE_THRESHOLDS,
) -> ComplianceSummary:
    """Compute the audit-level compliance summary from step results.

    Each step contributes ``min(max(0, score), weight)`` out of ``weight``. Any
    critical step that is not CONFORME rejects the audit outright.

    Args:
        results: Step results carrying ``step_metadata`` (weight, criticality).
        thresholds: Score percentages for each conformity level.

    Returns:
        The computed :class:`ComplianceSummary`.

    Raises:
        ConfigurationError: If a result has no step metadata.
    """
    total_weight = 0
    earned = 0
    critical_total = 0
    critical_passed = 0

    for result in results:
        meta = result.step_metadata
        if meta is None:
            msg = "Cannot compute compliance: step result without step_metadata"
            raise ConfigurationError(msg)
        weight = max(0, meta.weight)
        total_weight += weight
        earned += min(max(0, result.score), weight)
        if meta.is_critical:
            critical_total += 1
            if result.conforme == Conformity.CONFORME:
                critical_passed += 1

    score = (earned / total_weight) * 100 if total_weight > 0 else 0.0

    if critical_passed < critical_total:
        niveau = ConformityLevel.REJET
    elif score >= thresholds.excellent:
        niveau = ConformityLevel.EXCELLENT
    elif score >= thresholds.bon:
        niveau = ConformityLevel.BON
    elif score >= thresholds.acceptable:
        niveau = ConformityLevel.ACCEPTABLE
    else:
        niveau = ConformityLevel.INSUFFISANT

    return ComplianceSummary(
        score=round(score, 2),
        niveau=niveau,
        is_compliant=niveau != ConformityLevel.REJET,
        critical_passed=critical_passed,
        critical_total=critical_total,
    )
