"""Policy configuration: thresholds used by evidence gating and double-checking."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class GatingPolicy:
    """Immutable thresholds for deterministic evidence gating.

    Ratios are computed over applicable control points (PRESENT = 1,
    PARTIEL = 0.5, ABSENT = 0).
    """

    min_quote_chars: int = 12
    conforme_ratio: float = 0.85
    partiel_ratio: float = 0.40
    excellent_ratio: float = 0.95


@dataclass(frozen=True)
class DoubleCheckPolicy:
    """Immutable thresholds deciding when a relaxed second pass is run.

    A step qualifies when its verdict is weak, the step is high-stakes, and the
    first pass found few citations.
    """

    low_partiel_fraction: float = 0.3
    high_stakes_weight: int = 7
    few_citations: int = 3
    score_tie_tolerance: int = 1


@dataclass(frozen=True)
class ComplianceThresholds:
    """Audit-level score percentages for each conformity level."""

    excellent: float = 90.0
    bon: float = 75.0
    acceptable: float = 60.0


DEFAULT_GATING_POLICY = GatingPolicy()
DEFAULT_DOUBLE_CHECK_POLICY = DoubleCheckPolicy()
DEFAULT_COMPLIANCE_THRESHOLDS = ComplianceThresholds()
