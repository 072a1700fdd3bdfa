"""Double-check escalation for weak verdicts on high-stakes steps.

When the first (strict) pass finds little evidence for an important step, a
second pass runs with relaxed criteria and the better-supported result is kept.
Both passes are evidence-gated before they are compared.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from src.audit.analyzer import analyze_step
from src.audit.evidence import GatingStats, gate_step_result
from src.audit.models import AuditConfig, Conformity, ProductContext, StepDefinition, StepResult
from src.policy_config import (
    DEFAULT_DOUBLE_CHECK_POLICY,
    DEFAULT_GATING_POLICY,
    DoubleCheckPolicy,
    GatingPolicy,
)
from src.transcript.index import ChunkIndex

logger = logging.getLogger(__name__)

StepAnalyzer = Callable[..., StepResult]

RELAXED_VERIFICATION_INSTRUCTIONS = """\
SECOND VERIFICATION (RELAXED CRITERIA)

The first analysis found little or no evidence for this step. Advisors are
trained professionals who know their obligations, so search more broadly:

1. Broader search:
   - Accept indirect or implicit wording.
   - Consider the overall context of the conversation.
   - Look for synonyms and paraphrases ("cet échange" for "enregistrement",
     "vous pouvez changer d'avis" for "délai de rétractation").
2. Benefit of the doubt:
   - Information mentioned indirectly is PARTIEL, not NON_CONFORME.
   - Use NON_CONFORME only when a thorough search finds no trace at all.
3. Justify either way:
   - Explain why a wording is accepted or rejected.
   - Cite the relevant passages, even indirect ones, quoted exactly.
   - If still NON_CONFORME, state what should have been said."""


class DoubleCheckState(StrEnum):
    SINGLE_PASS = "SINGLE_PASS"
    DOUBLE_CHECKED = "DOUBLE_CHECKED"


@dataclass
class DoubleCheckOutcome:
    """The gated result chosen for a step and how it was chosen."""

    state: DoubleCheckState
    first_pass: StepResult
    final_result: StepResult
    gating_stats: GatingStats
    reasoning: str
    second_pass: StepResult | None = None


def should_double_check(
    result: StepResult,
    step: StepDefinition,
    policy: DoubleCheckPolicy = DEFAULT_DOUBLE_CHECK_POLICY,
) -> bool:
    """Return True if a weak verdict on an important step has thin evidence.

    All of the following must hold: the verdict is NON_CONFORME (or PARTIEL
    with a score under ``low_partiel_fraction`` of the weight); the step is
    critical or weighs at least ``high_stakes_weight``; fewer than
    ``few_citations`` citations were found.
    """
    weak = result.conforme == Conformity.NON_CONFORME or (
        result.conforme == Conformity.PARTIEL and result.score < step.weight * policy.low_partiel_fraction
    )
    important = step.weight >= policy.high_stakes_weight or step.is_critical
    return weak and important and result.total_citations < policy.few_citations


def relaxed_step(step: StepDefinition) -> StepDefinition:
    """Return ``step`` with the relaxed-verification block appended to its instructions."""
    base = (step.custom_instructions or "").strip()
    instructions = f"{base}\n\n{RELAXED_VERIFICATION_INSTRUCTIONS}" if base else RELAXED_VERIFICATION_INSTRUCTIONS
    return step.model_copy(update={"custom_instructions": instructions})


def choose_result(
    first: StepResult,
    second: StepResult,
    policy: DoubleCheckPolicy = DEFAULT_DOUBLE_CHECK_POLICY,
) -> tuple[StepResult, str]:
    """Pick between two gated passes.

    The second pass wins if it scores strictly higher, or if it scores within
    ``score_tie_tolerance`` points and carries strictly more citations.
    Otherwise the first (stricter) pass stands.

    Returns:
        The chosen result and a sentence explaining the choice.
    """
    if second.score > first.score:
        return second, (
            f"Second pass found more evidence ({second.score} vs {first.score}). "
            "Using relaxed verification result."
        )
    if abs(second.score - first.score) <= policy.score_tie_tolerance and second.total_citations > first.total_citations:
        return second, (
            f"Second pass provided more citations ({second.total_citations} vs {first.total_citations}) "
            "with a similar score. Using it for traceability."
        )
    return first, "First pass result confirmed after second verification."


def analyze_step_with_double_check(
    step: StepDefinition,
    audit_config: AuditConfig,
    index: ChunkIndex,
    product: ProductContext | None = None,
    *,
    analyze: StepAnalyzer = analyze_step,
    policy: DoubleCheckPolicy = DEFAULT_DOUBLE_CHECK_POLICY,
    gating_policy: GatingPolicy = DEFAULT_GATING_POLICY,
    gating_enabled: bool | None = None,
) -> DoubleCheckOutcome:
    """Analyze a step, escalating to a relaxed second pass when warranted.

    Args:
        step: The step to audit.
        audit_config: The audit configuration.
        index: Chunk index of the audited call.
        product: Optional product reference.
        analyze: Step analyzer, called as ``analyze(step, audit_config, index, product=...)``.
        policy: Escalation thresholds.
        gating_policy: Evidence gating thresholds.
        gating_enabled: Overrides ``settings.audit_evidence_gating``.

    Returns:
        A :class:`DoubleCheckOutcome` whose ``final_result`` is gated.
    """
    raw_first = analyze(step, audit_config, index, product=product)
    first, first_stats = gate_step_result(
        raw_first, index, weight=step.weight, policy=gating_policy, enabled=gating_enabled
    )

    if not should_double_check(first, step, policy):
        return DoubleCheckOutcome(
            state=DoubleCheckState.SINGLE_PASS,
            first_pass=first,
            final_result=first,
            gating_stats=first_stats,
            reasoning="First pass result is satisfactory; no double-check needed.",
        )

    logger.info(
        "Double-check triggered for step %d (%s): %d/%d %s with %d citations",
        step.position,
        step.name,
        first.score,
        step.weight,
        first.conforme.value,
        first.total_citations,
    )

    raw_second = analyze(relaxed_step(step), audit_config, index, product=product)
    second, second_stats = gate_step_result(
        raw_second, index, weight=step.weight, policy=gating_policy, enabled=gating_enabled
    )

    final, reasoning = choose_result(first, second, policy)
    stats = second_stats if final is second else first_stats

    if first.usage is not None and second.usage is not None:
        final = final.model_copy(update={"usage": first.usage.add(second.usage)})

    logger.info(
        "Double-check for step %d: first %d, second %d -> %s",
        step.position,
        first.score,
        second.score,
        reasoning,
    )

    return DoubleCheckOutcome(
        state=DoubleCheckState.DOUBLE_CHECKED,
        first_pass=first,
        second_pass=second,
        final_result=final,
        gating_stats=stats,
        reasoning=reasoning,
    )
