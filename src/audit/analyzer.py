"""Claude-powered analysis of a single audit step over transcript tools.

The model never receives the transcript itself. It discovers evidence with
``search_transcript``, reads verbatim text with ``get_transcript_chunks`` and
ends the conversation by calling ``submit_step_result``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from anthropic import Anthropic
from pydantic import ValidationError

from src.audit.errors import AnalysisError
from src.audit.models import AuditConfig, ProductContext, StepDefinition, StepMetadata, StepResult, TokenUsage
from src.audit.transcript_tools import TranscriptToolLimits, TranscriptTools
from src.config import settings
from src.transcript.index import ChunkIndex

logger = logging.getLogger(__name__)

_CITATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "recording_index": {"type": "integer", "description": "0-based recording index from the tool output."},
        "chunk_index": {"type": "integer", "description": "0-based chunk index from the tool output."},
        "texte": {"type": "string", "description": "Exact quote copied from full_text."},
        "minutage": {"type": "string", "description": "MM:SS timestamp from the tool output."},
        "minutage_secondes": {"type": "number"},
        "speaker": {"type": "string"},
        "recording_date": {"type": "string"},
        "recording_time": {"type": "string"},
        "recording_url": {"type": "string"},
    },
    "required": ["recording_index", "chunk_index", "texte", "minutage"],
}

# Tool definition for Claude structured output
SUBMIT_STEP_RESULT_TOOL: dict[str, Any] = {
    "name": "submit_step_result",
    "description": (
        "Submit the final verdict for this audit step. Call exactly once, after "
        "gathering evidence with the transcript tools."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "traite": {"type": "boolean", "description": "Whether the step was addressed in the call."},
            "score": {"type": "integer", "minimum": 0, "description": "Points awarded, between 0 and the step weight."},
            "conforme": {"type": "string", "enum": ["CONFORME", "PARTIEL", "NON_CONFORME"]},
            "niveau_conformite": {
                "type": "string",
                "enum": ["EXCELLENT", "BON", "ACCEPTABLE", "INSUFFISANT", "REJET"],
            },
            "commentaire_global": {"type": "string", "description": "Overall justification for the verdict."},
            "mots_cles_trouves": {"type": "array", "items": {"type": "string"}},
            "minutages": {"type": "array", "items": {"type": "string"}},
            "points_controle": {
                "type": "array",
                "description": "One entry per control point, in the configured order.",
                "items": {
                    "type": "object",
                    "properties": {
                        "point": {"type": "string", "description": "The control point text."},
                        "statut": {"type": "string", "enum": ["PRESENT", "PARTIEL", "ABSENT", "NON_APPLICABLE"]},
                        "commentaire": {"type": "string"},
                        "citations": {"type": "array", "items": _CITATION_SCHEMA},
                        "minutages": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["point", "statut", "commentaire", "citations"],
                },
            },
        },
        "required": ["score", "conforme", "niveau_conformite", "commentaire_global", "points_controle"],
    },
}

ANALYSIS_RULES = (
    "You audit recorded sales calls for regulatory compliance.\n\n"
    "Evidence rules:\n"
    "- Use search_transcript to locate relevant passages, then get_transcript_chunks "
    "to read them verbatim.\n"
    "- Every PRESENT or PARTIEL control point needs at least one citation whose "
    "texte is copied exactly from a chunk's full_text.\n"
    "- ABSENT and NON_APPLICABLE control points have no citations.\n"
    "- Copy recording_index, chunk_index, minutage and recording_* fields from the "
    "tool output; indices are 0-based.\n"
    "- Tolerate speech-to-text errors and phonetic variants when judging meaning, "
    "but never invent quotes.\n"
    "- Finish by calling submit_step_result once."
)


def build_step_prompt(step: StepDefinition, product: ProductContext | None = None) -> str:
    """Build the user message describing the step to audit."""
    lines = [
        f"Audit step #{step.position}: {step.name}",
        f"Weight: {step.weight} points{' (CRITICAL)' if step.is_critical else ''}",
    ]
    if step.description:
        lines.append(f"Description: {step.description}")
    if step.control_points:
        lines.append("\nControl points:")
        lines.extend(f"{i}. {text}" for i, text in enumerate(step.control_points, start=1))
    if step.keywords:
        lines.append(f"\nKeywords to look for: {', '.join(step.keywords)}")
    if product is not None:
        lines.append(f"\nProduct sold: {product.name}" + (f" ({product.insurer})" if product.insurer else ""))
        if product.summary:
            lines.append(product.summary)
    if step.custom_instructions and step.custom_instructions.strip():
        lines.append(f"\nAdditional instructions:\n{step.custom_instructions.strip()}")
    return "\n".join(lines)


def _build_system_prompt(audit_config: AuditConfig) -> str:
    if audit_config.system_prompt.strip():
        return f"{audit_config.system_prompt.strip()}\n\n{ANALYSIS_RULES}"
    return ANALYSIS_RULES


def _usage_from_response(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(input_tokens=usage.input_tokens or 0, output_tokens=usage.output_tokens or 0)


def _parse_submission(data: Any) -> StepResult:
    """Parse the ``submit_step_result`` input into a StepResult."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            msg = f"submit_step_result input is not valid JSON: {exc}"
            raise AnalysisError(msg) from exc
    try:
        return StepResult.model_validate(data)
    except ValidationError as exc:
        msg = f"submit_step_result input does not match the step result schema: {exc}"
        raise AnalysisError(msg) from exc


def analyze_step(
    step: StepDefinition,
    audit_config: AuditConfig,
    index: ChunkIndex,
    product: ProductContext | None = None,
    client: Anthropic | None = None,
    limits: TranscriptToolLimits | None = None,
) -> StepResult:
    """Analyze one audit step with Claude over the transcript tools.

    Transcript tool calls are executed in order and their JSON results sent
    back as ``tool_result`` blocks until the model submits its verdict.

    Args:
        step: The step to audit.
        audit_config: The audit configuration (system prompt).
        index: Chunk index of the audited call.
        product: Optional product reference for product-verification steps.
        client: Anthropic client. Created from settings if omitted.
        limits: Transcript tool limits. Defaults to settings.

    Returns:
        The model's (ungated) StepResult with ``step_metadata`` and ``usage``.

    Raises:
        AnalysisError: If the model stops without submitting, submits an
            unparseable result, or exceeds ``settings.llm_max_tool_turns``.
    """
    client = client or Anthropic(api_key=settings.anthropic_api_key)
    tools = TranscriptTools(index, limits)
    system = _build_system_prompt(audit_config)
    messages: list[dict[str, Any]] = [{"role": "user", "content": build_step_prompt(step, product)}]
    usage = TokenUsage()

    logger.info("Analyzing step %d (%s) over %d chunks", step.position, step.name, len(index))

    for turn in range(settings.llm_max_tool_turns):
        response = client.messages.create(
            model=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            system=system,
            tools=[*tools.definitions, SUBMIT_STEP_RESULT_TOOL],
            tool_choice={"type": "any"},
            messages=messages,
        )
        usage = usage.add(_usage_from_response(response))

        tool_uses = [block for block in response.content if block.type == "tool_use"]
        submission = next((b for b in tool_uses if b.name == SUBMIT_STEP_RESULT_TOOL["name"]), None)
        if submission is not None:
            result = _parse_submission(submission.input)
            result.step_metadata = StepMetadata(
                position=step.position,
                name=step.name,
                weight=step.weight,
                is_critical=step.is_critical,
            )
            result.usage = usage
            logger.info(
                "Step %d analyzed in %d turns: score %d/%d (%s), %d citations, %d tokens",
                step.position,
                turn + 1,
                result.score,
                step.weight,
                result.conforme.value,
                result.total_citations,
                usage.total_tokens,
            )
            return result

        if not tool_uses:
            msg = f"Model ended step {step.position} without submitting a result"
            raise AnalysisError(msg)

        messages.append({"role": "assistant", "content": response.content})
        messages.append(
            {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": json.dumps(tools.execute(block.name, block.input), ensure_ascii=False),
                    }
                    for block in tool_uses
                ],
            }
        )

    msg = f"Step {step.position} exceeded {settings.llm_max_tool_turns} tool turns without a result"
    raise AnalysisError(msg)
