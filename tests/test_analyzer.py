"""Tests for the Claude step analyzer (mocked, no API calls)."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from src.audit.analyzer import (
    ANALYSIS_RULES,
    SUBMIT_STEP_RESULT_TOOL,
    _parse_submission,
    analyze_step,
    build_step_prompt,
)
from src.audit.errors import AnalysisError
from src.audit.models import AuditConfig, Conformity, ProductContext, StepDefinition, TokenUsage
from src.transcript.index import ChunkIndex, build_chunk_index
from src.transcript.models import TimelineChunk, TimelineRecording

SUBMISSION: dict[str, Any] = {
    "traite": True,
    "score": 5,
    "conforme": "CONFORME",
    "niveau_conformite": "BON",
    "commentaire_global": "Enregistrement annoncé.",
    "points_controle": [
        {
            "point": "Annonce de l'enregistrement",
            "statut": "PRESENT",
            "commentaire": "Annoncé en début d'appel.",
            "citations": [
                {"recording_index": 0, "chunk_index": 0, "texte": "cet appel est enregistré", "minutage": "00:00"}
            ],
        }
    ],
}


def _index() -> ChunkIndex:
    return build_chunk_index(
        [
            TimelineRecording(
                recording_index=0,
                chunks=(
                    TimelineChunk(
                        chunk_index=0,
                        start_timestamp=0.0,
                        end_timestamp=12.0,
                        speakers=("speaker_0",),
                        full_text="speaker_0: Je vous informe que cet appel est enregistré.",
                    ),
                ),
            )
        ]
    )


def _step(**overrides: Any) -> StepDefinition:
    defaults: dict[str, Any] = {
        "position": 2,
        "name": "Enregistrement",
        "weight": 5,
        "is_critical": True,
        "control_points": ("Annonce de l'enregistrement",),
    }
    defaults.update(overrides)
    return StepDefinition(**defaults)


def _config() -> AuditConfig:
    return AuditConfig(id="cfg-1", name="Audit", system_prompt="Tu es auditeur qualité.", steps=[_step()])


def _tool_block(name: str, input: Any, block_id: str = "toolu_1") -> MagicMock:
    block = MagicMock()
    block.type = "tool_use"
    block.name = name
    block.input = input
    block.id = block_id
    return block


def _response(*blocks: MagicMock, input_tokens: int = 100, output_tokens: int = 20) -> MagicMock:
    response = MagicMock()
    response.content = list(blocks)
    response.usage = MagicMock(input_tokens=input_tokens, output_tokens=output_tokens)
    return response


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------


class TestBuildStepPrompt:
    def test_includes_step_details(self) -> None:
        """Step name, keywords and custom instructions all reach the prompt."""
        prompt = build_step_prompt(_step(keywords=("enregistré", "qualité"), custom_instructions="  Sois strict. "))

        assert "Audit step #2: Enregistrement" in prompt
        assert "Weight: 5 points (CRITICAL)" in prompt
        assert "1. Annonce de l'enregistrement" in prompt
        assert "Keywords to look for: enregistré, qualité" in prompt
        assert prompt.endswith("Additional instructions:\nSois strict.")

    def test_includes_product(self) -> None:
        product = ProductContext(name="Santé Plus", insurer="Mutuelle X", summary="Hospitalisation 100%.")
        prompt = build_step_prompt(_step(), product)
        assert "Product sold: Santé Plus (Mutuelle X)" in prompt
        assert "Hospitalisation 100%." in prompt

    def test_omits_blank_instructions(self) -> None:
        assert "Additional instructions" not in build_step_prompt(_step(custom_instructions="   "))


class TestParseSubmission:
    def test_accepts_json_string(self) -> None:
        """A JSON-string submission is parsed like a dict."""
        result = _parse_submission(json.dumps(SUBMISSION))
        assert result.score == 5
        assert result.conforme == Conformity.CONFORME

    def test_invalid_json(self) -> None:
        with pytest.raises(AnalysisError, match="not valid JSON"):
            _parse_submission("{not json")

    def test_schema_mismatch(self) -> None:
        """A submission that does not fit the step schema is an analysis error."""
        with pytest.raises(AnalysisError, match="schema"):
            _parse_submission({"score": -1, "conforme": "MAYBE"})


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class TestAnalyzeStep:
    @patch("src.audit.analyzer.Anthropic")
    def test_search_then_submit(self, mock_anthropic_cls: MagicMock) -> None:
        """Search results are fed back until the model submits its result."""
        mock_client = MagicMock()
        mock_anthropic_cls.return_value = mock_client
        mock_client.messages.create.side_effect = [
            _response(_tool_block("search_transcript", {"query": "enregistré"}, "toolu_search")),
            _response(_tool_block("submit_step_result", SUBMISSION, "toolu_submit"), input_tokens=300, output_tokens=50),
        ]

        result = analyze_step(_step(), _config(), _index())

        assert result.score == 5
        assert result.step_metadata is not None
        assert result.step_metadata.position == 2
        assert result.step_metadata.weight == 5
        assert result.step_metadata.is_critical is True
        assert result.usage == TokenUsage(input_tokens=400, output_tokens=70)
        assert mock_client.messages.create.call_count == 2

        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "any"}
        assert [t["name"] for t in kwargs["tools"]] == [
            "search_transcript",
            "get_transcript_chunks",
            SUBMIT_STEP_RESULT_TOOL["name"],
        ]
        assert kwargs["system"] == f"Tu es auditeur qualité.\n\n{ANALYSIS_RULES}"

        messages = kwargs["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        tool_result = messages[2]["content"][0]
        assert tool_result["type"] == "tool_result"
        assert tool_result["tool_use_id"] == "toolu_search"
        payload = json.loads(tool_result["content"])
        assert payload["matches"][0]["chunk_index"] == 0
        assert "enregistré" in tool_result["content"]

    def test_uses_given_client_and_string_input(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _response(_tool_block("submit_step_result", json.dumps(SUBMISSION)))

        result = analyze_step(_step(), _config(), _index(), client=client)

        assert result.points_controle[0].citations[0].texte == "cet appel est enregistré"

    def test_multiple_tool_calls_in_one_turn(self) -> None:
        """Every tool_use block in a turn gets its own tool_result."""
        client = MagicMock()
        client.messages.create.side_effect = [
            _response(
                _tool_block("search_transcript", {"query": "appel"}, "toolu_a"),
                _tool_block("get_transcript_chunks", {"chunks": [{"recording_index": 0, "chunk_index": 0}]}, "toolu_b"),
            ),
            _response(_tool_block("submit_step_result", SUBMISSION)),
        ]

        analyze_step(_step(), _config(), _index(), client=client)

        results = client.messages.create.call_args.kwargs["messages"][2]["content"]
        assert [r["tool_use_id"] for r in results] == ["toolu_a", "toolu_b"]
        assert json.loads(results[1]["content"])["returned"] == 1

    def test_tool_errors_are_reported_to_the_model(self) -> None:
        """Unknown tools produce an error result instead of aborting the loop."""
        client = MagicMock()
        client.messages.create.side_effect = [
            _response(_tool_block("delete_everything", {})),
            _response(_tool_block("submit_step_result", SUBMISSION)),
        ]

        analyze_step(_step(), _config(), _index(), client=client)

        content = client.messages.create.call_args.kwargs["messages"][2]["content"][0]["content"]
        assert "error" in json.loads(content)

    def test_no_tool_use_raises(self) -> None:
        """A text-only response never submits a result."""
        client = MagicMock()
        text_block = MagicMock()
        text_block.type = "text"
        client.messages.create.return_value = _response(text_block)

        with pytest.raises(AnalysisError, match="without submitting"):
            analyze_step(_step(), _config(), _index(), client=client)

    def test_invalid_submission_raises(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _response(_tool_block("submit_step_result", {"score": "beaucoup"}))

        with pytest.raises(AnalysisError):
            analyze_step(_step(), _config(), _index(), client=client)

    @patch("src.audit.analyzer.settings")
    def test_exceeding_tool_turns_raises(self, mock_settings: MagicMock) -> None:
        """The tool loop stops after the configured number of turns."""
        mock_settings.llm_max_tool_turns = 2
        client = MagicMock()
        client.messages.create.side_effect = lambda **_: _response(_tool_block("search_transcript", {"query": "x"}))

        with pytest.raises(AnalysisError, match="2 tool turns"):
            analyze_step(_step(), _config(), _index(), client=client)

        assert client.messages.create.call_count == 2

    def test_rules_only_system_prompt(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _response(_tool_block("submit_step_result", SUBMISSION))

        analyze_step(_step(), AuditConfig(id="c", name="n"), _index(), client=client)

        assert client.messages.create.call_args.kwargs["system"] == ANALYSIS_RULES
