"""Tests for citation validation and evidence gating (no external APIs required)."""

from __future__ import annotations

from typing import Any

import pytest

from src.audit.errors import ConfigurationError
from src.audit.evidence import (
    CONTROL_POINT_DOWNGRADE_NOTE,
    SCORE_REDUCED_NOTE,
    GatingStats,
    enrich_citations,
    gate_step_result,
    gate_step_results,
    is_citation_valid,
)
from src.audit.models import (
    Citation,
    Conformity,
    ConformityLevel,
    ControlPoint,
    ControlPointStatus,
    StepMetadata,
    StepResult,
)
from src.policy_config import GatingPolicy
from src.transcript.index import ChunkIndex, build_chunk_index
from src.transcript.models import TimelineChunk, TimelineRecording

CHUNK_TEXTS = [
    "speaker_0: Bonjour madame, je suis conseiller chez Net Courtage Assurance.",
    "speaker_0: Je vous informe que cet appel est enregistré pour la qualité.",
    "speaker_0: Vous disposez d'un délai de rétractation de quatorze jours.",
]

VALID_QUOTE_1 = "cet appel est enregistré"
VALID_QUOTE_2 = "Délai de rétractation de quatorze jours"


def _index() -> ChunkIndex:
    return build_chunk_index(
        [
            TimelineRecording(
                recording_index=0,
                recording_date="02/03/2025",
                recording_time="10:15",
                recording_url="https://rec/0.mp3",
                chunks=tuple(
                    TimelineChunk(
                        chunk_index=i,
                        start_timestamp=i * 30.0,
                        end_timestamp=i * 30.0 + 30.0,
                        speakers=("speaker_0",),
                        full_text=text,
                    )
                    for i, text in enumerate(CHUNK_TEXTS)
                ),
            )
        ]
    )


def _citation(chunk_index: int, texte: str, minutage: str = "00:30", recording_index: int = 0) -> Citation:
    return Citation(recording_index=recording_index, chunk_index=chunk_index, texte=texte, minutage=minutage)


def _point(statut: ControlPointStatus, *citations: Citation, commentaire: str = "") -> ControlPoint:
    return ControlPoint(point="Point", statut=statut, commentaire=commentaire, citations=list(citations))


def _make_result(points: list[ControlPoint], **overrides: Any) -> StepResult:
    defaults: dict[str, Any] = {
        "score": 10,
        "conforme": Conformity.CONFORME,
        "niveau_conformite": ConformityLevel.EXCELLENT,
        "commentaire_global": "Analyse.",
        "points_controle": points,
        "step_metadata": StepMetadata(position=1, name="Présentation", weight=10),
    }
    defaults.update(overrides)
    return StepResult(**defaults)


# ---------------------------------------------------------------------------
# Citation validity
# ---------------------------------------------------------------------------


class TestIsCitationValid:
    def test_exact_substring_after_normalization(self) -> None:
        """Case, accents and punctuation are ignored when matching quotes."""
        assert is_citation_valid(_citation(1, "Cet APPEL, est enregistre !"), _index())

    def test_quote_in_other_chunk_is_invalid(self) -> None:
        """A quote must appear in the chunk it references."""
        assert not is_citation_valid(_citation(2, VALID_QUOTE_1), _index())

    def test_unresolvable_reference(self) -> None:
        assert not is_citation_valid(_citation(9, VALID_QUOTE_1), _index())
        assert not is_citation_valid(_citation(1, VALID_QUOTE_1, recording_index=3), _index())

    def test_short_quote_is_invalid(self) -> None:
        """Quotes below the minimum length are not evidence."""
        assert not is_citation_valid(_citation(0, "Bonjour"), _index())

    def test_minimum_length_is_configurable(self) -> None:
        assert is_citation_valid(_citation(0, "Bonjour"), _index(), GatingPolicy(min_quote_chars=5))

    def test_empty_quote_is_invalid(self) -> None:
        assert not is_citation_valid(_citation(0, " ... "), _index(), GatingPolicy(min_quote_chars=0))

    def test_empty_index(self) -> None:
        assert not is_citation_valid(_citation(1, VALID_QUOTE_1), build_chunk_index([]))


# ---------------------------------------------------------------------------
# Gating
# ---------------------------------------------------------------------------


class TestGateStepResult:
    def test_hallucinated_quote_downgrades_to_absent(self) -> None:
        """A point whose only quote is fabricated becomes ABSENT."""
        result = _make_result(
            [
                _point(
                    ControlPointStatus.PRESENT,
                    _citation(2, "le conseiller a mentionné l'ORIAS"),
                    commentaire="Mentionné.",
                )
            ]
        )

        gated, stats = gate_step_result(result, _index())

        cp = gated.points_controle[0]
        assert cp.statut == ControlPointStatus.ABSENT
        assert cp.citations == []
        assert cp.minutages == []
        assert cp.commentaire == f"Mentionné.\n{CONTROL_POINT_DOWNGRADE_NOTE}"
        assert stats.downgraded_control_points == 1
        assert stats.removed_citations == 1
        assert stats.total_citations == 1

    def test_score_and_conformity_rederived(self) -> None:
        """Score and conformity are recomputed from the surviving evidence."""
        result = _make_result(
            [
                _point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1)),
                _point(ControlPointStatus.PARTIEL, _citation(2, VALID_QUOTE_2, "01:00")),
            ],
            score=9,
            conforme=Conformity.CONFORME,
            niveau_conformite=ConformityLevel.EXCELLENT,
        )

        gated, stats = gate_step_result(result, _index(), weight=10)

        assert gated.score == 8
        assert gated.conforme == Conformity.PARTIEL
        assert gated.niveau_conformite == ConformityLevel.ACCEPTABLE
        assert SCORE_REDUCED_NOTE in gated.commentaire_global
        assert gated.commentaire_global.startswith("Analyse.\n\n[Auto-check]")
        assert gated.commentaire_global.count("[Auto-check]") == 2
        assert stats.steps_score_reduced == 1
        assert stats.steps_conforme_adjusted == 1
        assert gated.minutages == ["00:30", "01:00"]

    def test_never_increases_score_or_conformity(self) -> None:
        """Gating only ever lowers the model's verdict."""
        result = _make_result(
            [_point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1))],
            score=2,
            conforme=Conformity.NON_CONFORME,
            niveau_conformite=ConformityLevel.INSUFFISANT,
        )

        gated, stats = gate_step_result(result, _index())

        assert gated.score == 2
        assert gated.conforme == Conformity.NON_CONFORME
        assert gated.niveau_conformite == ConformityLevel.INSUFFISANT
        assert gated.commentaire_global == "Analyse."
        assert stats.steps_score_reduced == 0

    def test_score_capped_at_weight(self) -> None:
        result = _make_result([_point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1))], score=12)
        gated, _ = gate_step_result(result, _index(), weight=10)
        assert gated.score == 10

    def test_absent_and_not_applicable_lose_citations(self) -> None:
        """Points without a positive status keep no citations."""
        result = _make_result(
            [
                _point(ControlPointStatus.ABSENT, _citation(1, VALID_QUOTE_1)),
                _point(ControlPointStatus.NON_APPLICABLE, _citation(2, VALID_QUOTE_2)),
            ],
            score=0,
            conforme=Conformity.NON_CONFORME,
            niveau_conformite=ConformityLevel.INSUFFISANT,
        )

        gated, stats = gate_step_result(result, _index())

        for cp in gated.points_controle:
            assert cp.citations == []
            assert cp.minutages == []
        assert stats.removed_citations == 2
        assert stats.downgraded_control_points == 0

    def test_all_not_applicable_keeps_verdict(self) -> None:
        result = _make_result([_point(ControlPointStatus.NON_APPLICABLE)])
        gated, stats = gate_step_result(result, _index())
        assert gated.score == 10
        assert gated.conforme == Conformity.CONFORME
        assert stats.steps_score_reduced == 0

    def test_minutages_deduplicated_in_first_seen_order(self) -> None:
        result = _make_result(
            [
                _point(
                    ControlPointStatus.PRESENT,
                    _citation(2, VALID_QUOTE_2, "01:00"),
                    _citation(1, VALID_QUOTE_1, "00:30"),
                    _citation(2, "délai de rétractation", "01:00"),
                )
            ]
        )
        gated, _ = gate_step_result(result, _index())
        assert gated.points_controle[0].minutages == ["01:00", "00:30"]
        assert gated.minutages == ["01:00", "00:30"]

    def test_input_is_not_mutated(self) -> None:
        """The analyzer's result is left untouched."""
        result = _make_result([_point(ControlPointStatus.PRESENT, _citation(0, "pas dans le texte du tout"))])
        before = result.model_dump()

        gate_step_result(result, _index())

        assert result.model_dump() == before

    def test_idempotent(self) -> None:
        """Gating an already gated result changes nothing."""
        result = _make_result(
            [
                _point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1)),
                _point(ControlPointStatus.PRESENT, _citation(0, "citation inventée de toutes pièces")),
                _point(ControlPointStatus.PARTIEL, _citation(2, VALID_QUOTE_2)),
            ],
            score=9,
        )

        once, _ = gate_step_result(result, _index())
        twice, stats = gate_step_result(once, _index())

        assert twice.model_dump() == once.model_dump()
        assert stats.removed_citations == 0
        assert stats.downgraded_control_points == 0
        assert stats.steps_score_reduced == 0
        assert stats.steps_conforme_adjusted == 0

    def test_no_unevidenced_affirmations(self) -> None:
        """Every remaining PRESENT or PARTIEL point has a valid citation."""
        result = _make_result(
            [
                _point(ControlPointStatus.PRESENT),
                _point(ControlPointStatus.PARTIEL, _citation(5, VALID_QUOTE_1)),
                _point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1)),
            ]
        )
        gated, _ = gate_step_result(result, _index())
        for cp in gated.points_controle:
            if cp.statut in (ControlPointStatus.PRESENT, ControlPointStatus.PARTIEL):
                assert cp.citations
                assert all(is_citation_valid(c, _index()) for c in cp.citations)

    def test_weight_from_step_metadata(self) -> None:
        result = _make_result(
            [_point(ControlPointStatus.ABSENT)],
            score=4,
            step_metadata=StepMetadata(position=1, name="x", weight=4),
        )
        gated, _ = gate_step_result(result, _index())
        assert gated.score == 0

    def test_missing_weight_raises(self) -> None:
        """Without a weight or step metadata there is nothing to cap against."""
        result = _make_result([_point(ControlPointStatus.ABSENT)], step_metadata=None)
        with pytest.raises(ConfigurationError):
            gate_step_result(result, _index())

    def test_disabled_passes_through(self) -> None:
        """With gating disabled the result is copied unchanged."""
        result = _make_result([_point(ControlPointStatus.PRESENT)], step_metadata=None)
        gated, stats = gate_step_result(result, _index(), enabled=False)
        assert gated.model_dump() == result.model_dump()
        assert gated is not result
        assert stats.enabled is False
        assert stats.total_citations == 0

    def test_empty_index_invalidates_everything(self) -> None:
        result = _make_result([_point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1))])
        gated, stats = gate_step_result(result, build_chunk_index([]))
        assert gated.points_controle[0].statut == ControlPointStatus.ABSENT
        assert gated.score == 0
        assert gated.conforme == Conformity.NON_CONFORME
        assert stats.removed_citations == 1


class TestGateStepResults:
    def test_aggregates_stats(self) -> None:
        """Stats from every step are summed."""
        bad = _make_result([_point(ControlPointStatus.PRESENT, _citation(0, "jamais prononcé dans l'appel"))])
        good = _make_result([_point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1))])

        gated, stats = gate_step_results([bad, good], _index())

        assert len(gated) == 2
        assert stats.total_citations == 2
        assert stats.removed_citations == 1
        assert stats.downgraded_control_points == 1
        assert stats.steps_score_reduced == 1
        assert stats.enabled is True

    def test_disabled(self) -> None:
        _, stats = gate_step_results([_make_result([])], _index(), enabled=False)
        assert stats.enabled is False


class TestGatingStats:
    def test_merge_and_to_dict(self) -> None:
        total = GatingStats(total_citations=2, removed_citations=1)
        total.merge(GatingStats(total_citations=3, steps_score_reduced=1))
        assert total.to_dict() == {
            "enabled": True,
            "total_citations": 5,
            "removed_citations": 1,
            "downgraded_control_points": 0,
            "steps_score_reduced": 1,
            "steps_conforme_adjusted": 0,
        }


class TestEnrichCitations:
    def test_fills_recording_metadata(self) -> None:
        """Recording date, time and URL come from the index."""
        result = _make_result([_point(ControlPointStatus.PRESENT, _citation(1, VALID_QUOTE_1))])

        enriched = enrich_citations(result, _index())

        citation = enriched.points_controle[0].citations[0]
        assert citation.recording_url == "https://rec/0.mp3"
        assert citation.recording_date == "02/03/2025"
        assert citation.recording_time == "10:15"
        assert citation.minutage_secondes == 30.0
        assert result.points_controle[0].citations[0].recording_url == "N/A"

    def test_unresolvable_citation_left_alone(self) -> None:
        result = _make_result([_point(ControlPointStatus.PRESENT, _citation(9, VALID_QUOTE_1))])
        enriched = enrich_citations(result, _index())
        assert enriched.points_controle[0].citations[0].recording_url == "N/A"
