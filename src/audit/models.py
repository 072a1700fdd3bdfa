"""Pydantic models for audit configuration and step results.

Field names follow the stored audit payload (French domain vocabulary), so a
step result round-trips unchanged between the model, the gate and storage.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ControlPointStatus(StrEnum):
    """Verdict for a single control point."""

    PRESENT = "PRESENT"
    PARTIEL = "PARTIEL"
    ABSENT = "ABSENT"
    NON_APPLICABLE = "NON_APPLICABLE"


class Conformity(StrEnum):
    """Step-level verdict, ordered CONFORME > PARTIEL > NON_CONFORME."""

    CONFORME = "CONFORME"
    PARTIEL = "PARTIEL"
    NON_CONFORME = "NON_CONFORME"


class ConformityLevel(StrEnum):
    """Qualitative conformity level for a step or a whole audit."""

    EXCELLENT = "EXCELLENT"
    BON = "BON"
    ACCEPTABLE = "ACCEPTABLE"
    INSUFFISANT = "INSUFFISANT"
    REJET = "REJET"


class Citation(BaseModel):
    """A quoted transcript passage backing a control-point verdict."""

    recording_index: int
    chunk_index: int
    texte: str
    minutage: str = ""
    minutage_secondes: float | None = None
    speaker: str = ""
    recording_date: str = "N/A"
    recording_time: str = "N/A"
    recording_url: str = "N/A"


class ControlPoint(BaseModel):
    """One yes/no/partial compliance question within a step."""

    point: str
    statut: ControlPointStatus
    commentaire: str = ""
    citations: list[Citation] = []
    minutages: list[str] = []


class StepMetadata(BaseModel):
    """Configuration facts attached to a step result by the analyzer."""

    position: int
    name: str
    weight: int = Field(ge=0)
    is_critical: bool = False


class TokenUsage(BaseModel):
    """Token counts accumulated over one analyzer call."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class StepResult(BaseModel):
    """The verdict for one audit step."""

    traite: bool = True
    score: int = Field(ge=0)
    conforme: Conformity
    niveau_conformite: ConformityLevel
    commentaire_global: str = ""
    mots_cles_trouves: list[str] = []
    minutages: list[str] = []
    points_controle: list[ControlPoint] = []
    step_metadata: StepMetadata | None = None
    usage: TokenUsage | None = None

    @property
    def total_citations(self) -> int:
        return sum(len(cp.citations) for cp in self.points_controle)


class StepDefinition(BaseModel):
    """A configured audit step. Read-only during an audit."""

    model_config = ConfigDict(frozen=True)

    position: int
    name: str
    weight: int = Field(ge=0)
    is_critical: bool = False
    control_points: tuple[str, ...] = ()
    custom_instructions: str | None = None
    verify_product_info: bool = False
    keywords: tuple[str, ...] = ()
    description: str = ""


class AuditConfig(BaseModel):
    """A named audit configuration: system prompt plus ordered steps."""

    id: str
    name: str
    description: str = ""
    system_prompt: str = ""
    steps: list[StepDefinition] = []

    def step(self, position: int) -> StepDefinition | None:
        """Return the step definition at ``position``, or None."""
        return next((s for s in self.steps if s.position == position), None)


class ProductContext(BaseModel):
    """Reference product information used by product-verification steps."""

    name: str
    insurer: str = ""
    summary: str = ""
    details: dict[str, Any] = {}


class ComplianceSummary(BaseModel):
    """Audit-level compliance computed from all step results."""

    score: float
    niveau: ConformityLevel
    is_compliant: bool
    critical_passed: int
    critical_total: int


class AuditRecord(BaseModel):
    """A stored audit with its step results."""

    id: str
    fiche_id: str
    audit_config_id: str
    step_results: list[StepResult] = []
    compliance: ComplianceSummary | None = None

    def step_result(self, position: int) -> StepResult | None:
        """Return the stored result for the step at ``position``, or None."""
        return next(
            (r for r in self.step_results if r.step_metadata and r.step_metadata.position == position),
            None,
        )
