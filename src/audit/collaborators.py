"""Interfaces of the external collaborators the audit pipeline depends on."""

from __future__ import annotations

from typing import Any, Protocol

from src.audit.models import AuditConfig, AuditRecord, ComplianceSummary, ProductContext, StepResult
from src.transcript.models import StoredRecording


class TranscriptSource(Protocol):
    """Durable per-recording transcript storage."""

    def load_recordings(self, fiche_id: str) -> list[StoredRecording]: ...


class AuditStore(Protocol):
    """Persistence for audits, audit configurations and re-run history."""

    def get_audit(self, audit_id: str) -> AuditRecord | None: ...

    def get_audit_config(self, config_id: str) -> AuditConfig | None: ...

    def record_rerun_event(self, audit_id: str, step_position: int, event: dict[str, Any]) -> None: ...

    def update_step_result(self, audit_id: str, step_position: int, result: StepResult) -> None: ...

    def update_audit_compliance(self, audit_id: str, compliance: ComplianceSummary) -> None: ...


class ProductLinker(Protocol):
    """Resolves the insurance product sold in a fiche, if any."""

    def link(self, fiche_id: str) -> ProductContext | None: ...
