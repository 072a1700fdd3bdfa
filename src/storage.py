"""Supabase storage for audits, audit configurations and transcripts."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from supabase import Client, create_client

from src.audit.models import (
    AuditConfig,
    AuditRecord,
    ComplianceSummary,
    ProductContext,
    StepDefinition,
    StepMetadata,
    StepResult,
)
from src.config import settings
from src.transcript.models import StoredRecording, TimelineChunk, TranscriptWord

logger = logging.getLogger(__name__)


def get_supabase_client() -> Client:
    """Create and return a Supabase client from settings."""
    return create_client(settings.supabase_url, settings.supabase_key)


def _parse_words(raw: Any) -> list[TranscriptWord]:
    if not isinstance(raw, list):
        return []
    words: list[TranscriptWord] = []
    for w in raw:
        if not isinstance(w, dict) or "text" not in w:
            continue
        words.append(
            TranscriptWord(
                text=str(w["text"]),
                start=float(w.get("start") or 0.0),
                end=float(w.get("end") or 0.0),
                type=str(w.get("type") or "word"),
                speaker_id=w.get("speaker_id"),
            )
        )
    return words


class SupabaseTranscriptSource:
    """Loads per-recording transcripts of a fiche from Supabase."""

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or get_supabase_client()

    def _load_chunks(self, call_id: str) -> list[TimelineChunk]:
        result = (
            self.client.table("transcription_chunks")
            .select("*")
            .eq("call_id", call_id)
            .order("chunk_index")
            .execute()
        )
        return [
            TimelineChunk(
                chunk_index=int(row["chunk_index"]),
                start_timestamp=float(row.get("start_timestamp") or 0.0),
                end_timestamp=float(row.get("end_timestamp") or 0.0),
                speakers=tuple(row.get("speakers") or ()),
                full_text=row.get("full_text") or "",
                message_count=int(row.get("message_count") or 0),
            )
            for row in result.data or []
        ]

    def load_recordings(self, fiche_id: str) -> list[StoredRecording]:
        result = (
            self.client.table("recordings")
            .select("*")
            .eq("fiche_id", fiche_id)
            .order("recording_date")
            .order("recording_time")
            .execute()
        )
        recordings: list[StoredRecording] = []
        for row in result.data or []:
            call_id = str(row["call_id"])
            has_transcription = bool(row.get("has_transcription"))
            recordings.append(
                StoredRecording(
                    call_id=call_id,
                    recording_url=row.get("recording_url") or "",
                    recording_date=row.get("recording_date") or "",
                    recording_time=row.get("recording_time") or "",
                    duration_seconds=row.get("duration_seconds"),
                    has_transcription=has_transcription,
                    chunks=self._load_chunks(call_id) if has_transcription else [],
                    words=_parse_words(row.get("transcription_words")),
                    transcription_text=row.get("transcription_text"),
                )
            )
        return recordings


class SupabaseAuditStore:
    """Audit persistence backed by Supabase tables.

    Tables: ``audits``, ``audit_step_results`` (one JSON ``result`` per step),
    ``audit_configs``, ``audit_steps`` and ``audit_rerun_events``.
    """

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or get_supabase_client()

    def get_audit(self, audit_id: str) -> AuditRecord | None:
        """Load an audit with its step results.

        Stored results lacking ``step_metadata`` get it from the row's
        ``step_position`` and the matching step of the audit config.
        """
        result = self.client.table("audits").select("*").eq("id", audit_id).limit(1).execute()
        if not result.data:
            return None
        row = result.data[0]
        config_id = str(row["audit_config_id"])

        steps = (
            self.client.table("audit_step_results")
            .select("step_position, result")
            .eq("audit_id", audit_id)
            .order("step_position")
            .execute()
        )

        config: AuditConfig | None = None
        config_loaded = False
        step_results: list[StepResult] = []
        for s in steps.data or []:
            step_result = StepResult.model_validate(s["result"])
            if step_result.step_metadata is None:
                if not config_loaded:
                    config = self.get_audit_config(config_id)
                    config_loaded = True
                position = int(s["step_position"])
                step = config.step(position) if config else None
                if step is None:
                    logger.warning(
                        "Audit %s step %d has no step_metadata and no definition in config %s",
                        audit_id,
                        position,
                        config_id,
                    )
                else:
                    step_result.step_metadata = StepMetadata(
                        position=step.position,
                        name=step.name,
                        weight=step.weight,
                        is_critical=step.is_critical,
                    )
            step_results.append(step_result)

        return AuditRecord(
            id=str(row["id"]),
            fiche_id=str(row["fiche_id"]),
            audit_config_id=config_id,
            step_results=step_results,
            compliance=ComplianceSummary.model_validate(row["compliance"]) if row.get("compliance") else None,
        )

    def get_audit_config(self, config_id: str) -> AuditConfig | None:
        result = self.client.table("audit_configs").select("*").eq("id", config_id).limit(1).execute()
        if not result.data:
            return None
        row = result.data[0]

        steps = (
            self.client.table("audit_steps")
            .select("*")
            .eq("audit_config_id", config_id)
            .order("position")
            .execute()
        )
        return AuditConfig(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description") or "",
            system_prompt=row.get("system_prompt") or "",
            steps=[
                StepDefinition(
                    position=int(s["position"]),
                    name=s["name"],
                    weight=int(s["weight"]),
                    is_critical=bool(s.get("is_critical")),
                    control_points=tuple(s.get("control_points") or ()),
                    custom_instructions=s.get("custom_instructions"),
                    verify_product_info=bool(s.get("verify_product_info")),
                    keywords=tuple(s.get("keywords") or ()),
                    description=s.get("description") or "",
                )
                for s in steps.data or []
            ],
        )

    def record_rerun_event(self, audit_id: str, step_position: int, event: dict[str, Any]) -> None:
        self.client.table("audit_rerun_events").insert(
            {
                "audit_id": audit_id,
                "step_position": step_position,
                "kind": event.get("kind", "step_rerun"),
                "occurred_at": event.get("occurred_at") or datetime.now(UTC).isoformat(),
                "payload": event,
            }
        ).execute()

    def update_step_result(self, audit_id: str, step_position: int, result: StepResult) -> None:
        (
            self.client.table("audit_step_results")
            .update({"result": result.model_dump(mode="json"), "score": result.score, "conforme": result.conforme.value})
            .eq("audit_id", audit_id)
            .eq("step_position", step_position)
            .execute()
        )

    def update_audit_compliance(self, audit_id: str, compliance: ComplianceSummary) -> None:
        (
            self.client.table("audits")
            .update(
                {
                    "compliance": compliance.model_dump(mode="json"),
                    "score_percentage": compliance.score,
                    "niveau": compliance.niveau.value,
                    "is_compliant": compliance.is_compliant,
                }
            )
            .eq("id", audit_id)
            .execute()
        )
        logger.info("Audit %s compliance updated: %.2f%% %s", audit_id, compliance.score, compliance.niveau.value)


class SupabaseProductLinker:
    """Resolves a fiche's product from the ``fiche_products`` table."""

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or get_supabase_client()

    def link(self, fiche_id: str) -> ProductContext | None:
        result = self.client.table("fiche_products").select("*").eq("fiche_id", fiche_id).limit(1).execute()
        if not result.data:
            logger.info("No product linked to fiche %s", fiche_id)
            return None
        row = result.data[0]
        return ProductContext(
            name=row["product_name"],
            insurer=row.get("insurer") or "",
            summary=row.get("summary") or "",
            details=row.get("details") or {},
        )
