"""Command-line entry point for evidence gating, transcript search and re-runs.

Run as a module::

    python -m src.audit.cli gate --result step.json --timeline timeline.json
    python -m src.audit.cli search --timeline timeline.json --query "délai de rétractation"
    python -m src.audit.cli rerun-step --audit-id 42 --step 3 --prompt "..." --save
    python -m src.audit.cli rerun-control-point --audit-id 42 --step 3 --control-point 2

Every command prints JSON to stdout. Use ``--help`` for full argument
documentation.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from src.audit.errors import AnalysisError
from src.audit.evidence import enrich_citations, gate_step_result, gate_step_results
from src.audit.models import StepResult
from src.audit.transcript_tools import TranscriptToolLimits, search
from src.transcript.index import build_chunk_index
from src.transcript.models import timeline_from_payload

logger = logging.getLogger(__name__)


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


# ── Commands ──────────────────────────────────────────────────────────────


def cmd_gate(args: argparse.Namespace) -> int:
    """Gate one step result (JSON object) or several (JSON array) against a timeline."""
    index = build_chunk_index(timeline_from_payload(_load_json(args.timeline)))
    payload = _load_json(args.result)

    if isinstance(payload, list):
        results = [StepResult.model_validate(p) for p in payload]
        gated, stats = gate_step_results(results, index)
        _print_json(
            {
                "step_results": [enrich_citations(r, index).model_dump(mode="json") for r in gated],
                "stats": stats.to_dict(),
            }
        )
        return 0

    result = StepResult.model_validate(payload)
    gated_one, stats = gate_step_result(result, index, weight=args.weight)
    _print_json({"step_result": enrich_citations(gated_one, index).model_dump(mode="json"), "stats": stats.to_dict()})
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    index = build_chunk_index(timeline_from_payload(_load_json(args.timeline)))
    _print_json(
        search(
            index,
            args.query,
            max_results=args.max_results,
            min_term_length=args.min_term_length,
            limits=TranscriptToolLimits.from_settings(),
        )
    )
    return 0


def _build_rerun_service() -> Any:
    # Imported here to avoid forcing a DB connection for offline commands
    from src.audit.rerun import RerunService
    from src.storage import SupabaseAuditStore, SupabaseProductLinker, SupabaseTranscriptSource, get_supabase_client

    client = get_supabase_client()
    return RerunService(
        store=SupabaseAuditStore(client),
        transcripts=SupabaseTranscriptSource(client),
        product_linker=SupabaseProductLinker(client),
    )


def cmd_rerun_step(args: argparse.Namespace) -> int:
    service = _build_rerun_service()
    comparison = service.rerun_step(args.audit_id, args.step, custom_prompt=args.prompt)
    output = comparison.to_dict()
    if args.save:
        output["audit_updated"] = service.save_step_rerun(comparison, update_audit=args.update_audit)
    _print_json(output)
    return 0


def cmd_rerun_control_point(args: argparse.Namespace) -> int:
    service = _build_rerun_service()
    comparison = service.rerun_control_point(
        args.audit_id, args.step, args.control_point, custom_prompt=args.prompt
    )
    output = comparison.to_dict()
    if args.save:
        output["audit_updated"] = service.save_control_point_rerun(comparison, update_audit=args.update_audit)
    _print_json(output)
    return 0


# ── CLI entry point ────────────────────────────────────────────────────────


def _add_rerun_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--audit-id", required=True, help="ID of the stored audit.")
    parser.add_argument("--step", type=int, required=True, metavar="POSITION", help="Step position to re-run.")
    parser.add_argument(
        "--prompt",
        default=None,
        help="Operator instructions given priority over the step's configured instructions.",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        default=False,
        help="Record the re-run in the audit's re-run history.",
    )
    parser.add_argument(
        "--update-audit",
        action="store_true",
        default=False,
        help="With --save, replace the stored step result and recompute audit compliance.",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="python -m src.audit.cli",
        description=(
            "Call audit evidence tools\n\n"
            "Gate step results against the transcript, search a transcript the way\n"
            "the model does, or re-run a stored audit step or control point."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    gate = sub.add_parser("gate", help="Validate citations and gate step results against a timeline.")
    gate.add_argument("--result", required=True, metavar="PATH", help="Step result JSON (object or array).")
    gate.add_argument("--timeline", required=True, metavar="PATH", help="Timeline JSON (array of recordings).")
    gate.add_argument(
        "--weight",
        type=int,
        default=None,
        help="Step weight for a single result without step_metadata.",
    )
    gate.set_defaults(func=cmd_gate)

    srch = sub.add_parser("search", help="Keyword search over a timeline's chunks.")
    srch.add_argument("--timeline", required=True, metavar="PATH", help="Timeline JSON (array of recordings).")
    srch.add_argument("--query", required=True, help="Keywords/phrases to search for.")
    srch.add_argument("--max-results", type=int, default=None, help="Result cap (1-50).")
    srch.add_argument("--min-term-length", type=int, default=None, help="Minimum term length (2-8).")
    srch.set_defaults(func=cmd_search)

    rerun_step = sub.add_parser("rerun-step", help="Re-run one step of a stored audit.")
    _add_rerun_arguments(rerun_step)
    rerun_step.set_defaults(func=cmd_rerun_step)

    rerun_cp = sub.add_parser("rerun-control-point", help="Re-run one control point of a stored audit step.")
    _add_rerun_arguments(rerun_cp)
    rerun_cp.add_argument(
        "--control-point",
        type=int,
        required=True,
        metavar="INDEX",
        help="1-based index of the control point within the step.",
    )
    rerun_cp.set_defaults(func=cmd_rerun_control_point)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return args.func(args)
    except ValueError as exc:
        # ConfigurationError, pydantic ValidationError and bad JSON
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    except (AnalysisError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
