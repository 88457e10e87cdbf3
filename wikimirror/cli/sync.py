"""Command-line interface for running and inspecting the mirror.

Usage::

    wikimirror sync                      # A → B → C → aggregation
    wikimirror phase-a --no-resume       # fresh discovery scan
    wikimirror phase-b --limit 50
    wikimirror phase-c
    wikimirror analyze                   # recompute ratings and rankings
    wikimirror diagnose                  # report version-boundary defects
    wikimirror repair-boundaries --apply --tolerance 1.0
    wikimirror status

Every subcommand exits 0 on success and 1 on failure.  An invalid
configuration is reported and exits 1 before anything touches the
database or the upstream.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any
from uuid import uuid4

from wikimirror.models.dirty import DirtyState
from wikimirror.models.sync import SyncPhase, SyncRunState
from wikimirror.utils.errors import ConfigurationError, WikiMirrorError

_PHASE_COMMANDS: dict[str, tuple[SyncPhase, ...]] = {
    "sync": (
        SyncPhase.DISCOVERY,
        SyncPhase.CONTENT,
        SyncPhase.RECONCILIATION,
        SyncPhase.AGGREGATION,
    ),
    "phase-a": (SyncPhase.DISCOVERY,),
    "phase-b": (SyncPhase.CONTENT,),
    "phase-c": (SyncPhase.RECONCILIATION,),
}


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _format_run(state: SyncRunState) -> str:
    lines = [f"Run {state.run_id}"]
    for report in state.reports:
        extras = ", ".join(f"{k}={v}" for k, v in sorted(report.details.items()))
        lines.append(
            f"  {report.phase.value:<15} processed={report.processed} "
            f"succeeded={report.succeeded} failed={report.failed} skipped={report.skipped}"
            + (f"  [{extras}]" if extras else "")
        )
    for error in state.errors:
        lines.append(f"  ERROR {error}")
    return "\n".join(lines)


def _print_progress(run_id: str, phase: SyncPhase, progress: float, message: str) -> None:
    print(f"[{progress:5.1f}%] {message}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_phases(args: argparse.Namespace, components: dict[str, Any]) -> int:
    orchestrator = components["orchestrator"]
    run_id = args.run_id
    if run_id and not args.quiet:
        orchestrator.progress_tracker.register_listener(run_id, _print_progress)

    state = await orchestrator.run(
        phases=_PHASE_COMMANDS[args.command],
        run_id=run_id,
        limit=getattr(args, "limit", None),
        resume=not getattr(args, "no_resume", False),
    )
    print(_format_run(state))
    return 1 if state.failed else 0


async def _handle_analyze(components: dict[str, Any]) -> int:
    report = await components["aggregation"].run()
    print(f"Aggregated {report.users} users, {report.pages} pages, {report.series} series")
    return 0


async def _handle_diagnose(components: dict[str, Any]) -> int:
    report = await components["integrity"].diagnose()
    print(f"Checked {report.versions_checked} versions across {report.pages_checked} pages")
    if report.healthy:
        print("No boundary defects found.")
        return 0
    for kind, count in sorted(report.counts().items()):
        print(f"  {kind}: {count}")
    for defect in report.defects[:20]:
        gap = f" gap={defect.gap_seconds:.3f}s" if defect.gap_seconds is not None else ""
        print(f"  - {defect.kind.value} {defect.url} version={defect.version_id}{gap}")
    if len(report.defects) > 20:
        print(f"  ... and {len(report.defects) - 20} more")
    return 1


async def _handle_repair(args: argparse.Namespace, components: dict[str, Any]) -> int:
    result = await components["integrity"].repair_boundaries(
        tolerance_seconds=args.tolerance,
        apply=args.apply,
    )
    verb = "Applied" if result.applied else "Planned"
    print(f"{verb} {len(result.fixes)} boundary fixes (tolerance {result.tolerance_seconds}s)")
    for fix in result.fixes[:20]:
        print(f"  - {fix.url} version={fix.version_id}: {fix.old_valid_to} -> {fix.new_valid_to}")
    if not result.applied and result.fixes:
        print("Re-run with --apply to write them.")
    return 0


async def _handle_status(components: dict[str, Any]) -> int:
    counts = await components["store"].counts()
    states = await components["queue"].counts_by_state()
    print("Mirror")
    for name, value in counts.items():
        print(f"  {name:<20} {value}")
    print("Dirty queue")
    for state in DirtyState:
        print(f"  {state.value:<20} {states.get(state.value, 0)}")
    return 0


async def _dispatch(args: argparse.Namespace) -> int:
    # Deferred: importing the composition root configures logging.
    from wikimirror.main import build_components, close_components, initialize_storage, load_settings

    app_settings = load_settings(args.config)
    components = build_components(app_settings)
    try:
        await initialize_storage(components)
        if args.command in _PHASE_COMMANDS:
            return await _handle_phases(args, components)
        if args.command == "analyze":
            return await _handle_analyze(components)
        if args.command == "diagnose":
            return await _handle_diagnose(components)
        if args.command == "repair-boundaries":
            return await _handle_repair(args, components)
        return await _handle_status(components)
    finally:
        await close_components(components)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the wikimirror CLI."""
    parser = argparse.ArgumentParser(
        prog="wikimirror",
        description="Incrementally mirror a wiki's pages, votes and revisions into SQLite.",
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to the YAML configuration file (default: config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # -- phase runners --
    for name, help_text in (
        ("sync", "Run discovery, content, reconciliation and aggregation"),
        ("phase-a", "Run the discovery scan only"),
        ("phase-b", "Fetch content for dirty pages only"),
        ("phase-c", "Reconcile full vote/revision history only"),
    ):
        phase_parser = subparsers.add_parser(name, help=help_text)
        phase_parser.add_argument("--run-id", dest="run_id", default=None, help="Identifier for this run")
        phase_parser.add_argument("--quiet", "-q", action="store_true", help="Do not print progress")
        if name in ("sync", "phase-a"):
            phase_parser.add_argument(
                "--no-resume",
                action="store_true",
                dest="no_resume",
                help="Ignore saved listing checkpoints and scan from the start",
            )
        if name != "phase-a":
            phase_parser.add_argument(
                "--limit",
                type=int,
                default=None,
                help="Maximum pages for the content and reconciliation phases",
            )

    # -- analyze --
    subparsers.add_parser("analyze", help="Recompute user, page and series statistics")

    # -- diagnose --
    subparsers.add_parser("diagnose", help="Report version-boundary defects (exit 1 if any)")

    # -- repair-boundaries --
    repair_parser = subparsers.add_parser(
        "repair-boundaries", help="Plan or apply contiguity fixes for version boundaries"
    )
    repair_parser.add_argument("--apply", action="store_true", help="Write the planned fixes")
    repair_parser.add_argument(
        "--tolerance",
        type=float,
        default=None,
        help="Seconds of boundary skew tolerated (default: configured value)",
    )

    # -- status --
    subparsers.add_parser("status", help="Show mirror row counts and dirty-queue states")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse, dispatch, and exit with the handler's code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command in _PHASE_COMMANDS and args.run_id is None:
        args.run_id = uuid4().hex

    try:
        exit_code = asyncio.run(_dispatch(args))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        exit_code = 1
    except WikiMirrorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
