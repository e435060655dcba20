"""CLI entry points for orchestral.

Commands (all act on the project in -C/--project-dir, default "."):
  orchestral init                          Write orchestral.yaml and .orchestral/
  orchestral start <briefing-file>         Create a run and drive it with the daemon
  orchestral status [run-id]               Show a run (default: latest)
  orchestral history                       List every run, newest first
  orchestral decide <run-id> <crp-id> <option>
                                           Answer a Consultation Request
  orchestral stop                          Ask the running daemon to exit
  orchestral delete <run-id>               Delete a run directory
  orchestral interrupted                   List runs a crash left behind
  orchestral recover [run-id]              Prepare interrupted runs to resume
  orchestral clean                         Delete old completed/failed runs
  orchestral fail <run-id> --reason ...    Force a stuck run to failed
  orchestral complete <run-id>             Mark a ready_for_merge run completed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

from orchestral.config import (
    load_global_config,
    load_project_config,
    resolve_auto_recover,
    resolve_kill_session_on_exit,
    resolve_poll_interval,
    resolve_recovery_max_age_hours,
    resolve_session_prefix,
    write_default_project_config,
)
from orchestral.phases import PhaseTransitionManager
from orchestral.recovery import (
    InterruptRecovery,
    RecoveryCandidate,
    ResumeStrategy,
    format_age,
    format_summary,
)
from orchestral.runs import RunManager, parse_duration
from orchestral.schemas import HumanDecision, Phase, RunState
from orchestral.state import RunNotFoundError
from orchestral.tmux import TmuxHost

logger = logging.getLogger(__name__)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="orchestral",
        description="Durable four-stage pipeline orchestrator",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-C", "--project-dir", default=".",
        help="Project directory (default: current directory)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # init
    subparsers.add_parser("init", help="Initialize orchestral in the project")

    # start
    p_start = subparsers.add_parser("start", help="Start a new run from a briefing file")
    p_start.add_argument("briefing", help="Path to the briefing (markdown)")
    p_start.add_argument("--max-iterations", type=int, default=None, help="Override max_iterations")
    p_start.add_argument("--no-daemon", action="store_true", help="Create the run without driving it")

    # resume
    p_resume = subparsers.add_parser("resume", help="Drive an existing run with the daemon")
    p_resume.add_argument("run_id", nargs="?", help="Run id (default: active run)")

    # status
    p_status = subparsers.add_parser("status", help="Show run status")
    p_status.add_argument("run_id", nargs="?", help="Run id (default: latest run)")

    # history
    subparsers.add_parser("history", help="List all runs")

    # decide
    p_decide = subparsers.add_parser("decide", help="Answer a Consultation Request")
    p_decide.add_argument("run_id", help="Run id")
    p_decide.add_argument("crp_id", help="Consultation Request id")
    p_decide.add_argument("decision", help="Chosen option id (or free text)")
    p_decide.add_argument("--rationale", default="", help="Why this option")
    p_decide.add_argument("--notes", default="", help="Additional notes for the worker")
    p_decide.add_argument("--applies-to-future", action="store_true",
                          help="Apply this decision to similar future questions")

    # stop
    subparsers.add_parser("stop", help="Ask the running daemon to exit")

    # delete
    p_delete = subparsers.add_parser("delete", help="Delete a run")
    p_delete.add_argument("run_id", help="Run id")
    p_delete.add_argument("--force", action="store_true", help="Skip confirmation, allow active runs")

    # interrupted
    subparsers.add_parser("interrupted", help="List interrupted runs")

    # recover
    p_recover = subparsers.add_parser("recover", help="Recover interrupted runs")
    p_recover.add_argument("run_id", nargs="?", help="Run id to recover")
    p_recover.add_argument("--list", action="store_true", help="Only list interrupted runs")
    p_recover.add_argument("--auto", action="store_true", help="Recover every resumable run")
    p_recover.add_argument("--force", action="store_true", help="Skip confirmation")

    # clean
    p_clean = subparsers.add_parser("clean", help="Delete old completed/failed runs")
    p_clean.add_argument("--older-than", default="7d", help="Age threshold, e.g. 7d or 24h (default: 7d)")
    p_clean.add_argument("--force", action="store_true", help="Skip confirmation")
    p_clean.add_argument("--dry-run", action="store_true", help="Show what would be deleted")

    # fail
    p_fail = subparsers.add_parser("fail", help="Mark a stuck run as failed")
    p_fail.add_argument("run_id", help="Run id")
    p_fail.add_argument("--reason", default="Manually marked as failed", help="Reason to record")

    # complete
    p_complete = subparsers.add_parser("complete", help="Mark a ready_for_merge run as completed")
    p_complete.add_argument("run_id", help="Run id")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "start":
        asyncio.run(cmd_start(args))
    elif args.command == "resume":
        asyncio.run(cmd_resume(args))
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "history":
        cmd_history(args)
    elif args.command == "decide":
        cmd_decide(args)
    elif args.command == "stop":
        cmd_stop(args)
    elif args.command == "delete":
        cmd_delete(args)
    elif args.command == "interrupted":
        asyncio.run(cmd_interrupted(args))
    elif args.command == "recover":
        asyncio.run(cmd_recover(args))
    elif args.command == "clean":
        cmd_clean(args)
    elif args.command == "fail":
        cmd_fail(args)
    elif args.command == "complete":
        cmd_complete(args)


# ── Helpers ─────────────────────────────────────────────────────────


def _confirm(message: str) -> bool:
    answer = input(f"{message} (y/N) ").strip().lower()
    return answer in ("y", "yes")


def _load_configs(project_dir: str | Path):
    return load_global_config(), load_project_config(project_dir)


def _build_recovery(project_dir: str | Path) -> InterruptRecovery:
    global_cfg, project_cfg = _load_configs(project_dir)
    runs = RunManager(project_dir)
    prefix = resolve_session_prefix(project_cfg, global_cfg)
    return InterruptRecovery(
        runs,
        host_factory=lambda run_id: TmuxHost(run_id, runs.project_dir, prefix=prefix),
        max_age=timedelta(hours=resolve_recovery_max_age_hours(project_cfg, global_cfg)),
        auto_recover=resolve_auto_recover(project_cfg, global_cfg),
    )


def _require_state(runs: RunManager, run_id: str) -> RunState:
    state = runs.store(run_id).load()
    if state is None:
        print(f"Run not found: {run_id}")
        sys.exit(1)
    return state


def format_run_status(state: RunState) -> str:
    lines = [
        f"Run: {state.run_id}",
        f"  Phase:     {state.phase}",
        f"  Iteration: {state.iteration}/{state.max_iterations}",
        f"  Started:   {state.started_at[:19]}",
        f"  Updated:   {state.updated_at[:19]}",
    ]
    if state.pending_consultation_id:
        lines.append(f"  Waiting on: {state.pending_consultation_id}")
    if state.last_event:
        event = state.last_event
        by = f" ({event.worker})" if event.worker else ""
        lines.append(f"  Last event: {event.type}{by} at {event.timestamp[:19]}")
    lines.append("  Workers:")
    for name, slot in state.workers.items():
        detail = f" ({slot.error})" if slot.error else ""
        lines.append(f"    {name:<11s} {slot.status}{detail}")
    if state.errors:
        lines.append("  Errors:")
        for error in state.errors[-5:]:
            lines.append(f"    - {error}")
    return "\n".join(lines)


# ── Commands ────────────────────────────────────────────────────────


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize orchestral in a project."""
    runs = RunManager(args.project_dir)
    runs.init()
    config_path = write_default_project_config(runs.project_dir)
    print(f"Initialized orchestral in: {runs.project_dir}")
    print(f"  Config: {config_path}")
    print("  Then run: orchestral start <briefing.md>")


async def cmd_start(args: argparse.Namespace) -> None:
    """Create a run from a briefing and drive it until it needs no attention."""
    from orchestral.orchestrator import start_run

    briefing_path = Path(args.briefing)
    if not briefing_path.exists():
        print(f"Briefing not found: {briefing_path}")
        sys.exit(1)

    global_cfg, project_cfg = _load_configs(args.project_dir)
    if args.max_iterations is not None:
        project_cfg.max_iterations = args.max_iterations

    recovery = _build_recovery(args.project_dir)
    if recovery.auto_recover:
        await _auto_recover(recovery)

    run_id = start_run(args.project_dir, briefing_path.read_text(), global_cfg, project_cfg)
    print(f"Created run: {run_id}")

    if args.no_daemon:
        print(f"  Drive it with: orchestral resume {run_id}")
        return
    await _drive(args.project_dir, run_id)


async def cmd_resume(args: argparse.Namespace) -> None:
    """Drive an existing (e.g. recovered) run."""
    runs = RunManager(args.project_dir)
    run_id = args.run_id
    if run_id is None:
        active = runs.get_active_run()
        if active is None:
            print("No active run.")
            sys.exit(1)
        run_id = active.run_id
    _require_state(runs, run_id)
    await _drive(args.project_dir, run_id)


async def _drive(project_dir: str | Path, run_id: str) -> None:
    from orchestral.daemon import Daemon, check_daemon_health
    from orchestral.orchestrator import Orchestrator

    health = check_daemon_health(project_dir)
    if health["alive"]:
        print(f"A daemon is already running (PID {health['pid']}). Stop it with: orchestral stop")
        sys.exit(1)

    global_cfg, project_cfg = _load_configs(project_dir)
    runs = RunManager(project_dir)
    orchestrator = Orchestrator.from_config(runs, run_id, global_cfg, project_cfg)
    daemon = Daemon(
        orchestrator,
        poll_interval=resolve_poll_interval(project_cfg, global_cfg),
        kill_session_on_exit=resolve_kill_session_on_exit(project_cfg, global_cfg),
    )

    print(f"Daemon driving {run_id}")
    print(f"  Session: {resolve_session_prefix(project_cfg, global_cfg)}-{run_id}")
    print("  Stop with: orchestral stop")
    state = await daemon.run()
    print()
    print(format_run_status(state))


def cmd_status(args: argparse.Namespace) -> None:
    """Show run status."""
    from orchestral.daemon import check_daemon_health

    runs = RunManager(args.project_dir)
    health = check_daemon_health(args.project_dir)
    if health["alive"]:
        print(f"Daemon: running (PID {health['pid']})")
    elif health["pid"]:
        print(f"Daemon: dead (stale PID {health['pid']})")
    else:
        print("Daemon: not running")

    run_id = args.run_id
    if run_id is None:
        latest = runs.get_latest_run()
        if latest is None:
            print("No runs yet.")
            return
        run_id = latest.run_id

    state = _require_state(runs, run_id)
    print(format_run_status(state))

    unresolved = runs.unresolved_consultations(run_id)
    if unresolved:
        print("  Open Consultation Requests:")
        for crp in unresolved:
            print(f"    {crp.crp_id} ({crp.created_by}): {crp.question}")
            for option in crp.options:
                print(f"      [{option.id}] {option.label}")
        print(f"  Answer with: orchestral decide {run_id} <crp-id> <option>")


def cmd_history(args: argparse.Namespace) -> None:
    """List all runs."""
    runs = RunManager(args.project_dir).list_runs()
    if not runs:
        print("No runs yet.")
        return
    print(f"{'Run':<26s} {'Phase':<16s} {'Iter':<6s} {'Started':<20s}")
    for run in runs:
        print(
            f"{run.run_id:<26s} {run.phase:<16s} "
            f"{f'{run.iteration}/{run.max_iterations}':<6s} {run.started_at[:19]:<20s}"
        )


def cmd_decide(args: argparse.Namespace) -> None:
    """Record a Human Decision for a Consultation Request."""
    runs = RunManager(args.project_dir)
    _require_state(runs, args.run_id)

    crp = runs.get_consultation(args.run_id, args.crp_id)
    if crp is None:
        print(f"Consultation Request not found: {args.crp_id}")
        sys.exit(1)
    if runs.get_decision_for(args.run_id, args.crp_id) is not None:
        print(f"{args.crp_id} already has a decision.")
        sys.exit(1)
    if crp.options and args.decision not in {o.id for o in crp.options}:
        print(f"Unknown option {args.decision!r}. Choose one of: "
              f"{', '.join(o.id for o in crp.options)}")
        sys.exit(1)

    decision = HumanDecision(
        vcr_id=f"vcr-{datetime.now().strftime('%Y%m%d%H%M%S')}-{args.crp_id}",
        crp_id=args.crp_id,
        decision=args.decision,
        rationale=args.rationale,
        additional_notes=args.notes,
        applies_to_future=args.applies_to_future,
    )
    path = runs.save_decision(args.run_id, decision)
    print(f"Decision recorded: {path.name}")
    print("  The daemon resumes the run on its next poll.")


def cmd_stop(args: argparse.Namespace) -> None:
    """Ask the running daemon to exit."""
    from orchestral.daemon import request_shutdown

    if request_shutdown(args.project_dir):
        print("Shutdown requested. The daemon exits after its current poll.")
    else:
        print("No daemon running.")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete a run directory."""
    runs = RunManager(args.project_dir)
    if not runs.get_run_dir(args.run_id).exists():
        print(f"Run not found: {args.run_id}")
        sys.exit(1)

    state = runs.store(args.run_id).load()
    if state is not None and not state.is_terminal and not args.force:
        print(f"Run {args.run_id} is still in phase {state.phase}. Use --force to delete it anyway.")
        sys.exit(1)
    if not args.force and not _confirm(f"Delete run {args.run_id}?"):
        print("Cancelled.")
        return

    runs.delete_run(args.run_id)
    print(f"Deleted run: {args.run_id}")


async def cmd_interrupted(args: argparse.Namespace) -> None:
    """List interrupted runs. Exits 1 when there are none."""
    recovery = _build_recovery(args.project_dir)
    candidates = await recovery.detect_interrupted_runs()
    if not candidates:
        print("No interrupted runs detected.")
        sys.exit(1)

    print(f"{'Run':<26s} {'Phase':<16s} {'Strategy':<14s} {'Resume':<7s} {'Age':<8s} {'Session':<8s}")
    for c in candidates:
        print(
            f"{c.run_id:<26s} {c.phase:<16s} {c.resume_strategy:<14s} "
            f"{'yes' if c.can_resume else 'no':<7s} {format_age(c.age):<8s} "
            f"{'alive' if c.session_alive else '-':<8s}"
        )


async def cmd_recover(args: argparse.Namespace) -> None:
    """Recover one interrupted run, or list / auto-recover all of them."""
    recovery = _build_recovery(args.project_dir)

    if args.list or not args.run_id:
        candidates = await recovery.detect_interrupted_runs()
        print(format_summary(candidates))
        if not candidates:
            return
        if args.auto or args.force:
            await _auto_recover(recovery, candidates)
        else:
            print("Use `orchestral recover <run-id>` to recover a specific run.")
            print("Use `orchestral recover --auto` to recover every resumable run.")
        return

    await _recover_one(recovery, args.run_id, force=args.force, auto=args.auto)


async def _auto_recover(
    recovery: InterruptRecovery,
    candidates: list[RecoveryCandidate] | None = None,
) -> list[str]:
    recovered = []
    for result in await recovery.recover_resumable(candidates):
        if result.success:
            print(f"Recovered {result.run_id}: {result.message}")
            recovered.append(result.run_id)
        else:
            print(f"Could not recover {result.run_id}: {result.message}")
    return recovered


async def _recover_one(recovery: InterruptRecovery, run_id: str, force: bool, auto: bool) -> None:
    candidates = await recovery.detect_interrupted_runs()
    candidate = next((c for c in candidates if c.run_id == run_id), None)
    if candidate is None:
        print(f"Run {run_id} is not in an interrupted state.")
        print("It may be completed, failed, too old, or not exist.")
        sys.exit(1)

    print(format_summary([candidate]))

    if not candidate.can_resume:
        print("This run cannot be recovered automatically.")
        print(f"Reason: {candidate.reason}")
        if not force and _confirm("Mark this run as failed?"):
            recovery.mark_as_failed(run_id, "Manually marked as failed during recovery")
            print(f"Run {run_id} has been marked as failed.")
        return

    if candidate.resume_strategy == ResumeStrategy.WAIT_HUMAN:
        print("This run is waiting for a human decision.")
        print(f"Answer it with: orchestral decide {run_id} <crp-id> <option>")
        return

    if not (force or auto) and not _confirm(
        f"Recover run {run_id}? This restarts the {candidate.last_worker}."
    ):
        print("Recovery cancelled.")
        return

    result = recovery.prepare_recovery(run_id)
    if not result.success:
        print("Recovery failed.")
        print(result.message)
        if result.error:
            print(f"Error: {result.error}")
        sys.exit(1)
    print(result.message)
    print(f"Resume it with: orchestral resume {run_id}")


def cmd_clean(args: argparse.Namespace) -> None:
    """Delete completed/failed runs older than a threshold."""
    try:
        older_than = parse_duration(args.older_than)
    except ValueError as e:
        print(str(e))
        sys.exit(1)

    runs = RunManager(args.project_dir)
    cleanable = runs.find_cleanable_runs(older_than)
    if not cleanable:
        print(f"No completed or failed runs older than {args.older_than}.")
        return

    print(f"{len(cleanable)} run(s) older than {args.older_than}:")
    for run in cleanable:
        print(f"  {run.run_id}  {run.phase}  started {run.started_at[:19]}")

    if args.dry_run:
        print("Dry run, nothing deleted.")
        return
    if not args.force and not _confirm(f"Delete {len(cleanable)} run(s)?"):
        print("Cancelled.")
        return

    deleted = runs.clean_runs(older_than)
    print(f"Deleted {len(deleted)} run(s).")


def cmd_fail(args: argparse.Namespace) -> None:
    """Force a run to failed."""
    recovery = InterruptRecovery(RunManager(args.project_dir))
    try:
        recovery.mark_as_failed(args.run_id, args.reason)
    except RunNotFoundError:
        print(f"Run not found: {args.run_id}")
        sys.exit(1)
    print(f"Run {args.run_id} marked as failed: {args.reason}")


def cmd_complete(args: argparse.Namespace) -> None:
    """Move a ready_for_merge run to completed once it has been merged."""
    runs = RunManager(args.project_dir)
    state = _require_state(runs, args.run_id)
    phases = PhaseTransitionManager(runs.store(args.run_id))
    if not phases.transition(Phase.COMPLETED):
        print(f"Run {args.run_id} is in phase {state.phase}, not ready_for_merge.")
        sys.exit(1)
    print(f"Run {args.run_id} completed.")
