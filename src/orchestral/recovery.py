"""Interrupted-run detection and resume preparation.

On startup (or via `orchestral interrupted` / `orchestral recover`) every
persisted run is scanned. Completed and failed runs are ignored, as are
runs started longer ago than the age ceiling. Each remaining run gets a
resume strategy:

  restart_agent  refine/build/verify/gate: reset the phase's worker and start it again
  wait_human     waiting_human: nothing to do until the request is answered
  manual         anything else: an operator has to decide

Whether the run's tmux session is still alive is reported for the
operator but never changes the strategy.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from orchestral.events import RECOVERY_EVENT, EventBus
from orchestral.phases import WORKING_PHASES, worker_for_phase
from orchestral.runs import RunManager, parse_timestamp
from orchestral.schemas import Phase, RunState, WorkerName, WorkerStatus
from orchestral.state import RunNotFoundError
from orchestral.tmux import ProcessHost

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)


class ResumeStrategy(StrEnum):
    RESTART_AGENT = "restart_agent"
    WAIT_HUMAN = "wait_human"
    MANUAL = "manual"


@dataclass
class RecoveryCandidate:
    """A non-terminal run found by a scan. Recomputed on every scan."""
    run_id: str
    phase: Phase
    last_worker: WorkerName | None
    interrupted_at: str
    can_resume: bool
    resume_strategy: ResumeStrategy
    reason: str
    age: timedelta
    session_alive: bool
    iteration: int
    max_iterations: int

    @property
    def age_ms(self) -> int:
        return int(self.age.total_seconds() * 1000)


@dataclass
class RecoveryResult:
    run_id: str
    success: bool
    strategy: ResumeStrategy
    message: str
    error: str = ""
    worker: WorkerName | None = None


def determine_strategy(state: RunState) -> tuple[bool, ResumeStrategy, str]:
    """(can_resume, strategy, reason) for a non-terminal run."""
    if state.phase == Phase.WAITING_HUMAN:
        pending = state.pending_consultation_id or "unknown request"
        return True, ResumeStrategy.WAIT_HUMAN, f"Waiting for a human decision on {pending}"
    if state.phase in WORKING_PHASES:
        worker = worker_for_phase(state.phase)
        status = state.worker(worker).status
        return (
            True,
            ResumeStrategy.RESTART_AGENT,
            f"Run was in {state.phase} phase ({worker} {status}), will restart {worker}",
        )
    if state.phase == Phase.READY_FOR_MERGE:
        return False, ResumeStrategy.MANUAL, "Run is ready for merge, no worker to restart"
    return False, ResumeStrategy.MANUAL, f"No recovery path for phase: {state.phase}"


class InterruptRecovery:
    """Scans a project's runs and prepares interrupted ones for resumption."""

    def __init__(
        self,
        runs: RunManager,
        host_factory: Callable[[str], ProcessHost] | None = None,
        max_age: timedelta = DEFAULT_MAX_AGE,
        event_bus: EventBus | None = None,
        auto_recover: bool = False,
    ) -> None:
        self.runs = runs
        self.host_factory = host_factory
        self.max_age = max_age
        self.event_bus = event_bus
        self.auto_recover = auto_recover

    async def detect_interrupted_runs(self, now: datetime | None = None) -> list[RecoveryCandidate]:
        """Classify every recent non-terminal run. Never mutates state."""
        now = now or datetime.now()
        self._emit("scan_started", "")

        candidates: list[RecoveryCandidate] = []
        for item in self.runs.list_runs():
            if item.phase in (Phase.COMPLETED, Phase.FAILED):
                continue
            started = parse_timestamp(item.started_at)
            if started is None:
                logger.warning("Run %s has no usable started_at, skipping", item.run_id)
                continue
            age = now - started
            if age > self.max_age:
                continue

            state = self.runs.store(item.run_id).load()
            if state is None:
                continue

            can_resume, strategy, reason = determine_strategy(state)
            candidates.append(RecoveryCandidate(
                run_id=state.run_id,
                phase=state.phase,
                last_worker=self._last_worker(state),
                interrupted_at=state.updated_at,
                can_resume=can_resume,
                resume_strategy=strategy,
                reason=reason,
                age=age,
                session_alive=await self._session_alive(state.run_id),
                iteration=state.iteration,
                max_iterations=state.max_iterations,
            ))

        self._emit("scan_completed", "", found=len(candidates))
        return candidates

    def prepare_recovery(self, run_id: str) -> RecoveryResult:
        """Apply the strategy's side effects.

        restart_agent resets the stalled worker to pending; wait_human does
        nothing; manual fails without touching state.
        """
        store = self.runs.store(run_id)
        state = store.load()
        if state is None:
            error = f"Run {run_id} not found"
            self._emit("recovery_failed", run_id, error=error)
            return RecoveryResult(
                run_id=run_id, success=False, strategy=ResumeStrategy.MANUAL,
                message="Recovery failed", error=error,
            )

        can_resume, strategy, reason = determine_strategy(state)
        self._emit("recovery_started", run_id, strategy=strategy)

        if not can_resume:
            self._emit("recovery_completed", run_id, success=False)
            return RecoveryResult(run_id=run_id, success=False, strategy=strategy, message=reason)

        if strategy == ResumeStrategy.WAIT_HUMAN:
            self._emit("recovery_completed", run_id, success=True)
            return RecoveryResult(
                run_id=run_id, success=True, strategy=strategy,
                message="Run is waiting for human input, no recovery action needed",
            )

        worker = worker_for_phase(state.phase)
        store.update_worker_status(worker, WorkerStatus.PENDING)
        store.add_history(state.phase, f"recovered: {worker} reset")
        logger.info("[%s] prepared for recovery, %s will be restarted", run_id, worker)
        self._emit("recovery_completed", run_id, success=True, worker=worker)
        return RecoveryResult(
            run_id=run_id, success=True, strategy=strategy, worker=worker,
            message=f"Run prepared for recovery. {worker} will be restarted.",
        )

    async def recover_resumable(
        self,
        candidates: list[RecoveryCandidate] | None = None,
    ) -> list[RecoveryResult]:
        """Prepare every candidate whose strategy is restart_agent.

        Runs waiting on a human and runs that need an operator are left alone.
        """
        if candidates is None:
            candidates = await self.detect_interrupted_runs()
        return [
            self.prepare_recovery(c.run_id)
            for c in candidates
            if c.can_resume and c.resume_strategy == ResumeStrategy.RESTART_AGENT
        ]

    def mark_as_failed(self, run_id: str, reason: str) -> None:
        """Operator escape hatch: force the run to failed and log why."""
        store = self.runs.store(run_id)
        if store.load() is None:
            raise RunNotFoundError(store.run_dir)
        store.force_phase(Phase.FAILED, reason)
        store.add_error(f"Recovery failed: {reason}")
        self._emit("run_marked_failed", run_id, reason=reason)

    def _last_worker(self, state: RunState) -> WorkerName | None:
        worker = worker_for_phase(state.phase)
        if worker is not None:
            return worker
        return state.last_event.worker if state.last_event else None

    async def _session_alive(self, run_id: str) -> bool:
        if self.host_factory is None:
            return False
        try:
            return await self.host_factory(run_id).session_exists()
        except OSError as e:
            logger.debug("Session check for %s failed: %s", run_id, e)
            return False

    def _emit(self, type: str, run_id: str, **data) -> None:
        if self.event_bus:
            self.event_bus.emit(RECOVERY_EVENT, type, run_id, **data)


def format_summary(candidates: list[RecoveryCandidate]) -> str:
    """Human-readable listing of scan results."""
    if not candidates:
        return "No interrupted runs detected."

    lines = [f"Found {len(candidates)} interrupted run(s):", ""]
    for c in candidates:
        lines.append(f"  {c.run_id}")
        lines.append(f"    Phase: {c.phase}  (iteration {c.iteration}/{c.max_iterations})")
        lines.append(f"    Last worker: {c.last_worker or 'N/A'}")
        lines.append(f"    Strategy: {c.resume_strategy}{'' if c.can_resume else ' (not resumable)'}")
        lines.append(f"    Reason: {c.reason}")
        lines.append(f"    Age: {format_age(c.age)}")
        lines.append(f"    Session: {'alive' if c.session_alive else 'not found'}")
        lines.append("")
    return "\n".join(lines)


def format_age(age: timedelta) -> str:
    minutes = int(age.total_seconds() // 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"
