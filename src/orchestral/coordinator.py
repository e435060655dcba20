"""Completion handling: what happens after a worker says it is done.

handle_agent_done() is the single entry point for worker completion:

  1. In-flight guard: a second call for a worker already being handled
     returns a placeholder action and does nothing.
  2. Mark the worker completed.
  3. Sleep settle_delay so a Consultation Request written just before
     done.flag is on disk before we look for it.
  4. Decide: wait for a human, or transition to the candidate phase.
  5. Act on the decision.

A Consultation Request is unresolved when no Human Decision references
its crp_id. That is computed from the files every time; the request's
own status field is never trusted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Literal

from orchestral.events import COORDINATOR_EVENT, EventBus
from orchestral.phases import (
    PhaseTransitionManager,
    resume_phase_for,
    worker_for_phase,
)
from orchestral.retry import ErrorClassification, RetryContext, RetryManager
from orchestral.runs import TEST_LOG_FILE, TEST_OUTPUT_FILE, RunManager
from orchestral.schemas import (
    ConsultationRequest,
    HumanDecision,
    Phase,
    TestOutput,
    WorkerName,
    WorkerStatus,
)
from orchestral.state import RunStateStore
from orchestral.workers import WorkerLifecycle

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 1.0


@dataclass
class AgentDoneAction:
    """Decision taken after a worker completes."""
    kind: Literal["transition", "wait_human"]
    next_phase: Phase | None = None
    next_worker: WorkerName | None = None
    consultation_id: str | None = None


class AgentCoordinator:
    """Decides and applies the next step after a worker finishes, fails or asks."""

    def __init__(
        self,
        runs: RunManager,
        store: RunStateStore,
        phases: PhaseTransitionManager,
        lifecycle: WorkerLifecycle,
        retry: RetryManager | None = None,
        event_bus: EventBus | None = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        auto_retry: bool = True,
    ) -> None:
        self.runs = runs
        self.store = store
        self.phases = phases
        self.lifecycle = lifecycle
        self.retry = retry or RetryManager(event_bus=event_bus)
        self.event_bus = event_bus
        self.settle_delay = settle_delay
        self.auto_retry = auto_retry
        self._in_flight: set[WorkerName] = set()
        self._restarts: dict[RetryContext, int] = {}

    # ── Completion ──────────────────────────────────────────────────

    async def handle_agent_done(
        self,
        worker: WorkerName,
        run_id: str,
        next_phase: Phase,
    ) -> AgentDoneAction:
        if worker in self._in_flight:
            logger.debug("[%s] %s completion already in progress, ignoring duplicate", run_id, worker)
            return AgentDoneAction(
                kind="transition",
                next_phase=next_phase,
                next_worker=worker_for_phase(next_phase),
            )

        self._in_flight.add(worker)
        try:
            self._emit("agent_completing", run_id, worker=worker)
            self.lifecycle.complete_worker(worker)
            self.clear_restart_budget(worker, run_id)
            self._emit("agent_completed", run_id, worker=worker)

            await asyncio.sleep(self.settle_delay)

            action = self.determine_next_action(worker, run_id, next_phase)
            await self.execute_action(action, worker, run_id)
            return action
        finally:
            self._in_flight.discard(worker)

    def determine_next_action(
        self,
        worker: WorkerName,
        run_id: str,
        next_phase: Phase,
    ) -> AgentDoneAction:
        unresolved = self.find_unresolved_consultation(run_id, worker)
        if unresolved is not None:
            return AgentDoneAction(kind="wait_human", consultation_id=unresolved)

        state = self.store.require()
        if state.phase == Phase.WAITING_HUMAN or state.pending_consultation_id:
            return AgentDoneAction(kind="wait_human", consultation_id=state.pending_consultation_id)

        return AgentDoneAction(
            kind="transition",
            next_phase=next_phase,
            next_worker=worker_for_phase(next_phase),
        )

    async def execute_action(self, action: AgentDoneAction, worker: WorkerName, run_id: str) -> bool:
        """Apply a decided action. Returns True if the run moved or paused as intended."""
        if action.kind == "wait_human":
            state = self.store.require()
            if state.pending_consultation_id is None and action.consultation_id:
                self.phases.set_pending_consultation(action.consultation_id)
            self._emit("consultation_detected", run_id,
                       worker=worker, consultation_id=action.consultation_id)
            self._emit("waiting_human", run_id, consultation_id=action.consultation_id)
            return True

        current = self.phases.current_phase()
        self._emit("phase_transitioning", run_id, from_phase=current, to_phase=action.next_phase)
        if not self.phases.transition(action.next_phase):
            logger.warning(
                "[%s] %s finished but %s -> %s is not allowed",
                run_id, worker, current, action.next_phase,
            )
            return False
        self._emit("phase_transitioned", run_id, phase=action.next_phase)

        if action.next_worker is not None:
            await self.lifecycle.start_worker(action.next_worker)
        return True

    def find_unresolved_consultation(self, run_id: str, worker: WorkerName | None = None) -> str | None:
        """Oldest request (optionally by `worker`) with no matching decision."""
        for crp in self.runs.unresolved_consultations(run_id):
            if worker is None or crp.created_by == worker:
                return crp.crp_id
        return None

    # ── Human consultation ──────────────────────────────────────────

    async def handle_crp_created(self, crp: ConsultationRequest, run_id: str) -> None:
        """A worker asked a question mid-run: stop it and pause the run."""
        worker = crp.created_by
        await self.lifecycle.stop_worker(worker, WorkerStatus.PENDING)
        self.phases.set_pending_consultation(crp.crp_id)
        self.store.update_last_event("crp_created", worker)
        self._emit("crp_created", run_id, worker=worker, consultation_id=crp.crp_id)
        self._emit("waiting_human", run_id, consultation_id=crp.crp_id)

    async def handle_decision_created(self, decision: HumanDecision, run_id: str) -> WorkerName | None:
        """A human answered. Resume the run if nothing else is outstanding.

        Returns the restarted worker, or None if the run stays paused.
        """
        state = self.store.require()
        if state.phase != Phase.WAITING_HUMAN and state.pending_consultation_id is None:
            logger.info("[%s] decision %s arrived but the run is not paused", run_id, decision.vcr_id)
            return None

        remaining = self.find_unresolved_consultation(run_id)
        if remaining is not None:
            if state.pending_consultation_id != remaining:
                self.phases.set_pending_consultation(remaining)
            self._emit("waiting_human", run_id, consultation_id=remaining)
            return None

        crp = self.runs.get_consultation(run_id, decision.crp_id)
        creator = crp.created_by if crp else WorkerName.BUILDER
        resume_phase = resume_phase_for(creator)

        self.phases.set_pending_consultation(None)
        self.store.update_last_event("vcr_created", creator)
        self._emit("decision_received", run_id, consultation_id=decision.crp_id, decision=decision.decision)

        if state.phase == Phase.WAITING_HUMAN and not self.phases.transition(resume_phase):
            return None

        worker = worker_for_phase(resume_phase)
        await self.lifecycle.start_worker(worker)
        self._emit("run_resumed", run_id, phase=resume_phase, worker=worker)
        return worker

    # ── Verifier test execution ─────────────────────────────────────

    async def handle_verifier_tests_ready(self, run_id: str) -> None:
        """Verifier finished its first pass: stop it while the tests run."""
        await self.lifecycle.wait_for_tests(WorkerName.VERIFIER)
        self._emit("verifier_phase1_done", run_id)
        self._emit("test_execution_starting", run_id)

    async def handle_test_execution_done(self, run_id: str, output: TestOutput) -> None:
        """Tests ran: start the verifier's second pass with the results."""
        self._emit("test_execution_done", run_id,
                   exit_code=output.exit_code, timed_out=output.timed_out)
        prompt = self.runs.write_verifier_phase2_prompt(run_id, output)
        self._emit("verifier_phase2_starting", run_id)
        await self.lifecycle.start_worker(
            WorkerName.VERIFIER, prompt, keep=(TEST_OUTPUT_FILE, TEST_LOG_FILE),
        )

    # ── Failures ────────────────────────────────────────────────────

    async def handle_agent_error(
        self,
        worker: WorkerName,
        run_id: str,
        classification: ErrorClassification,
        message: str,
        recoverable: bool = True,
    ) -> bool:
        """Restart a failed worker if policy allows. Returns True if restarted.

        Fatal or exhausted failures are recorded on the run and the slot is
        marked failed; no phase change happens here.
        """
        context = RetryContext(worker=worker, error_type=classification, run_id=run_id)
        restarts = self._restarts.get(context, 0)

        if not (recoverable and self.auto_retry and self.retry.should_retry(classification, restarts)):
            self._record_failure(worker, run_id, classification, message)
            return False

        self._restarts[context] = restarts + 1
        self._emit("worker_restarting", run_id, worker=worker,
                   classification=classification, attempt=restarts + 1)

        async def restart() -> None:
            await self.lifecycle.stop_worker(worker, WorkerStatus.PENDING)
            await self.lifecycle.start_worker(worker)

        try:
            await self.retry.execute_with_retry(restart, context)
        except Exception as e:
            self._record_failure(worker, run_id, classification, f"{message} (restart failed: {e})")
            return False
        return True

    def clear_restart_budget(self, worker: WorkerName, run_id: str) -> None:
        for context in [c for c in self._restarts if c.worker == worker and c.run_id == run_id]:
            del self._restarts[context]

    def _record_failure(
        self,
        worker: WorkerName,
        run_id: str,
        classification: ErrorClassification,
        message: str,
    ) -> None:
        entry = f"{worker} failed ({classification}): {message}"
        self.store.add_error(entry)
        self.lifecycle.fail_worker(worker, message)
        logger.error("[%s] %s", run_id, entry)
        self._emit("worker_failed", run_id, worker=worker, classification=classification, error=message)

    def _emit(self, type: str, run_id: str, **data) -> None:
        if self.event_bus:
            self.event_bus.emit(COORDINATOR_EVENT, type, run_id, **data)

