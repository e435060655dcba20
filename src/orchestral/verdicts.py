"""Gate verdict handling.

  PASS         → ready_for_merge
  FAIL         → build (next iteration) while iteration < max_iterations, else failed
  NEEDS_HUMAN  → waiting_human on the gatekeeper's Consultation Request

process_verdict() decides and does the bookkeeping that must happen first
(the iteration bump on rework); execute_verdict_result() moves the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from orchestral.events import VERDICT_EVENT, EventBus
from orchestral.phases import PhaseTransitionManager
from orchestral.runs import RunManager
from orchestral.schemas import (
    ConsultationRequest,
    GateVerdict,
    Phase,
    WorkerName,
)
from orchestral.state import REWORK_WORKERS
from orchestral.workers import WorkerLifecycle

logger = logging.getLogger(__name__)


@dataclass
class VerdictResult:
    action: Literal["complete", "retry", "fail", "wait_human"]
    iteration: int = 0
    reason: str = ""
    consultation_id: str = ""
    issues: list[str] = field(default_factory=list)


class VerdictHandler:
    """Turns gatekeeper/verdict.json into a phase change."""

    def __init__(
        self,
        runs: RunManager,
        phases: PhaseTransitionManager,
        lifecycle: WorkerLifecycle,
        event_bus: EventBus | None = None,
    ) -> None:
        self.runs = runs
        self.phases = phases
        self.lifecycle = lifecycle
        self.event_bus = event_bus

    def process_verdict(self, verdict: GateVerdict, run_id: str) -> VerdictResult:
        """Decide what a verdict means. Raises UnknownVerdictError for bad input."""
        self._emit("verdict_processing", run_id, verdict=verdict.verdict)
        next_phase = self.phases.get_next_phase(Phase.GATE, verdict.verdict)

        if next_phase == Phase.READY_FOR_MERGE:
            self._emit("verdict_pass", run_id)
            return VerdictResult(action="complete", reason=verdict.reason)

        if next_phase == Phase.FAILED:
            reason = "Max iterations exceeded"
            if verdict.reason:
                reason += f": {verdict.reason}"
            self._emit("verdict_fail", run_id, reason=reason, max_iterations=True)
            return VerdictResult(action="fail", reason=reason, issues=list(verdict.issues))

        if next_phase == Phase.BUILD:
            iteration, _ = self.phases.increment_iteration()
            self.runs.clear_worker_artifacts(run_id, REWORK_WORKERS)
            self._write_review(run_id, iteration, verdict)
            self._emit("verdict_retry", run_id, iteration=iteration)
            return VerdictResult(
                action="retry", iteration=iteration,
                reason=verdict.reason, issues=list(verdict.issues),
            )

        crp_id = self._gatekeeper_consultation(run_id, verdict)
        self._emit("verdict_needs_human", run_id, consultation_id=crp_id)
        return VerdictResult(action="wait_human", reason=verdict.reason, consultation_id=crp_id)

    async def execute_verdict_result(self, result: VerdictResult, run_id: str) -> bool:
        """Apply a processed verdict. Returns the transition outcome."""
        if result.action == "complete":
            return self.phases.transition(Phase.READY_FOR_MERGE)
        if result.action == "fail":
            moved = self.phases.transition(Phase.FAILED)
            if moved:
                self.phases.store.add_error(result.reason)
            return moved
        if result.action == "retry":
            if not self.phases.transition(Phase.BUILD):
                return False
            await self.lifecycle.start_worker(WorkerName.BUILDER)
            return True
        # wait_human: the request drives the pause. The verdict is spent; a
        # restart in gate must wait for a fresh one.
        self.runs.verdict_path(run_id).unlink(missing_ok=True)
        self.phases.set_pending_consultation(result.consultation_id)
        return True

    def _gatekeeper_consultation(self, run_id: str, verdict: GateVerdict) -> str:
        """Id of the gatekeeper's open request, writing one from the verdict if it left none."""
        for crp in self.runs.unresolved_consultations(run_id):
            if crp.created_by == WorkerName.GATEKEEPER:
                return crp.crp_id

        crp = ConsultationRequest(
            crp_id=self._gate_request_id(run_id),
            created_by=WorkerName.GATEKEEPER,
            type="verdict",
            question=verdict.reason or "The gatekeeper needs a human decision.",
            context="\n".join(f"- {issue}" for issue in verdict.issues),
        )
        self.runs.save_consultation(run_id, crp)
        logger.info("[%s] wrote %s for NEEDS_HUMAN verdict", run_id, crp.crp_id)
        return crp.crp_id

    def _gate_request_id(self, run_id: str) -> str:
        """crp-gate-<timestamp>, suffixed -2, -3... if that id is taken."""
        base = f"crp-gate-{datetime.now().strftime('%Y%m%d%H%M%S%f')}"
        crp_id = base
        n = 2
        while self.runs.consultation_path(run_id, crp_id).exists():
            crp_id = f"{base}-{n}"
            n += 1
        return crp_id

    def _write_review(self, run_id: str, iteration: int, verdict: GateVerdict) -> None:
        """Append the gate's findings to the builder prompt for the next iteration."""
        prompt = self.runs.prompt_path(run_id, WorkerName.BUILDER)
        if not prompt.exists():
            return
        lines = ["", f"## Review from iteration {iteration - 1}", "", verdict.reason or "FAIL"]
        lines.extend(f"- {issue}" for issue in verdict.issues)
        with open(prompt, "a") as f:
            f.write("\n".join(lines) + "\n")

    def _emit(self, type: str, run_id: str, **data) -> None:
        if self.event_bus:
            self.event_bus.emit(VERDICT_EVENT, type, run_id, **data)
