"""Phase state machine.

  refine → build → verify → gate → ready_for_merge → completed
             ↑                │
             └───── FAIL ─────┤  (rework loop, bounded by max_iterations)
                              └→ failed
  refine → waiting_human → refine | build

Working phases map one-to-one to a worker; waiting_human, ready_for_merge,
completed and failed have none. Moving into waiting_human from any working
phase happens through set_pending_consultation, which forces the phase
without consulting the edge table.
"""

from __future__ import annotations

import logging

from orchestral.events import PHASE_EVENT, EventBus
from orchestral.schemas import Phase, Verdict, WorkerName
from orchestral.state import RunStateStore

logger = logging.getLogger(__name__)


PHASE_TO_WORKER: dict[Phase, WorkerName | None] = {
    Phase.REFINE: WorkerName.REFINER,
    Phase.BUILD: WorkerName.BUILDER,
    Phase.VERIFY: WorkerName.VERIFIER,
    Phase.GATE: WorkerName.GATEKEEPER,
    Phase.WAITING_HUMAN: None,
    Phase.READY_FOR_MERGE: None,
    Phase.COMPLETED: None,
    Phase.FAILED: None,
}

WORKER_TO_PHASE: dict[WorkerName, Phase] = {
    WorkerName.REFINER: Phase.REFINE,
    WorkerName.BUILDER: Phase.BUILD,
    WorkerName.VERIFIER: Phase.VERIFY,
    WorkerName.GATEKEEPER: Phase.GATE,
}

VALID_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.REFINE: frozenset({Phase.BUILD, Phase.WAITING_HUMAN}),
    Phase.BUILD: frozenset({Phase.VERIFY}),
    Phase.VERIFY: frozenset({Phase.GATE}),
    Phase.GATE: frozenset({Phase.READY_FOR_MERGE, Phase.BUILD, Phase.FAILED}),
    Phase.WAITING_HUMAN: frozenset({Phase.REFINE, Phase.BUILD}),
    Phase.READY_FOR_MERGE: frozenset({Phase.COMPLETED}),
    Phase.COMPLETED: frozenset(),
    Phase.FAILED: frozenset(),
}

WORKING_PHASES = (Phase.REFINE, Phase.BUILD, Phase.VERIFY, Phase.GATE)
TERMINAL_PHASES = (Phase.COMPLETED, Phase.FAILED, Phase.READY_FOR_MERGE)

_LINEAR_NEXT = {
    Phase.REFINE: Phase.BUILD,
    Phase.BUILD: Phase.VERIFY,
    Phase.VERIFY: Phase.GATE,
    Phase.READY_FOR_MERGE: Phase.COMPLETED,
}


class UnknownVerdictError(ValueError):
    """Gate produced a verdict the phase machine cannot resolve."""


def worker_for_phase(phase: Phase) -> WorkerName | None:
    return PHASE_TO_WORKER[phase]


def phase_for_worker(worker: WorkerName) -> Phase:
    return WORKER_TO_PHASE[worker]


def can_transition(from_phase: Phase, to_phase: Phase) -> bool:
    return to_phase in VALID_TRANSITIONS[from_phase]


def resume_phase_for(worker: WorkerName) -> Phase:
    """Where a run picks up after a human answers a worker's request."""
    if worker == WorkerName.REFINER:
        return Phase.REFINE
    return Phase.BUILD


class PhaseTransitionManager:
    """Validates and applies phase changes for one run."""

    def __init__(self, store: RunStateStore, event_bus: EventBus | None = None) -> None:
        self.store = store
        self.event_bus = event_bus

    def can_transition(self, from_phase: Phase, to_phase: Phase) -> bool:
        return can_transition(from_phase, to_phase)

    def transition(self, to_phase: Phase) -> bool:
        """Apply an allowed edge. Returns False (state untouched) for a disallowed one.

        Raises RunNotFoundError if there is no run.
        """
        state = self.store.require()
        from_phase = state.phase

        if not can_transition(from_phase, to_phase):
            reason = f"Invalid transition from {from_phase} to {to_phase}"
            logger.warning("[%s] %s", state.run_id, reason)
            self._emit("transition_blocked", state.run_id,
                       from_phase=from_phase, to_phase=to_phase, reason=reason)
            return False

        self._emit("transition_started", state.run_id, from_phase=from_phase, to_phase=to_phase)
        self.store.update_phase(to_phase)
        logger.info("[%s] %s -> %s", state.run_id, from_phase, to_phase)
        self._emit("transition_completed", state.run_id, from_phase=from_phase, to_phase=to_phase)
        return True

    def get_next_phase(self, current: Phase, verdict: str | None = None) -> Phase | None:
        """Resolve the phase after `current`. Gate needs a verdict."""
        if current == Phase.GATE:
            return self._resolve_verdict(verdict)
        return _LINEAR_NEXT.get(current)

    def _resolve_verdict(self, verdict: str | None) -> Phase:
        try:
            parsed = Verdict(verdict)
        except ValueError:
            raise UnknownVerdictError(f"Unknown verdict: {verdict!r}") from None

        if parsed == Verdict.PASS:
            return Phase.READY_FOR_MERGE
        if parsed == Verdict.NEEDS_HUMAN:
            return Phase.WAITING_HUMAN
        # FAIL: rework until the iteration cap is reached
        state = self.store.require()
        if state.iteration < state.max_iterations:
            return Phase.BUILD
        return Phase.FAILED

    def increment_iteration(self) -> tuple[int, bool]:
        """Start a rework iteration. Returns (iteration, cap_reached)."""
        state = self.store.increment_iteration()
        cap_reached = state.iteration >= state.max_iterations
        self._emit("iteration_started", state.run_id,
                   iteration=state.iteration, max_iterations=state.max_iterations)
        if cap_reached:
            self._emit("max_iterations_exceeded", state.run_id,
                       iteration=state.iteration, max_iterations=state.max_iterations)
        return state.iteration, cap_reached

    def set_pending_consultation(self, consultation_id: str | None) -> None:
        before = self.store.require()
        state = self.store.set_pending_consultation(consultation_id)
        if consultation_id is not None and before.phase != Phase.WAITING_HUMAN:
            self._emit("transition_completed", state.run_id,
                       from_phase=before.phase, to_phase=Phase.WAITING_HUMAN)

    def get_pending_consultation(self) -> str | None:
        state = self.store.load()
        return state.pending_consultation_id if state else None

    def current_phase(self) -> Phase | None:
        state = self.store.load()
        return state.phase if state else None

    def current_iteration(self) -> int:
        state = self.store.load()
        return state.iteration if state else 1

    def is_terminal_phase(self) -> bool:
        return self.current_phase() in TERMINAL_PHASES

    def is_waiting_for_human(self) -> bool:
        return self.current_phase() == Phase.WAITING_HUMAN

    def _emit(self, type: str, run_id: str, **data) -> None:
        if self.event_bus:
            self.event_bus.emit(PHASE_EVENT, type, run_id, **data)

