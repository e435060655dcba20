"""Run state store: the only way anything touches state.json.

Every mutation is a read-modify-write on the run record followed by an
atomic save: the new record is written to a temp file in the run
directory and moved over state.json with os.replace, so a reader sees
either the old record or the new one, never a torn write.

There is no cross-process locking. One orchestrator owns a run directory
at a time.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from orchestral.schemas import (
    HistoryEntry,
    LastEvent,
    Phase,
    RunState,
    WorkerName,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"

# Slots reset by the rework loop; the refiner's output survives iterations.
REWORK_WORKERS = (WorkerName.BUILDER, WorkerName.VERIFIER, WorkerName.GATEKEEPER)


class RunNotFoundError(FileNotFoundError):
    """A mutating operation addressed a run with no persisted state."""

    def __init__(self, run_dir: Path) -> None:
        super().__init__(f"No run state at {run_dir / STATE_FILE}")
        self.run_dir = run_dir


class RunStateStore:
    """Read/modify/write access to one run's state.json."""

    def __init__(self, run_dir: str | Path) -> None:
        self.run_dir = Path(run_dir)

    @property
    def state_path(self) -> Path:
        return self.run_dir / STATE_FILE

    def exists(self) -> bool:
        return self.state_path.exists()

    # ── Load / Save ─────────────────────────────────────────────────

    def load(self) -> RunState | None:
        """Return the run record, or None if missing, empty or corrupt."""
        if not self.state_path.exists():
            return None
        try:
            raw = self.state_path.read_text()
        except OSError as e:
            logger.warning("Could not read %s: %s", self.state_path, e)
            return None
        if not raw.strip():
            logger.warning("Empty state file: %s", self.state_path)
            return None
        try:
            return RunState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Corrupt state file %s: %s", self.state_path, e.errors()[0]["msg"])
            return None

    def save(self, state: RunState) -> None:
        """Persist atomically. Stamps updated_at."""
        state.updated_at = datetime.now().isoformat()
        self.run_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.run_dir, prefix=".state.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def require(self) -> RunState:
        """Load or raise RunNotFoundError."""
        state = self.load()
        if state is None:
            raise RunNotFoundError(self.run_dir)
        return state

    def create_initial_state(self, run_id: str, max_iterations: int = 3) -> RunState:
        now = datetime.now().isoformat()
        state = RunState(
            run_id=run_id,
            phase=Phase.REFINE,
            iteration=1,
            max_iterations=max_iterations,
            started_at=now,
            updated_at=now,
        )
        self.save(state)
        return state

    # ── Mutators ────────────────────────────────────────────────────

    def update_phase(self, phase: Phase) -> RunState:
        """Set the phase, recording the previous phase as completed."""
        state = self.require()
        state.history.append(HistoryEntry(phase=state.phase, result="completed"))
        state.phase = phase
        self.save(state)
        return state

    def update_worker_status(
        self,
        worker: WorkerName,
        status: WorkerStatus,
        error: str | None = None,
    ) -> RunState:
        state = self.require()
        slot = state.worker(worker)
        now = datetime.now().isoformat()
        slot.status = status
        if status == WorkerStatus.RUNNING:
            slot.started_at = now
            slot.completed_at = None
            slot.error = None
        elif status in (WorkerStatus.COMPLETED, WorkerStatus.FAILED, WorkerStatus.TIMEOUT):
            slot.completed_at = now
        if error is not None:
            slot.error = error
        self.save(state)
        return state

    def set_pending_consultation(self, consultation_id: str | None) -> RunState:
        """Record (or clear) the pending request. A non-null id forces waiting_human."""
        state = self.require()
        state.pending_consultation_id = consultation_id
        if consultation_id is not None and state.phase != Phase.WAITING_HUMAN:
            state.history.append(HistoryEntry(phase=state.phase, result="waiting_human"))
            state.phase = Phase.WAITING_HUMAN
        self.save(state)
        return state

    def increment_iteration(self) -> RunState:
        """Bump the iteration and reset the rework slots to pending."""
        state = self.require()
        state.iteration += 1
        for name in REWORK_WORKERS:
            slot = state.worker(name)
            slot.status = WorkerStatus.PENDING
            slot.started_at = None
            slot.completed_at = None
            slot.error = None
        self.save(state)
        return state

    def add_history(self, phase: Phase, result: str) -> RunState:
        state = self.require()
        state.history.append(HistoryEntry(phase=phase, result=result))
        self.save(state)
        return state

    def add_error(self, message: str) -> RunState:
        state = self.require()
        state.errors.append(message)
        self.save(state)
        return state

    def update_last_event(self, event_type: str, worker: WorkerName | None = None) -> RunState:
        state = self.require()
        state.last_event = LastEvent(type=event_type, worker=worker)
        self.save(state)
        return state

    def force_phase(self, phase: Phase, reason: str) -> RunState:
        """Set the phase without edge validation. Operator escape hatch only."""
        state = self.require()
        state.history.append(HistoryEntry(phase=state.phase, result=f"forced: {reason}"))
        state.phase = phase
        self.save(state)
        return state

    # ── Queries ─────────────────────────────────────────────────────

    def is_max_iterations_exceeded(self) -> bool:
        state = self.load()
        if state is None:
            return False
        return state.iteration >= state.max_iterations
