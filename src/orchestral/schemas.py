"""All Pydantic models for persisted run artifacts.

Every file the orchestrator reads or writes under a run directory is a
Pydantic model: the run record (state.json), Consultation Requests
(crp/*.json), Human Decisions (vcr/*.json), the gate verdict
(gatekeeper/verdict.json) and the verifier's test execution files.
Workers are external processes, so these schemas are the only contract
between them and the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


# ── Enums ────────────────────────────────────────────────────────────


class Phase(StrEnum):
    """Pipeline phase of a run."""
    REFINE = "refine"
    BUILD = "build"
    VERIFY = "verify"
    GATE = "gate"
    WAITING_HUMAN = "waiting_human"
    READY_FOR_MERGE = "ready_for_merge"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerName(StrEnum):
    """The four worker roles, one per working phase."""
    REFINER = "refiner"
    BUILDER = "builder"
    VERIFIER = "verifier"
    GATEKEEPER = "gatekeeper"


class WorkerStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    WAITING_HUMAN = "waiting_human"
    WAITING_TEST_EXECUTION = "waiting_test_execution"


class Verdict(StrEnum):
    """Gate outcomes the phase machine knows how to resolve."""
    PASS = "PASS"
    FAIL = "FAIL"
    NEEDS_HUMAN = "NEEDS_HUMAN"


def _default_workers() -> dict[WorkerName, WorkerState]:
    return {name: WorkerState() for name in WorkerName}


# ── Run State ────────────────────────────────────────────────────────


class WorkerState(BaseModel):
    """Status slot for one worker."""
    status: WorkerStatus = WorkerStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None


class HistoryEntry(BaseModel):
    """One line of the append-only phase history."""
    phase: Phase
    result: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class LastEvent(BaseModel):
    """Most recent event applied to the run, used to skip replays."""
    type: str
    worker: WorkerName | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class RunState(BaseModel):
    """Canonical persisted record of one pipeline run."""
    run_id: str
    phase: Phase = Phase.REFINE
    iteration: int = 1
    max_iterations: int = 3
    started_at: str = ""
    updated_at: str = ""
    workers: dict[WorkerName, WorkerState] = Field(default_factory=_default_workers)
    pending_consultation_id: str | None = None
    history: list[HistoryEntry] = []
    errors: list[str] = []
    last_event: LastEvent | None = None

    def worker(self, name: WorkerName) -> WorkerState:
        """Return the slot for a worker, creating it if an old file lacks it."""
        if name not in self.workers:
            self.workers[name] = WorkerState()
        return self.workers[name]

    @property
    def is_terminal(self) -> bool:
        return self.phase in (Phase.COMPLETED, Phase.FAILED)


# ── Human Consultation ──────────────────────────────────────────────


class ConsultationOption(BaseModel):
    id: str
    label: str
    description: str = ""


class ConsultationRequest(BaseModel):
    """A question a worker cannot answer on its own authority."""
    crp_id: str
    created_by: WorkerName
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    type: str = "decision"
    question: str
    context: str = ""
    options: list[ConsultationOption] = []
    status: Literal["pending", "resolved"] = "pending"


class HumanDecision(BaseModel):
    """The recorded answer to exactly one Consultation Request."""
    vcr_id: str
    crp_id: str
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    decision: str
    rationale: str = ""
    additional_notes: str = ""
    applies_to_future: bool = False


# ── Gate ─────────────────────────────────────────────────────────────


class GateVerdict(BaseModel):
    """Contents of gatekeeper/verdict.json.

    The verdict is kept as a plain string so an unexpected value written by
    a worker still loads; it is rejected when the phase machine resolves it.
    """
    verdict: str
    reason: str = ""
    issues: list[str] = []
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


# ── Verifier test execution ─────────────────────────────────────────


class TestConfig(BaseModel):
    """Contents of verifier/test-config.json, written before tests-ready.flag."""
    test_command: str
    test_directory: str = "verifier/tests"
    timeout_ms: int = 600_000


class TestCounts(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class TestOutput(BaseModel):
    """Contents of verifier/test-output.json, written by the test runner."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    executed_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    timed_out: bool = False
    test_results: TestCounts | None = None


# ── Listings ─────────────────────────────────────────────────────────


class RunListItem(BaseModel):
    """Summary row for run listings."""
    run_id: str
    phase: Phase
    iteration: int
    max_iterations: int
    started_at: str
    updated_at: str
