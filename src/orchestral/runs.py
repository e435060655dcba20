"""Run directory lifecycle: create, list, read artifacts, clean.

Each run lives in its own directory under the project:
  proj/
  ├── orchestral.yaml
  └── .orchestral/
      ├── daemon.pid
      └── runs/<run-id>/
          ├── state.json
          ├── events.jsonl
          ├── briefing/raw.md
          ├── prompts/<worker>.md
          ├── refiner/done.flag
          ├── builder/{done.flag, output/}
          ├── verifier/{done.flag, tests/, tests-ready.flag,
          │             test-config.json, test-output.json, test-log.txt}
          ├── gatekeeper/{done.flag, verdict.json}
          ├── crp/<crp-id>.json
          └── vcr/<vcr-id>.json

A Consultation Request counts as resolved when a Human Decision in vcr/
references it; the ``status`` field on the request is informational.
"""

from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from orchestral.schemas import (
    ConsultationRequest,
    GateVerdict,
    HumanDecision,
    Phase,
    RunListItem,
    TestConfig,
    TestOutput,
    WorkerName,
)
from orchestral.state import RunStateStore

logger = logging.getLogger(__name__)

ORCHESTRAL_DIR = ".orchestral"
RUNS_DIR = "runs"
DONE_FLAG = "done.flag"
ERROR_FLAG = "error.flag"
VERDICT_FILE = "verdict.json"
TESTS_READY_FLAG = "tests-ready.flag"
TEST_CONFIG_FILE = "test-config.json"
TEST_OUTPUT_FILE = "test-output.json"
TEST_LOG_FILE = "test-log.txt"

# Signal files a worker leaves behind besides done.flag and error.flag.
WORKER_SIGNALS: dict[WorkerName, tuple[str, ...]] = {
    WorkerName.VERIFIER: (TESTS_READY_FLAG, TEST_OUTPUT_FILE, TEST_LOG_FILE),
    WorkerName.GATEKEEPER: (VERDICT_FILE,),
}

RUN_SUBDIRS = [
    "briefing",
    "prompts",
    "refiner",
    "builder",
    "builder/output",
    "verifier",
    "verifier/tests",
    "gatekeeper",
    "crp",
    "vcr",
]

_DURATION_RE = re.compile(r"^(\d+)([dh])$")


def parse_duration(text: str) -> timedelta:
    """Parse "7d" or "12h" into a timedelta."""
    match = _DURATION_RE.match(text.strip())
    if not match:
        raise ValueError(
            f"Invalid duration format: {text!r}. Use format like '7d' or '24h'"
        )
    value, unit = int(match.group(1)), match.group(2)
    return timedelta(days=value) if unit == "d" else timedelta(hours=value)


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO timestamp into naive local time. None if unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class RunManager:
    """Manages the .orchestral/runs tree for one project."""

    def __init__(self, project_dir: str | Path) -> None:
        self.project_dir = Path(project_dir).resolve()
        self._orchestral_dir = self.project_dir / ORCHESTRAL_DIR
        self._runs_dir = self._orchestral_dir / RUNS_DIR

    # ── Paths ──────────────────────────────────────────────────────

    @property
    def orchestral_dir(self) -> Path:
        return self._orchestral_dir

    @property
    def runs_dir(self) -> Path:
        return self._runs_dir

    def get_run_dir(self, run_id: str) -> Path:
        return self._runs_dir / run_id

    def store(self, run_id: str) -> RunStateStore:
        return RunStateStore(self.get_run_dir(run_id))

    def prompt_path(self, run_id: str, worker: WorkerName) -> Path:
        return self.get_run_dir(run_id) / "prompts" / f"{worker}.md"

    def done_flag_path(self, run_id: str, worker: WorkerName) -> Path:
        return self.get_run_dir(run_id) / worker / DONE_FLAG

    def verdict_path(self, run_id: str) -> Path:
        return self.get_run_dir(run_id) / WorkerName.GATEKEEPER / VERDICT_FILE

    def events_path(self, run_id: str) -> Path:
        return self.get_run_dir(run_id) / "events.jsonl"

    def consultation_path(self, run_id: str, crp_id: str) -> Path:
        return self.get_run_dir(run_id) / "crp" / f"{crp_id}.json"

    def verifier_file(self, run_id: str, name: str) -> Path:
        return self.get_run_dir(run_id) / WorkerName.VERIFIER / name

    # ── Lifecycle ──────────────────────────────────────────────────

    def init(self) -> None:
        self._runs_dir.mkdir(parents=True, exist_ok=True)

    def generate_run_id(self, now: datetime | None = None) -> str:
        """run-YYYYMMDDHHMMSS, suffixed -2, -3... if that id is taken."""
        base = f"run-{(now or datetime.now()).strftime('%Y%m%d%H%M%S')}"
        run_id = base
        n = 2
        while self.get_run_dir(run_id).exists():
            run_id = f"{base}-{n}"
            n += 1
        return run_id

    def create_run(
        self,
        briefing: str,
        max_iterations: int = 3,
        run_id: str | None = None,
        prompts: dict[WorkerName, str] | None = None,
    ) -> str:
        """Lay out a new run directory and write its initial state. Returns the run id."""
        run_id = run_id or self.generate_run_id()
        run_dir = self.get_run_dir(run_id)
        if (run_dir / "state.json").exists():
            raise FileExistsError(f"Run already exists: {run_id}")

        for sub in RUN_SUBDIRS:
            (run_dir / sub).mkdir(parents=True, exist_ok=True)
        (run_dir / "briefing" / "raw.md").write_text(briefing)

        for worker in WorkerName:
            text = (prompts or {}).get(worker) or default_prompt(worker, run_dir)
            self.prompt_path(run_id, worker).write_text(text)

        RunStateStore(run_dir).create_initial_state(run_id, max_iterations)
        logger.info("Created run %s", run_id)
        return run_id

    def run_exists(self, run_id: str) -> bool:
        return (self.get_run_dir(run_id) / "state.json").exists()

    def delete_run(self, run_id: str) -> bool:
        run_dir = self.get_run_dir(run_id)
        if not run_dir.exists():
            return False
        shutil.rmtree(run_dir)
        logger.info("Deleted run %s", run_id)
        return True

    # ── Listing ────────────────────────────────────────────────────

    def list_runs(self) -> list[RunListItem]:
        """All runs with readable state, newest first."""
        if not self._runs_dir.exists():
            return []
        items: list[RunListItem] = []
        for entry in self._runs_dir.iterdir():
            if not entry.is_dir():
                continue
            state = RunStateStore(entry).load()
            if state is None:
                continue
            items.append(RunListItem(
                run_id=state.run_id,
                phase=state.phase,
                iteration=state.iteration,
                max_iterations=state.max_iterations,
                started_at=state.started_at,
                updated_at=state.updated_at,
            ))
        items.sort(key=lambda r: r.started_at, reverse=True)
        return items

    def get_latest_run(self) -> RunListItem | None:
        runs = self.list_runs()
        return runs[0] if runs else None

    def get_active_run(self) -> RunListItem | None:
        """Newest run that is not completed or failed."""
        for run in self.list_runs():
            if run.phase not in (Phase.COMPLETED, Phase.FAILED):
                return run
        return None

    # ── Consultation Requests / Human Decisions ────────────────────

    def list_consultations(self, run_id: str) -> list[ConsultationRequest]:
        return sorted(
            self._load_dir(self.get_run_dir(run_id) / "crp", ConsultationRequest),
            key=lambda c: c.created_at,
        )

    def get_consultation(self, run_id: str, crp_id: str) -> ConsultationRequest | None:
        path = self.consultation_path(run_id, crp_id)
        if path.exists():
            loaded = self._load_file(path, ConsultationRequest)
            if loaded is not None:
                return loaded
        # File names are chosen by workers; fall back to matching on crp_id.
        for crp in self.list_consultations(run_id):
            if crp.crp_id == crp_id:
                return crp
        return None

    def save_consultation(self, run_id: str, crp: ConsultationRequest) -> Path:
        path = self.consultation_path(run_id, crp.crp_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(crp.model_dump_json(indent=2))
        return path

    def list_decisions(self, run_id: str) -> list[HumanDecision]:
        return sorted(
            self._load_dir(self.get_run_dir(run_id) / "vcr", HumanDecision),
            key=lambda v: v.created_at,
        )

    def get_decision_for(self, run_id: str, crp_id: str) -> HumanDecision | None:
        for vcr in self.list_decisions(run_id):
            if vcr.crp_id == crp_id:
                return vcr
        return None

    def save_decision(self, run_id: str, vcr: HumanDecision) -> Path:
        """Write the decision, then mark its request resolved for display."""
        path = self.get_run_dir(run_id) / "vcr" / f"{vcr.vcr_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(vcr.model_dump_json(indent=2))

        crp = self.get_consultation(run_id, vcr.crp_id)
        if crp is not None and crp.status != "resolved":
            crp.status = "resolved"
            self.save_consultation(run_id, crp)
        return path

    def unresolved_consultations(self, run_id: str) -> list[ConsultationRequest]:
        """Requests with no matching decision, by set difference on crp_id."""
        decided = {v.crp_id for v in self.list_decisions(run_id)}
        return [c for c in self.list_consultations(run_id) if c.crp_id not in decided]

    # ── Worker artifacts ───────────────────────────────────────────

    def has_worker_completed(self, run_id: str, worker: WorkerName) -> bool:
        return self.done_flag_path(run_id, worker).exists()

    def read_verdict(self, run_id: str) -> GateVerdict | None:
        path = self.verdict_path(run_id)
        if not path.exists():
            return None
        return self._load_file(path, GateVerdict)

    def clear_worker_artifacts(self, run_id: str, workers: list[WorkerName] | tuple) -> None:
        """Remove completion markers so a reworked worker can signal again."""
        for worker in workers:
            worker_dir = self.get_run_dir(run_id) / worker
            for name in (DONE_FLAG, ERROR_FLAG, *WORKER_SIGNALS.get(worker, ())):
                (worker_dir / name).unlink(missing_ok=True)

    def read_test_config(self, run_id: str) -> TestConfig | None:
        path = self.verifier_file(run_id, TEST_CONFIG_FILE)
        if not path.exists():
            return None
        return self._load_file(path, TestConfig)

    def read_test_output(self, run_id: str) -> TestOutput | None:
        path = self.verifier_file(run_id, TEST_OUTPUT_FILE)
        if not path.exists():
            return None
        return self._load_file(path, TestOutput)

    def write_verifier_phase2_prompt(self, run_id: str, output: TestOutput) -> Path:
        """Verifier prompt plus the test results, for the second verifier pass."""
        base = self.prompt_path(run_id, WorkerName.VERIFIER)
        text = base.read_text() if base.exists() else default_prompt(WorkerName.VERIFIER, self.get_run_dir(run_id))
        lines = ["", "## Test execution results", ""]
        if output.timed_out:
            lines.append(f"The test command timed out after {output.duration_ms}ms.")
        else:
            lines.append(f"Exit code: {output.exit_code} ({output.duration_ms}ms)")
        if output.test_results is not None:
            counts = output.test_results
            lines.append(
                f"Tests: {counts.total} total, {counts.passed} passed, "
                f"{counts.failed} failed, {counts.skipped} skipped"
            )
        lines.append(f"Full output: {self.verifier_file(run_id, TEST_LOG_FILE)}")
        lines.append("")
        lines.append("Review the results and finish the verification.")

        path = self.get_run_dir(run_id) / "prompts" / "verifier-phase2.md"
        path.write_text(text + "\n".join(lines) + "\n")
        return path

    # ── Cleanup ────────────────────────────────────────────────────

    def find_cleanable_runs(self, older_than: timedelta, now: datetime | None = None) -> list[RunListItem]:
        """Completed or failed runs started before now - older_than."""
        cutoff = (now or datetime.now()) - older_than
        cleanable = []
        for run in self.list_runs():
            if run.phase not in (Phase.COMPLETED, Phase.FAILED):
                continue
            started = parse_timestamp(run.started_at)
            if started is not None and started < cutoff:
                cleanable.append(run)
        return cleanable

    def clean_runs(self, older_than: timedelta, now: datetime | None = None) -> list[str]:
        """Delete cleanable runs. Returns the deleted run ids."""
        deleted = []
        for run in self.find_cleanable_runs(older_than, now=now):
            if self.delete_run(run.run_id):
                deleted.append(run.run_id)
        return deleted

    # ── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _load_file(path: Path, model):
        try:
            return model.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Skipping unreadable %s: %s", path.name, e)
            return None

    def _load_dir(self, directory: Path, model) -> list:
        if not directory.exists():
            return []
        loaded = []
        for path in sorted(directory.glob("*.json")):
            item = self._load_file(path, model)
            if item is not None:
                loaded.append(item)
        return loaded


def default_prompt(worker: WorkerName, run_dir: Path) -> str:
    """Plain prompt telling a worker where its inputs and signals live."""
    lines = [
        f"# {worker.capitalize()}",
        "",
        f"Run directory: {run_dir}",
        f"Briefing: {run_dir / 'briefing' / 'raw.md'}",
        "",
    ]
    if worker == WorkerName.GATEKEEPER:
        lines.append(
            f"Write your verdict (PASS, FAIL or NEEDS_HUMAN) to "
            f"{run_dir / worker / VERDICT_FILE}."
        )
    else:
        lines.append(f"When finished, create {run_dir / worker / DONE_FLAG}.")
    if worker == WorkerName.VERIFIER:
        lines.append(
            f"To have the orchestrator run your tests, write "
            f"{run_dir / worker / TEST_CONFIG_FILE} ({{\"test_command\": ...}}), "
            f"create {run_dir / worker / TESTS_READY_FLAG} and stop. "
            f"You are restarted with the results."
        )
    lines.append(
        f"If you need a human decision, write a Consultation Request to "
        f"{run_dir / 'crp'}/<id>.json and stop."
    )
    return "\n".join(lines) + "\n"
