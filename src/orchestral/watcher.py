"""Polling watcher that turns run-directory files into typed events.

  verifier/tests-ready.flag  → tests_ready (with verifier/test-config.json, if any)
  verifier/test-output.json  → test_execution_done (with the parsed output)
  refiner/done.flag          → refiner_done
  builder/done.flag          → builder_done
  verifier/done.flag         → verifier_done
  gatekeeper/verdict.json    → gatekeeper_done (with the parsed verdict)
  crp/*.json                 → crp_created
  vcr/*.json                 → vcr_created
  <worker>/error.flag        → error_flag
  unparseable artifact       → error

A file produces an event once per (path, mtime). Delivery is still
at-least-once from the handlers' point of view: a restarted watcher sees
every file again.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from orchestral.retry import ErrorClassification
from orchestral.runs import (
    DONE_FLAG,
    ERROR_FLAG,
    TEST_CONFIG_FILE,
    TEST_OUTPUT_FILE,
    TESTS_READY_FLAG,
    VERDICT_FILE,
)
from orchestral.schemas import (
    ConsultationRequest,
    GateVerdict,
    HumanDecision,
    TestConfig,
    TestOutput,
    WorkerName,
)

logger = logging.getLogger(__name__)

EventType = Literal[
    "tests_ready", "test_execution_done", "refiner_done", "builder_done", "verifier_done", "gatekeeper_done",
    "crp_created", "vcr_created", "error_flag", "error",
]


@dataclass
class ErrorFlag:
    """Contents of <worker>/error.flag."""
    worker: WorkerName
    classification: ErrorClassification
    message: str
    recoverable: bool = True

    @classmethod
    def from_payload(cls, worker: WorkerName, payload: dict[str, Any]) -> ErrorFlag:
        try:
            classification = ErrorClassification(str(payload.get("error_type", "crash")))
        except ValueError:
            classification = ErrorClassification.OTHER
        return cls(
            worker=worker,
            classification=classification,
            message=str(payload.get("message", "worker reported an error")),
            recoverable=bool(payload.get("recoverable", True)),
        )


@dataclass
class WatchEvent:
    type: EventType
    path: Path
    worker: WorkerName | None = None
    verdict: GateVerdict | None = None
    consultation: ConsultationRequest | None = None
    decision: HumanDecision | None = None
    error_flag: ErrorFlag | None = None
    test_config: TestConfig | None = None
    test_output: TestOutput | None = None
    error: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class RunWatcher:
    """Scans one run directory on demand; call poll() from a loop."""

    def __init__(self, run_dir: str | Path) -> None:
        self.run_dir = Path(run_dir)
        self._seen: dict[Path, float] = {}

    def poll(self) -> list[WatchEvent]:
        events: list[WatchEvent] = []
        verifier_dir = self.run_dir / WorkerName.VERIFIER

        ready_path = verifier_dir / TESTS_READY_FLAG
        if self._is_new(ready_path):
            events.append(WatchEvent(
                type="tests_ready", path=ready_path, worker=WorkerName.VERIFIER,
                test_config=self._test_config(verifier_dir / TEST_CONFIG_FILE),
            ))

        output_path = verifier_dir / TEST_OUTPUT_FILE
        if self._is_new(output_path):
            events.append(self._parse(output_path, TestOutput, "test_execution_done", "test_output"))

        for worker in (WorkerName.REFINER, WorkerName.BUILDER, WorkerName.VERIFIER):
            path = self.run_dir / worker / DONE_FLAG
            if self._is_new(path):
                events.append(WatchEvent(type=f"{worker}_done", path=path, worker=worker))

        verdict_path = self.run_dir / WorkerName.GATEKEEPER / VERDICT_FILE
        if self._is_new(verdict_path):
            events.append(self._parse(verdict_path, GateVerdict, "gatekeeper_done", "verdict"))

        for path in self._new_json(self.run_dir / "crp"):
            events.append(self._parse(path, ConsultationRequest, "crp_created", "consultation"))

        for path in self._new_json(self.run_dir / "vcr"):
            events.append(self._parse(path, HumanDecision, "vcr_created", "decision"))

        for worker in WorkerName:
            path = self.run_dir / worker / ERROR_FLAG
            if self._is_new(path):
                events.append(self._error_flag(path, worker))

        return events

    def forget(self, path: Path) -> None:
        """Let a file fire again (e.g. a done.flag recreated with the same mtime)."""
        self._seen.pop(path, None)

    def prune(self) -> None:
        """Drop entries for files that are gone.

        File mtimes are coarse, so a flag deleted and recreated between two
        polls can come back with the same mtime. Call this after anything
        that deletes signal files.
        """
        for path in [p for p in self._seen if not p.exists()]:
            del self._seen[path]

    def _is_new(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            self._seen.pop(path, None)
            return False
        if self._seen.get(path) == mtime:
            return False
        self._seen[path] = mtime
        return True

    def _new_json(self, directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        return [p for p in sorted(directory.glob("*.json")) if self._is_new(p)]

    def _parse(self, path: Path, model, event_type: EventType, attr: str) -> WatchEvent:
        try:
            parsed = model.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            # Partially written files get another chance on the next poll.
            self.forget(path)
            message = f"Failed to parse {path.parent.name}/{path.name}: {e}"
            logger.warning(message)
            return WatchEvent(type="error", path=path, error=message)
        worker = {
            "gatekeeper_done": WorkerName.GATEKEEPER,
            "test_execution_done": WorkerName.VERIFIER,
        }.get(event_type)
        return WatchEvent(type=event_type, path=path, worker=worker, **{attr: parsed})

    def _test_config(self, path: Path) -> TestConfig | None:
        if not path.exists():
            return None
        try:
            return TestConfig.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable %s: %s", path.name, e)
            return None

    def _error_flag(self, path: Path, worker: WorkerName) -> WatchEvent:
        try:
            payload = json.loads(path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("error.flag is not a JSON object")
        except (OSError, ValueError) as e:
            payload = {
                "error_type": "crash",
                "message": f"Error flag created but could not be parsed: {e}",
                "recoverable": False,
            }
        flag = ErrorFlag.from_payload(worker, payload)
        return WatchEvent(type="error_flag", path=path, worker=worker, error_flag=flag)
