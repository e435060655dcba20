"""Tests for the run directory watcher."""

from __future__ import annotations

import json
import os

import pytest

from orchestral.retry import ErrorClassification
from orchestral.schemas import ConsultationRequest, HumanDecision, WorkerName
from orchestral.watcher import RunWatcher


@pytest.fixture
def run_dir(runs, run_id):
    return runs.get_run_dir(run_id)


@pytest.fixture
def watcher(run_dir):
    return RunWatcher(run_dir)


class TestPoll:
    def test_nothing_new(self, watcher):
        assert watcher.poll() == []

    def test_done_flags(self, watcher, run_dir):
        (run_dir / "refiner" / "done.flag").touch()
        (run_dir / "verifier" / "done.flag").touch()
        events = watcher.poll()
        assert [(e.type, e.worker) for e in events] == [
            ("refiner_done", WorkerName.REFINER),
            ("verifier_done", WorkerName.VERIFIER),
        ]

    def test_each_file_fires_once(self, watcher, run_dir):
        (run_dir / "builder" / "done.flag").touch()
        assert len(watcher.poll()) == 1
        assert watcher.poll() == []

    def test_recreated_file_fires_again(self, watcher, run_dir):
        flag = run_dir / "builder" / "done.flag"
        flag.touch()
        watcher.poll()
        flag.unlink()
        assert watcher.poll() == []
        flag.touch()
        os.utime(flag, (1, 1))
        assert [e.type for e in watcher.poll()] == ["builder_done"]

    def test_forget(self, watcher, run_dir):
        (run_dir / "builder" / "done.flag").touch()
        watcher.poll()
        watcher.forget(run_dir / "builder" / "done.flag")
        assert [e.type for e in watcher.poll()] == ["builder_done"]

    def test_prune_catches_recreation_with_same_mtime(self, watcher, run_dir):
        flag = run_dir / "builder" / "done.flag"
        flag.touch()
        os.utime(flag, (100, 100))
        watcher.poll()
        flag.unlink()
        watcher.prune()
        flag.touch()
        os.utime(flag, (100, 100))
        assert [e.type for e in watcher.poll()] == ["builder_done"]

    def test_prune_keeps_existing_files(self, watcher, run_dir):
        (run_dir / "builder" / "done.flag").touch()
        watcher.poll()
        watcher.prune()
        assert watcher.poll() == []

    def test_verdict(self, watcher, run_dir):
        (run_dir / "gatekeeper" / "verdict.json").write_text(
            json.dumps({"verdict": "FAIL", "issues": ["flaky"]}),
        )
        [event] = watcher.poll()
        assert event.type == "gatekeeper_done"
        assert event.worker == WorkerName.GATEKEEPER
        assert event.verdict.verdict == "FAIL"
        assert event.verdict.issues == ["flaky"]

    def test_consultation_and_decision(self, watcher, run_dir):
        crp = ConsultationRequest(crp_id="crp-1", created_by=WorkerName.BUILDER, question="?")
        vcr = HumanDecision(vcr_id="vcr-1", crp_id="crp-1", decision="a")
        (run_dir / "crp" / "crp-1.json").write_text(crp.model_dump_json())
        (run_dir / "vcr" / "vcr-1.json").write_text(vcr.model_dump_json())
        events = watcher.poll()
        assert [e.type for e in events] == ["crp_created", "vcr_created"]
        assert events[0].consultation.crp_id == "crp-1"
        assert events[1].decision.crp_id == "crp-1"

    def test_partial_file_reported_and_retried(self, watcher, run_dir):
        path = run_dir / "crp" / "crp-1.json"
        path.write_text('{"crp_id": "crp-1"')
        [event] = watcher.poll()
        assert event.type == "error"
        assert "crp-1.json" in event.error

        crp = ConsultationRequest(crp_id="crp-1", created_by=WorkerName.BUILDER, question="?")
        path.write_text(crp.model_dump_json())
        assert [e.type for e in watcher.poll()] == ["crp_created"]


class TestVerifierTests:
    def test_tests_ready_with_config(self, watcher, run_dir):
        (run_dir / "verifier" / "test-config.json").write_text(
            json.dumps({"test_command": "npm test", "timeout_ms": 5000}),
        )
        (run_dir / "verifier" / "tests-ready.flag").touch()
        [event] = watcher.poll()
        assert event.type == "tests_ready"
        assert event.worker == WorkerName.VERIFIER
        assert event.test_config.test_command == "npm test"
        assert event.test_config.timeout_ms == 5000
        assert event.test_config.test_directory == "verifier/tests"

    def test_tests_ready_without_usable_config(self, watcher, run_dir):
        (run_dir / "verifier" / "test-config.json").write_text("{not json")
        (run_dir / "verifier" / "tests-ready.flag").touch()
        [event] = watcher.poll()
        assert event.type == "tests_ready"
        assert event.test_config is None

    def test_test_output(self, watcher, run_dir):
        (run_dir / "verifier" / "test-output.json").write_text(json.dumps({
            "exit_code": 1, "stdout": "1 failed", "executed_at": "2024-01-01T00:00:00",
        }))
        [event] = watcher.poll()
        assert event.type == "test_execution_done"
        assert event.worker == WorkerName.VERIFIER
        assert event.test_output.exit_code == 1
        assert not event.test_output.timed_out


class TestErrorFlag:
    def test_parsed(self, watcher, run_dir):
        (run_dir / "builder" / "error.flag").write_text(json.dumps({
            "error_type": "timeout", "message": "took too long", "recoverable": True,
        }))
        [event] = watcher.poll()
        assert event.type == "error_flag"
        assert event.error_flag.worker == WorkerName.BUILDER
        assert event.error_flag.classification == ErrorClassification.TIMEOUT
        assert event.error_flag.message == "took too long"
        assert event.error_flag.recoverable

    def test_unknown_classification_is_other(self, watcher, run_dir):
        (run_dir / "builder" / "error.flag").write_text(json.dumps({"error_type": "cosmic-ray"}))
        [event] = watcher.poll()
        assert event.error_flag.classification == ErrorClassification.OTHER

    def test_unparseable_is_fatal_crash(self, watcher, run_dir):
        (run_dir / "verifier" / "error.flag").write_text("segfault")
        [event] = watcher.poll()
        assert event.error_flag.classification == ErrorClassification.CRASH
        assert not event.error_flag.recoverable
        assert "could not be parsed" in event.error_flag.message
