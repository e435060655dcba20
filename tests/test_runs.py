"""Tests for run directory management."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from orchestral import schemas
from orchestral.runs import RunManager, parse_duration, parse_timestamp
from orchestral.schemas import (
    ConsultationRequest,
    HumanDecision,
    Phase,
    WorkerName,
)


def _crp(crp_id: str, worker=WorkerName.BUILDER, created_at: str = "") -> ConsultationRequest:
    crp = ConsultationRequest(crp_id=crp_id, created_by=worker, question=f"{crp_id}?")
    if created_at:
        crp.created_at = created_at
    return crp


def _backdate(runs: RunManager, run_id: str, days: int, phase: Phase) -> None:
    store = runs.store(run_id)
    state = store.load()
    state.started_at = (datetime.now() - timedelta(days=days)).isoformat()
    state.phase = phase
    store.save(state)


class TestParseDuration:
    def test_days(self):
        assert parse_duration("7d") == timedelta(days=7)

    def test_hours(self):
        assert parse_duration("12h") == timedelta(hours=12)

    @pytest.mark.parametrize("text", ["", "7", "d7", "7w", "-1d", "1.5h"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


class TestParseTimestamp:
    def test_naive(self):
        assert parse_timestamp("2024-05-01T10:00:00") == datetime(2024, 5, 1, 10, 0, 0)

    def test_utc_suffix_becomes_naive(self):
        assert parse_timestamp("2024-05-01T10:00:00Z").tzinfo is None

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None


class TestCreateRun:
    def test_layout(self, runs, run_id):
        run_dir = runs.get_run_dir(run_id)
        assert (run_dir / "state.json").exists()
        assert (run_dir / "briefing" / "raw.md").read_text().startswith("# Briefing")
        for sub in ("crp", "vcr", "builder/output", "verifier/tests"):
            assert (run_dir / sub).is_dir()
        for worker in WorkerName:
            assert runs.prompt_path(run_id, worker).exists()

    def test_gatekeeper_prompt_mentions_verdict(self, runs, run_id):
        text = runs.prompt_path(run_id, WorkerName.GATEKEEPER).read_text()
        assert "verdict.json" in text
        assert "NEEDS_HUMAN" in text

    def test_custom_prompt(self, runs):
        rid = runs.create_run("b", run_id="run-x", prompts={WorkerName.BUILDER: "build it"})
        assert runs.prompt_path(rid, WorkerName.BUILDER).read_text() == "build it"

    def test_initial_state(self, runs, run_id):
        state = runs.store(run_id).load()
        assert state.phase == Phase.REFINE
        assert state.max_iterations == 3

    def test_duplicate_run_id_rejected(self, runs, run_id):
        with pytest.raises(FileExistsError):
            runs.create_run("again", run_id=run_id)

    def test_generated_ids_unique(self, runs):
        now = datetime(2024, 5, 1, 12, 0, 0)
        first = runs.generate_run_id(now)
        runs.create_run("a", run_id=first)
        second = runs.generate_run_id(now)
        assert first == "run-20240501120000"
        assert second == "run-20240501120000-2"

    def test_delete(self, runs, run_id):
        assert runs.delete_run(run_id)
        assert not runs.run_exists(run_id)
        assert not runs.delete_run(run_id)


class TestListing:
    def test_empty(self, tmp_path):
        assert RunManager(tmp_path).list_runs() == []

    def test_newest_first(self, runs):
        runs.create_run("a", run_id="run-a")
        runs.create_run("b", run_id="run-b")
        _backdate(runs, "run-a", 2, Phase.BUILD)
        assert [r.run_id for r in runs.list_runs()] == ["run-b", "run-a"]
        assert runs.get_latest_run().run_id == "run-b"

    def test_corrupt_state_skipped(self, runs, run_id):
        broken = runs.get_run_dir("run-broken")
        broken.mkdir(parents=True)
        (broken / "state.json").write_text("{")
        assert [r.run_id for r in runs.list_runs()] == [run_id]

    def test_active_run_skips_terminal(self, runs):
        runs.create_run("a", run_id="run-a")
        runs.create_run("b", run_id="run-b")
        _backdate(runs, "run-a", 1, Phase.GATE)
        _backdate(runs, "run-b", 0, Phase.COMPLETED)
        assert runs.get_active_run().run_id == "run-a"


class TestConsultations:
    def test_unresolved_is_set_difference(self, runs, run_id):
        runs.save_consultation(run_id, _crp("crp-1", created_at="2024-01-01T00:00:01"))
        runs.save_consultation(run_id, _crp("crp-2", created_at="2024-01-01T00:00:02"))
        runs.save_decision(run_id, HumanDecision(vcr_id="vcr-1", crp_id="crp-1", decision="yes"))
        assert [c.crp_id for c in runs.unresolved_consultations(run_id)] == ["crp-2"]

    def test_status_field_is_ignored(self, runs, run_id):
        crp = _crp("crp-1")
        crp.status = "resolved"
        runs.save_consultation(run_id, crp)
        assert [c.crp_id for c in runs.unresolved_consultations(run_id)] == ["crp-1"]

    def test_save_decision_marks_request_resolved(self, runs, run_id):
        runs.save_consultation(run_id, _crp("crp-1"))
        runs.save_decision(run_id, HumanDecision(vcr_id="vcr-1", crp_id="crp-1", decision="yes"))
        assert runs.get_consultation(run_id, "crp-1").status == "resolved"
        assert runs.get_decision_for(run_id, "crp-1").vcr_id == "vcr-1"

    def test_lookup_by_crp_id_when_filename_differs(self, runs, run_id):
        path = runs.get_run_dir(run_id) / "crp" / "question.json"
        path.write_text(_crp("crp-7").model_dump_json())
        assert runs.get_consultation(run_id, "crp-7").crp_id == "crp-7"

    def test_corrupt_request_skipped(self, runs, run_id):
        (runs.get_run_dir(run_id) / "crp" / "bad.json").write_text("nope")
        runs.save_consultation(run_id, _crp("crp-1"))
        assert [c.crp_id for c in runs.list_consultations(run_id)] == ["crp-1"]


class TestArtifacts:
    def test_has_worker_completed(self, runs, run_id):
        assert not runs.has_worker_completed(run_id, WorkerName.REFINER)
        runs.done_flag_path(run_id, WorkerName.REFINER).touch()
        assert runs.has_worker_completed(run_id, WorkerName.REFINER)

    def test_read_verdict(self, runs, run_id):
        assert runs.read_verdict(run_id) is None
        runs.verdict_path(run_id).write_text('{"verdict": "PASS", "reason": "ok"}')
        assert runs.read_verdict(run_id).verdict == "PASS"

    def test_clear_worker_artifacts(self, runs, run_id):
        for worker in (WorkerName.REFINER, WorkerName.BUILDER):
            runs.done_flag_path(run_id, worker).touch()
        runs.verdict_path(run_id).write_text('{"verdict": "FAIL"}')
        runs.clear_worker_artifacts(run_id, [WorkerName.BUILDER, WorkerName.GATEKEEPER])
        assert runs.has_worker_completed(run_id, WorkerName.REFINER)
        assert not runs.has_worker_completed(run_id, WorkerName.BUILDER)
        assert runs.read_verdict(run_id) is None

    def test_clear_verifier_artifacts(self, runs, run_id):
        verifier_dir = runs.get_run_dir(run_id) / "verifier"
        for name in ("done.flag", "tests-ready.flag", "test-output.json", "test-log.txt", "test-config.json"):
            (verifier_dir / name).write_text("{}")
        runs.clear_worker_artifacts(run_id, [WorkerName.VERIFIER])
        assert sorted(p.name for p in verifier_dir.iterdir()) == ["test-config.json"]

    def test_verifier_phase2_prompt(self, runs, run_id):
        output = schemas.TestOutput(
            exit_code=1, duration_ms=1200, executed_at="2024-01-01T00:00:00",
            test_results=schemas.TestCounts(total=4, passed=3, failed=1),
        )
        path = runs.write_verifier_phase2_prompt(run_id, output)
        text = path.read_text()
        assert path.name == "verifier-phase2.md"
        assert text.startswith(runs.prompt_path(run_id, WorkerName.VERIFIER).read_text())
        assert "Exit code: 1 (1200ms)" in text
        assert "4 total, 3 passed, 1 failed, 0 skipped" in text
        assert "test-log.txt" in text

    def test_verifier_phase2_prompt_timeout(self, runs, run_id):
        output = schemas.TestOutput(exit_code=-9, duration_ms=100, executed_at="", timed_out=True)
        text = runs.write_verifier_phase2_prompt(run_id, output).read_text()
        assert "timed out after 100ms" in text
        assert "Exit code" not in text

    def test_read_test_files(self, runs, run_id):
        assert runs.read_test_config(run_id) is None
        assert runs.read_test_output(run_id) is None
        runs.verifier_file(run_id, "test-config.json").write_text('{"test_command": "pytest"}')
        assert runs.read_test_config(run_id).test_command == "pytest"


class TestCleanup:
    def test_only_old_terminal_runs(self, runs):
        for rid in ("run-done", "run-failed", "run-active", "run-recent"):
            runs.create_run("x", run_id=rid)
        _backdate(runs, "run-done", 10, Phase.COMPLETED)
        _backdate(runs, "run-failed", 10, Phase.FAILED)
        _backdate(runs, "run-active", 10, Phase.BUILD)
        _backdate(runs, "run-recent", 1, Phase.COMPLETED)

        cleanable = {r.run_id for r in runs.find_cleanable_runs(timedelta(days=7))}
        assert cleanable == {"run-done", "run-failed"}

    def test_clean_deletes(self, runs):
        runs.create_run("x", run_id="run-done")
        runs.create_run("x", run_id="run-ready")
        _backdate(runs, "run-done", 10, Phase.COMPLETED)
        _backdate(runs, "run-ready", 10, Phase.READY_FOR_MERGE)
        assert runs.clean_runs(timedelta(days=7)) == ["run-done"]
        assert runs.run_exists("run-ready")
