"""Tests for interrupted-run detection and recovery."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from conftest import FakeHost

from orchestral.recovery import (
    InterruptRecovery,
    ResumeStrategy,
    determine_strategy,
    format_age,
    format_summary,
)
from orchestral.schemas import Phase, RunState, WorkerName, WorkerStatus
from orchestral.state import RunNotFoundError


def _make_run(runs, run_id, phase, age=timedelta(hours=1), pending=None):
    runs.create_run("briefing", run_id=run_id)
    store = runs.store(run_id)
    state = store.load()
    state.phase = phase
    state.started_at = (datetime.now() - age).isoformat()
    state.pending_consultation_id = pending
    if phase in (Phase.REFINE, Phase.BUILD, Phase.VERIFY, Phase.GATE):
        worker = {
            Phase.REFINE: WorkerName.REFINER, Phase.BUILD: WorkerName.BUILDER,
            Phase.VERIFY: WorkerName.VERIFIER, Phase.GATE: WorkerName.GATEKEEPER,
        }[phase]
        state.worker(worker).status = WorkerStatus.RUNNING
    store.save(state)
    return store


@pytest.fixture
def recovery(runs, bus):
    return InterruptRecovery(runs, host_factory=lambda run_id: FakeHost(alive=False), event_bus=bus)


class TestDetermineStrategy:
    @pytest.mark.parametrize("phase", [Phase.REFINE, Phase.BUILD, Phase.VERIFY, Phase.GATE])
    def test_working_phases_restart(self, phase):
        can_resume, strategy, _ = determine_strategy(RunState(run_id="r", phase=phase))
        assert can_resume
        assert strategy == ResumeStrategy.RESTART_AGENT

    def test_waiting_human(self):
        can_resume, strategy, reason = determine_strategy(
            RunState(run_id="r", phase=Phase.WAITING_HUMAN, pending_consultation_id="crp-1"),
        )
        assert can_resume
        assert strategy == ResumeStrategy.WAIT_HUMAN
        assert "crp-1" in reason

    def test_ready_for_merge_is_manual(self):
        can_resume, strategy, _ = determine_strategy(RunState(run_id="r", phase=Phase.READY_FOR_MERGE))
        assert not can_resume
        assert strategy == ResumeStrategy.MANUAL


class TestDetect:
    @pytest.mark.asyncio
    async def test_excludes_terminal_and_old_runs(self, runs, recovery):
        _make_run(runs, "run-build", Phase.BUILD)
        _make_run(runs, "run-done", Phase.COMPLETED)
        _make_run(runs, "run-failed", Phase.FAILED)
        _make_run(runs, "run-old", Phase.BUILD, age=timedelta(hours=30))

        candidates = await recovery.detect_interrupted_runs()

        assert [c.run_id for c in candidates] == ["run-build"]

    @pytest.mark.asyncio
    async def test_age_ceiling_applies_to_every_phase(self, runs, bus):
        _make_run(runs, "run-wait", Phase.WAITING_HUMAN, age=timedelta(hours=3), pending="crp-1")
        recovery = InterruptRecovery(runs, max_age=timedelta(hours=2), event_bus=bus)
        assert await recovery.detect_interrupted_runs() == []

    @pytest.mark.asyncio
    async def test_candidate_fields(self, runs, recovery):
        _make_run(runs, "run-gate", Phase.GATE, age=timedelta(minutes=90))
        [c] = await recovery.detect_interrupted_runs()
        assert c.phase == Phase.GATE
        assert c.last_worker == WorkerName.GATEKEEPER
        assert c.resume_strategy == ResumeStrategy.RESTART_AGENT
        assert c.can_resume
        assert not c.session_alive
        assert 89 * 60_000 <= c.age_ms <= 91 * 60_000

    @pytest.mark.asyncio
    async def test_ready_for_merge_listed_as_manual(self, runs, recovery):
        _make_run(runs, "run-ready", Phase.READY_FOR_MERGE)
        [c] = await recovery.detect_interrupted_runs()
        assert c.resume_strategy == ResumeStrategy.MANUAL
        assert not c.can_resume

    @pytest.mark.asyncio
    async def test_detect_does_not_mutate(self, runs, recovery):
        store = _make_run(runs, "run-build", Phase.BUILD)
        before = store.state_path.read_text()
        await recovery.detect_interrupted_runs()
        assert store.state_path.read_text() == before

    @pytest.mark.asyncio
    async def test_session_liveness_is_diagnostic_only(self, runs, bus):
        _make_run(runs, "run-build", Phase.BUILD)
        alive = InterruptRecovery(runs, host_factory=lambda r: FakeHost(alive=True), event_bus=bus)
        dead = InterruptRecovery(runs, host_factory=lambda r: FakeHost(alive=False), event_bus=bus)
        [a] = await alive.detect_interrupted_runs()
        [d] = await dead.detect_interrupted_runs()
        assert a.session_alive and not d.session_alive
        assert a.resume_strategy == d.resume_strategy

    @pytest.mark.asyncio
    async def test_emits_scan_events(self, runs, recovery, recorder):
        await recovery.detect_interrupted_runs()
        assert recorder.types("recovery_event") == ["scan_started", "scan_completed"]


class TestPrepareRecovery:
    def test_restart_agent_resets_worker(self, runs, recovery):
        store = _make_run(runs, "run-build", Phase.BUILD)
        result = recovery.prepare_recovery("run-build")
        assert result.success
        assert result.worker == WorkerName.BUILDER
        state = store.load()
        assert state.worker(WorkerName.BUILDER).status == WorkerStatus.PENDING
        assert state.phase == Phase.BUILD
        assert state.history[-1].result == "recovered: builder reset"

    def test_wait_human_does_not_mutate(self, runs, recovery):
        store = _make_run(runs, "run-wait", Phase.WAITING_HUMAN, pending="crp-1")
        before = store.state_path.read_text()
        result = recovery.prepare_recovery("run-wait")
        assert result.success
        assert result.strategy == ResumeStrategy.WAIT_HUMAN
        assert store.state_path.read_text() == before

    def test_manual_fails_without_mutation(self, runs, recovery):
        store = _make_run(runs, "run-ready", Phase.READY_FOR_MERGE)
        before = store.state_path.read_text()
        result = recovery.prepare_recovery("run-ready")
        assert not result.success
        assert result.strategy == ResumeStrategy.MANUAL
        assert store.state_path.read_text() == before

    def test_missing_run(self, recovery):
        result = recovery.prepare_recovery("run-ghost")
        assert not result.success
        assert "not found" in result.error


class TestRecoverResumable:
    @pytest.mark.asyncio
    async def test_only_restart_agent_runs_prepared(self, runs, recovery):
        build = _make_run(runs, "run-build", Phase.BUILD)
        gate = _make_run(runs, "run-gate", Phase.GATE)
        wait = _make_run(runs, "run-wait", Phase.WAITING_HUMAN, pending="crp-1")
        ready = _make_run(runs, "run-ready", Phase.READY_FOR_MERGE)
        untouched = {s.run_id: s.state_path.read_text() for s in (wait, ready)}

        results = await recovery.recover_resumable()

        assert sorted(r.run_id for r in results) == ["run-build", "run-gate"]
        assert all(r.success and r.strategy == ResumeStrategy.RESTART_AGENT for r in results)
        assert build.load().worker(WorkerName.BUILDER).status == WorkerStatus.PENDING
        assert gate.load().worker(WorkerName.GATEKEEPER).status == WorkerStatus.PENDING
        for store in (wait, ready):
            assert store.state_path.read_text() == untouched[store.run_id]

    @pytest.mark.asyncio
    async def test_uses_given_candidates(self, runs, recovery):
        _make_run(runs, "run-build", Phase.BUILD)
        other = _make_run(runs, "run-verify", Phase.VERIFY)
        candidates = [c for c in await recovery.detect_interrupted_runs() if c.run_id == "run-build"]

        results = await recovery.recover_resumable(candidates)

        assert [r.run_id for r in results] == ["run-build"]
        assert other.load().worker(WorkerName.VERIFIER).status == WorkerStatus.RUNNING

    def test_auto_recover_flag(self, runs):
        assert InterruptRecovery(runs).auto_recover is False
        assert InterruptRecovery(runs, auto_recover=True).auto_recover is True


class TestMarkAsFailed:
    def test_forces_failed(self, runs, recovery, recorder):
        store = _make_run(runs, "run-ready", Phase.READY_FOR_MERGE)
        recovery.mark_as_failed("run-ready", "operator gave up")
        state = store.load()
        assert state.phase == Phase.FAILED
        assert state.errors[-1] == "Recovery failed: operator gave up"
        assert "run_marked_failed" in recorder.types()

    def test_missing_run_raises(self, recovery):
        with pytest.raises(RunNotFoundError):
            recovery.mark_as_failed("run-ghost", "x")


class TestFormatting:
    def test_empty_summary(self):
        assert format_summary([]) == "No interrupted runs detected."

    @pytest.mark.asyncio
    async def test_summary_lists_runs(self, runs, recovery):
        _make_run(runs, "run-build", Phase.BUILD)
        text = format_summary(await recovery.detect_interrupted_runs())
        assert "Found 1 interrupted run(s)" in text
        assert "run-build" in text
        assert "restart_agent" in text

    def test_format_age(self):
        assert format_age(timedelta(minutes=5)) == "5m"
        assert format_age(timedelta(hours=2, minutes=7)) == "2h07m"
