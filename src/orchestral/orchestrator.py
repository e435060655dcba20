"""Wires one run's components together and routes watcher events to them.

Every handler is idempotent: an event for a worker that is not the
current phase's worker, a request that already has a decision, or a
verdict outside the gate phase is logged and dropped. That is what makes
at-least-once delivery from the watcher safe.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from orchestral.config import (
    GlobalConfig,
    ProjectConfig,
    resolve_auto_retry,
    resolve_max_iterations,
    resolve_session_prefix,
    resolve_settle_delay,
    resolve_slack_webhook,
    resolve_test_command,
    resolve_test_timeout_ms,
    resolve_worker_command,
)
from orchestral.coordinator import AgentCoordinator
from orchestral.events import COORDINATOR_EVENT, EventBus, EventLog
from orchestral.notify import SlackNotifier
from orchestral.phases import (
    WORKING_PHASES,
    PhaseTransitionManager,
    UnknownVerdictError,
    phase_for_worker,
    worker_for_phase,
)
from orchestral.retry import ErrorClassification, RetryConfig, RetryManager
from orchestral.runs import TEST_OUTPUT_FILE, RunManager
from orchestral.schemas import Phase, RunState, TestConfig, WorkerName, WorkerStatus
from orchestral.state import RunStateStore
from orchestral.testrunner import run_test_command, save_test_output
from orchestral.tmux import ProcessHost, TmuxHost
from orchestral.verdicts import VerdictHandler
from orchestral.watcher import RunWatcher, WatchEvent
from orchestral.workers import WorkerLifecycle

logger = logging.getLogger(__name__)


class Orchestrator:
    """Drives one run from watcher events."""

    def __init__(
        self,
        runs: RunManager,
        run_id: str,
        host: ProcessHost,
        event_bus: EventBus | None = None,
        retry_config: RetryConfig | None = None,
        auto_retry: bool = True,
        settle_delay: float = 1.0,
        notifier: SlackNotifier | None = None,
        test_command: str = "",
        test_timeout_ms: int = 600_000,
    ) -> None:
        self.runs = runs
        self.run_id = run_id
        self.host = host
        self.test_command = test_command
        self.test_timeout_ms = test_timeout_ms
        self.event_bus = event_bus or EventBus()
        self.event_log = EventLog(self.event_bus, runs.events_path(run_id))
        self.notifier = notifier or SlackNotifier()

        self.store = RunStateStore(runs.get_run_dir(run_id))
        self.phases = PhaseTransitionManager(self.store, self.event_bus)
        self.lifecycle = WorkerLifecycle(host, self.store, self.event_bus)
        self.retry = RetryManager(retry_config, self.event_bus)
        self.coordinator = AgentCoordinator(
            runs, self.store, self.phases, self.lifecycle,
            retry=self.retry,
            event_bus=self.event_bus,
            settle_delay=settle_delay,
            auto_retry=auto_retry,
        )
        self.verdicts = VerdictHandler(runs, self.phases, self.lifecycle, self.event_bus)
        self.watcher = RunWatcher(runs.get_run_dir(run_id))

    @classmethod
    def from_config(
        cls,
        runs: RunManager,
        run_id: str,
        global_config: GlobalConfig,
        project_config: ProjectConfig,
        host_factory: Callable[[str], ProcessHost] | None = None,
        event_bus: EventBus | None = None,
    ) -> Orchestrator:
        auto_retry = resolve_auto_retry(project_config, global_config)
        if host_factory is not None:
            host = host_factory(run_id)
        else:
            host = TmuxHost(
                run_id, runs.project_dir,
                prefix=resolve_session_prefix(project_config, global_config),
                worker_command=resolve_worker_command(project_config, global_config),
            )
        return cls(
            runs, run_id, host,
            event_bus=event_bus,
            retry_config=RetryConfig.from_auto_retry(auto_retry),
            auto_retry=auto_retry.enabled,
            settle_delay=resolve_settle_delay(project_config, global_config),
            notifier=SlackNotifier(resolve_slack_webhook(project_config, global_config)),
            test_command=resolve_test_command(project_config, global_config),
            test_timeout_ms=resolve_test_timeout_ms(project_config, global_config),
        )

    # ── Run control ─────────────────────────────────────────────────

    def state(self) -> RunState:
        return self.store.require()

    async def ensure_worker_running(self) -> WorkerName | None:
        """Start the current phase's worker if its slot is pending. Returns it if started."""
        state = self.state()
        if state.phase not in WORKING_PHASES:
            return None
        worker = worker_for_phase(state.phase)
        if state.worker(worker).status != WorkerStatus.PENDING:
            return None
        await self.lifecycle.start_worker(worker)
        self.watcher.prune()
        return worker

    async def poll_once(self) -> int:
        """Poll the watcher and dispatch what it found. Returns the event count."""
        events = self.watcher.poll()
        for event in events:
            await self.dispatch(event)
        return len(events)

    async def dispatch(self, event: WatchEvent) -> None:
        before = self.state()

        if event.type in ("refiner_done", "builder_done", "verifier_done"):
            await self._on_worker_done(event.worker, before)
        elif event.type == "tests_ready":
            await self._on_tests_ready(event, before)
        elif event.type == "test_execution_done":
            await self._on_test_output(event, before)
        elif event.type == "gatekeeper_done":
            await self._on_verdict(event, before)
        elif event.type == "crp_created":
            await self._on_consultation(event, before)
        elif event.type == "vcr_created":
            await self.coordinator.handle_decision_created(event.decision, self.run_id)
        elif event.type == "error_flag":
            await self._on_error_flag(event, before)
        else:
            logger.warning("[%s] watcher error: %s", self.run_id, event.error)
            self.event_bus.emit(COORDINATOR_EVENT, "watch_error", self.run_id, error=event.error)

        # Starting a worker deletes its old signal files.
        self.watcher.prune()
        await self._notify_if_changed(before, self.state())

    # ── Handlers ────────────────────────────────────────────────────

    async def _on_worker_done(self, worker: WorkerName, state: RunState) -> None:
        if state.phase != phase_for_worker(worker):
            logger.debug("[%s] ignoring %s done in phase %s", self.run_id, worker, state.phase)
            return
        next_phase = self.phases.get_next_phase(state.phase)
        await self.coordinator.handle_agent_done(worker, self.run_id, next_phase)

    async def _on_tests_ready(self, event: WatchEvent, state: RunState) -> None:
        status = state.worker(WorkerName.VERIFIER).status
        if state.phase != Phase.VERIFY or status not in (
            WorkerStatus.RUNNING, WorkerStatus.WAITING_TEST_EXECUTION,
        ):
            logger.debug("[%s] ignoring tests-ready in phase %s (%s)", self.run_id, state.phase, status)
            return
        if self.runs.verifier_file(self.run_id, TEST_OUTPUT_FILE).exists():
            # Tests already ran for this attempt; test_execution_done takes it from here.
            return

        config = event.test_config
        if config is None and self.test_command:
            config = TestConfig(test_command=self.test_command, timeout_ms=self.test_timeout_ms)
        if config is None:
            await self.coordinator.handle_agent_error(
                WorkerName.VERIFIER, self.run_id, ErrorClassification.VALIDATION,
                "tests-ready.flag without a test-config.json and no test_command configured",
                recoverable=False,
            )
            return

        await self.coordinator.handle_verifier_tests_ready(self.run_id)
        output = await run_test_command(config, self.runs.get_run_dir(self.run_id))
        save_test_output(event.path.parent, config, output)
        logger.info("[%s] tests finished with exit code %d", self.run_id, output.exit_code)

    async def _on_test_output(self, event: WatchEvent, state: RunState) -> None:
        status = state.worker(WorkerName.VERIFIER).status
        if state.phase != Phase.VERIFY or status != WorkerStatus.WAITING_TEST_EXECUTION:
            logger.debug("[%s] ignoring test output in phase %s (%s)", self.run_id, state.phase, status)
            return
        await self.coordinator.handle_test_execution_done(self.run_id, event.test_output)

    async def _on_verdict(self, event: WatchEvent, state: RunState) -> None:
        if state.phase != Phase.GATE:
            logger.debug("[%s] ignoring verdict in phase %s", self.run_id, state.phase)
            return
        self.lifecycle.complete_worker(WorkerName.GATEKEEPER)
        try:
            result = self.verdicts.process_verdict(event.verdict, self.run_id)
        except UnknownVerdictError as e:
            self.store.add_error(str(e))
            self.lifecycle.fail_worker(WorkerName.GATEKEEPER, str(e))
            logger.error("[%s] %s", self.run_id, e)
            return
        await self.verdicts.execute_verdict_result(result, self.run_id)

    async def _on_consultation(self, event: WatchEvent, state: RunState) -> None:
        crp = event.consultation
        if self.runs.get_decision_for(self.run_id, crp.crp_id) is not None:
            return
        if state.is_terminal:
            return
        if state.pending_consultation_id is not None:
            # Already paused; handle_decision_created picks this one up next.
            logger.debug("[%s] %s queued behind %s", self.run_id, crp.crp_id, state.pending_consultation_id)
            return
        await self.coordinator.handle_crp_created(crp, self.run_id)

    async def _on_error_flag(self, event: WatchEvent, state: RunState) -> None:
        flag = event.error_flag
        if state.phase != phase_for_worker(flag.worker):
            logger.debug("[%s] ignoring %s error in phase %s", self.run_id, flag.worker, state.phase)
            return
        event.path.unlink(missing_ok=True)
        self.watcher.forget(event.path)
        await self.coordinator.handle_agent_error(
            flag.worker, self.run_id, flag.classification, flag.message,
            recoverable=flag.recoverable,
        )

    async def _notify_if_changed(self, before: RunState, after: RunState) -> None:
        if before.phase == after.phase or not self.notifier.configured:
            return
        if after.phase == Phase.WAITING_HUMAN:
            crp_id = after.pending_consultation_id or ""
            crp = self.runs.get_consultation(self.run_id, crp_id) if crp_id else None
            await self.notifier.notify_human_needed(
                self.run_id, crp_id, crp.question if crp else "",
            )
        elif after.phase == Phase.READY_FOR_MERGE:
            await self.notifier.notify_ready_for_merge(self.run_id, after.iteration)
        elif after.phase == Phase.FAILED:
            reason = after.errors[-1] if after.errors else "unknown"
            await self.notifier.notify_run_failed(self.run_id, reason)


def start_run(
    project_dir: str | Path,
    briefing: str,
    global_config: GlobalConfig,
    project_config: ProjectConfig,
) -> str:
    """Create a run directory for a briefing. The daemon starts the refiner."""
    runs = RunManager(project_dir)
    runs.init()
    return runs.create_run(
        briefing,
        max_iterations=resolve_max_iterations(project_config, global_config),
    )
