"""Worker start/stop, keeping the state slot and the process host in step."""

from __future__ import annotations

import logging
from pathlib import Path

from orchestral.events import LIFECYCLE_EVENT, EventBus
from orchestral.runs import DONE_FLAG, ERROR_FLAG, WORKER_SIGNALS
from orchestral.schemas import WorkerName, WorkerStatus
from orchestral.state import RunStateStore
from orchestral.tmux import ProcessHost

logger = logging.getLogger(__name__)


class WorkerLifecycle:
    """Starts and stops the workers of one run."""

    def __init__(
        self,
        host: ProcessHost,
        store: RunStateStore,
        event_bus: EventBus | None = None,
    ) -> None:
        self.host = host
        self.store = store
        self.event_bus = event_bus

    @property
    def run_dir(self) -> Path:
        return self.store.run_dir

    def prompt_path(self, worker: WorkerName) -> Path:
        return self.run_dir / "prompts" / f"{worker}.md"

    async def start_worker(
        self,
        worker: WorkerName,
        prompt_path: Path | None = None,
        keep: tuple[str, ...] = (),
    ) -> None:
        """Mark the slot running, clear stale signals, launch the process.

        Every signal file the worker can leave (done.flag, error.flag, and the
        verdict or test files) is removed unless named in `keep`, so a
        restarted watcher cannot replay a previous attempt's output.
        """
        worker_dir = self.run_dir / worker
        worker_dir.mkdir(parents=True, exist_ok=True)
        for name in (DONE_FLAG, ERROR_FLAG, *WORKER_SIGNALS.get(worker, ())):
            if name not in keep:
                (worker_dir / name).unlink(missing_ok=True)

        state = self.store.update_worker_status(worker, WorkerStatus.RUNNING)
        self.store.update_last_event("worker_started", worker)
        await self.host.start_worker(worker, prompt_path or self.prompt_path(worker))
        self._emit("worker_started", state.run_id, worker)

    async def stop_worker(self, worker: WorkerName, status: WorkerStatus = WorkerStatus.PENDING) -> None:
        await self.host.stop_worker(worker)
        state = self.store.update_worker_status(worker, status)
        self._emit("worker_stopped", state.run_id, worker, status=status)

    async def wait_for_tests(self, worker: WorkerName) -> None:
        """Stop a worker that handed its tests to the runner."""
        await self.stop_worker(worker, WorkerStatus.WAITING_TEST_EXECUTION)
        self.store.update_last_event("tests_ready", worker)

    def complete_worker(self, worker: WorkerName) -> None:
        state = self.store.update_worker_status(worker, WorkerStatus.COMPLETED)
        self.store.update_last_event("worker_completed", worker)
        self._emit("worker_completed", state.run_id, worker)

    def fail_worker(self, worker: WorkerName, error: str) -> None:
        state = self.store.update_worker_status(worker, WorkerStatus.FAILED, error=error)
        self._emit("worker_failed", state.run_id, worker, error=error)

    def _emit(self, type: str, run_id: str, worker: WorkerName, **data) -> None:
        if self.event_bus:
            self.event_bus.emit(LIFECYCLE_EVENT, type, run_id, worker=worker, **data)
