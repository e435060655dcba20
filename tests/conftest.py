"""Shared fixtures: a project with one run, and a process host that records calls."""

from __future__ import annotations

from pathlib import Path

import pytest

from orchestral.events import EventBus
from orchestral.runs import RunManager
from orchestral.schemas import WorkerName


class FakeHost:
    """ProcessHost stand-in. No tmux; remembers what it was asked to do."""

    def __init__(self, alive: bool = True) -> None:
        self.alive = alive
        self.started: list[WorkerName] = []
        self.stopped: list[WorkerName] = []
        self.fail_starts = 0
        self.start_error: Exception = ChildProcessError("pane died")

    async def session_exists(self) -> bool:
        return self.alive

    async def start_worker(self, worker: WorkerName, prompt_path: Path) -> None:
        if self.fail_starts > 0:
            self.fail_starts -= 1
            raise self.start_error
        self.started.append(worker)

    async def stop_worker(self, worker: WorkerName) -> None:
        self.stopped.append(worker)

    async def is_worker_active(self, worker: WorkerName) -> bool:
        return self.alive and worker in self.started


class Recorder:
    """Collects every event on a bus."""

    def __init__(self, bus: EventBus) -> None:
        self.events = []
        bus.subscribe("*", self.events.append)

    def types(self, channel: str | None = None) -> list[str]:
        return [e.type for e in self.events if channel is None or e.channel == channel]


@pytest.fixture
def runs(tmp_path):
    manager = RunManager(tmp_path / "proj")
    manager.init()
    return manager


@pytest.fixture
def run_id(runs):
    return runs.create_run("# Briefing\n\nAdd a health endpoint.\n", max_iterations=3, run_id="run-test")


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return Recorder(bus)
