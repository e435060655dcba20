"""Poll-and-dispatch daemon for one run.

  1. On start, write .orchestral/daemon.pid and clear any stale shutdown sentinel
  2. Start the current phase's worker if its slot is pending (new run or recovered run)
  3. Poll the run directory, dispatch events, sleep poll_interval, repeat
  4. Exit when the run reaches ready_for_merge, completed or failed, or when
     `orchestral stop` drops the .orchestral/shutdown sentinel

A run in waiting_human keeps the daemon polling; the pause has no timeout.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from orchestral.orchestrator import Orchestrator
from orchestral.phases import TERMINAL_PHASES
from orchestral.runs import ORCHESTRAL_DIR
from orchestral.schemas import RunState

logger = logging.getLogger(__name__)

PID_FILE = "daemon.pid"
SHUTDOWN_FILE = "shutdown"


class Daemon:
    """Runs one orchestrator until its run stops needing attention."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        poll_interval: float = 1.0,
        kill_session_on_exit: bool = False,
    ) -> None:
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.kill_session_on_exit = kill_session_on_exit
        orchestral_dir = orchestrator.runs.orchestral_dir
        self.pid_path = orchestral_dir / PID_FILE
        self._shutdown_path = orchestral_dir / SHUTDOWN_FILE
        self._shutdown_requested = False

    # ── Public API ──────────────────────────────────────────────────

    async def run(self) -> RunState:
        """Run the dispatch loop. Returns final state."""
        self._write_pid()
        self._clear_shutdown()
        try:
            await self.orchestrator.ensure_worker_running()
            return await self._dispatch_loop()
        finally:
            self._cleanup()
            if self.kill_session_on_exit:
                kill = getattr(self.orchestrator.host, "kill_session", None)
                if kill is not None:
                    await kill()

    def request_shutdown(self) -> None:
        self._shutdown_requested = True

    # ── Shutdown sentinel ───────────────────────────────────────────

    def _clear_shutdown(self) -> None:
        if self._shutdown_path.exists():
            self._shutdown_path.unlink()

    def _check_shutdown(self) -> bool:
        """Check if a shutdown has been requested (sentinel file or flag)."""
        if self._shutdown_requested:
            return True
        if self._shutdown_path.exists():
            self._shutdown_requested = True
            self._shutdown_path.unlink(missing_ok=True)
            return True
        return False

    # ── Dispatch Loop ───────────────────────────────────────────────

    async def _dispatch_loop(self) -> RunState:
        run_id = self.orchestrator.run_id
        while True:
            state = self.orchestrator.state()

            if self._check_shutdown():
                logger.info("[%s] shutdown requested, exiting in phase %s", run_id, state.phase)
                self.orchestrator.store.update_last_event("daemon_shutdown")
                return self.orchestrator.state()

            if state.phase in TERMINAL_PHASES:
                logger.info("[%s] run reached %s", run_id, state.phase)
                return state

            dispatched = await self.orchestrator.poll_once()
            if dispatched:
                continue
            await asyncio.sleep(self.poll_interval)

    # ── PID file ────────────────────────────────────────────────────

    def _write_pid(self) -> None:
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(os.getpid()))

    def _cleanup(self) -> None:
        self.pid_path.unlink(missing_ok=True)


def request_shutdown(project_dir: str | Path) -> bool:
    """Drop the shutdown sentinel. Returns False if no daemon appears to be running."""
    orchestral_dir = Path(project_dir).resolve() / ORCHESTRAL_DIR
    if not (orchestral_dir / PID_FILE).exists():
        return False
    (orchestral_dir / SHUTDOWN_FILE).write_text("shutdown\n")
    return True


def check_daemon_health(project_dir: str | Path) -> dict:
    """Check if the daemon is alive for a project.

    Returns dict with: alive (bool), pid (int|None).
    """
    pid_path = Path(project_dir).resolve() / ORCHESTRAL_DIR / PID_FILE
    result = {"alive": False, "pid": None}

    if pid_path.exists():
        try:
            pid = int(pid_path.read_text().strip())
            result["pid"] = pid
            os.kill(pid, 0)  # Signal 0 = existence check
            result["alive"] = True
        except (ValueError, ProcessLookupError, PermissionError):
            result["alive"] = False

    return result
