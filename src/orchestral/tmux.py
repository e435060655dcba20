"""tmux process host: one session per run, one pane per worker.

Session layout (window "main"):
  pane 0: refiner   pane 1: builder   pane 2: verifier   pane 3: gatekeeper

Workers are external processes; the host only starts them, interrupts
them and reports whether a pane still has something running.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
from pathlib import Path
from typing import Protocol

from orchestral.config import DEFAULT_WORKER_COMMAND
from orchestral.schemas import WorkerName

logger = logging.getLogger(__name__)

WINDOW = "main"
SHELLS = {"bash", "zsh", "sh", "fish", "dash"}

PANES: dict[WorkerName, int] = {
    WorkerName.REFINER: 0,
    WorkerName.BUILDER: 1,
    WorkerName.VERIFIER: 2,
    WorkerName.GATEKEEPER: 3,
}


class ProcessHost(Protocol):
    """What the orchestrator needs from whatever hosts worker processes."""

    async def session_exists(self) -> bool: ...

    async def start_worker(self, worker: WorkerName, prompt_path: Path) -> None: ...

    async def stop_worker(self, worker: WorkerName) -> None: ...

    async def is_worker_active(self, worker: WorkerName) -> bool: ...


class TmuxError(RuntimeError):
    pass


def session_name(prefix: str, run_id: str) -> str:
    return f"{prefix}-{run_id}"


def tmux_available() -> bool:
    return shutil.which("tmux") is not None


class TmuxHost:
    """Drives one tmux session for one run."""

    def __init__(
        self,
        run_id: str,
        project_dir: str | Path,
        prefix: str = "orchestral",
        worker_command: str = DEFAULT_WORKER_COMMAND,
    ) -> None:
        self.run_id = run_id
        self.project_dir = Path(project_dir)
        self.session = session_name(prefix, run_id)
        self.worker_command = worker_command

    def _target(self, worker: WorkerName) -> str:
        return f"{self.session}:{WINDOW}.{PANES[worker]}"

    async def _tmux(self, *args: str, check: bool = True) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            "tmux", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if check and proc.returncode != 0:
            raise TmuxError(
                f"tmux {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}"
            )
        return proc.returncode, stdout.decode(errors="replace")

    async def session_exists(self) -> bool:
        if not tmux_available():
            return False
        code, _ = await self._tmux("has-session", "-t", self.session, check=False)
        return code == 0

    async def create_session(self) -> None:
        """Create the session with four panes. No-op if it already exists."""
        if await self.session_exists():
            return
        cwd = str(self.project_dir)
        await self._tmux("new-session", "-d", "-s", self.session, "-n", WINDOW, "-c", cwd)
        base = f"{self.session}:{WINDOW}"
        for _ in range(len(PANES) - 1):
            await self._tmux("split-window", "-h", "-t", base, "-c", cwd)
            await self._tmux("select-layout", "-t", base, "even-horizontal")
        await self._tmux("set-option", "-t", self.session, "pane-border-status", "top")
        for worker, index in PANES.items():
            await self._tmux("select-pane", "-t", f"{base}.{index}", "-T", str(worker))
        logger.info("Created tmux session %s", self.session)

    async def start_worker(self, worker: WorkerName, prompt_path: Path) -> None:
        await self.create_session()
        command = self.worker_command.format(prompt=shlex.quote(str(prompt_path)))
        target = self._target(worker)
        await self._tmux("send-keys", "-t", target, "-l", command)
        await self._tmux("send-keys", "-t", target, "Enter")
        logger.info("Started %s in %s", worker, target)

    async def stop_worker(self, worker: WorkerName) -> None:
        """Interrupt the worker's pane (Ctrl-C)."""
        if not await self.session_exists():
            return
        await self._tmux("send-keys", "-t", self._target(worker), "C-c", check=False)
        logger.info("Stopped %s", worker)

    async def is_worker_active(self, worker: WorkerName) -> bool:
        """True if the pane is running something other than a shell."""
        if not await self.session_exists():
            return False
        code, out = await self._tmux(
            "display-message", "-p", "-t", self._target(worker),
            "#{pane_current_command}", check=False,
        )
        return code == 0 and out.strip() not in SHELLS and out.strip() != ""

    async def kill_session(self) -> None:
        if await self.session_exists():
            await self._tmux("kill-session", "-t", self.session, check=False)
            logger.info("Killed tmux session %s", self.session)
