"""Test execution for the verifier's two-pass flow.

The verifier writes its tests and a test-config.json, creates
tests-ready.flag and stops. The orchestrator runs the test command here,
outside any worker, and writes test-output.json plus test-log.txt into
verifier/. The watcher sees test-output.json and the verifier is started
again with the results in its prompt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
import time
from datetime import datetime
from pathlib import Path

from orchestral.runs import TEST_LOG_FILE, TEST_OUTPUT_FILE
from orchestral.schemas import TestConfig, TestCounts, TestOutput

logger = logging.getLogger(__name__)


async def run_test_command(config: TestConfig, cwd: Path) -> TestOutput:
    """Run config.test_command in a shell under cwd. Never raises for test failures.

    A command that outlives config.timeout_ms has its process group killed
    and comes back with timed_out=True.
    """
    executed_at = datetime.now().isoformat()
    start = time.monotonic()
    logger.info("Running tests: %s", config.test_command)

    try:
        proc = await asyncio.create_subprocess_shell(
            config.test_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            start_new_session=True,
        )
    except OSError as e:
        return TestOutput(exit_code=127, stderr=str(e), executed_at=executed_at)

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(), timeout=config.timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        _kill_group(proc.pid)
        await proc.wait()
        logger.warning("Tests timed out after %dms", config.timeout_ms)
        return TestOutput(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stderr=f"Test execution timed out after {config.timeout_ms}ms",
            duration_ms=_elapsed_ms(start),
            executed_at=executed_at,
            timed_out=True,
        )

    stdout_text = stdout.decode(errors="replace")
    stderr_text = stderr.decode(errors="replace")
    return TestOutput(
        exit_code=proc.returncode,
        stdout=stdout_text,
        stderr=stderr_text,
        duration_ms=_elapsed_ms(start),
        executed_at=executed_at,
        test_results=parse_test_counts(stdout_text),
    )


def parse_test_counts(stdout: str) -> TestCounts | None:
    """Pull pass/fail/skip counts out of runner output, or None.

    Understands jest/vitest JSON reporters and plain "N passed, M failed"
    summaries (pytest, mocha and friends).
    """
    match = re.search(r"\{[\s\S]*\"numTotalTests\"[\s\S]*\}", stdout)
    if match:
        try:
            data = json.loads(match.group(0))
        except ValueError:
            data = None
        if isinstance(data, dict):
            return TestCounts(
                total=data.get("numTotalTests", 0),
                passed=data.get("numPassedTests", 0),
                failed=data.get("numFailedTests", 0),
                skipped=data.get("numPendingTests", data.get("numSkippedTests", 0)),
            )

    passed = re.search(r"(\d+)\s*(?:tests?\s+)?pass(?:ed|ing)?", stdout, re.IGNORECASE)
    failed = re.search(r"(\d+)\s*(?:tests?\s+)?fail(?:ed|ing|ures?)?", stdout, re.IGNORECASE)
    skipped = re.search(r"(\d+)\s*(?:tests?\s+)?skip(?:ped)?", stdout, re.IGNORECASE)
    if not (passed or failed):
        return None
    counts = TestCounts(
        passed=int(passed.group(1)) if passed else 0,
        failed=int(failed.group(1)) if failed else 0,
        skipped=int(skipped.group(1)) if skipped else 0,
    )
    counts.total = counts.passed + counts.failed + counts.skipped
    return counts


def save_test_output(output_dir: Path, config: TestConfig, output: TestOutput) -> Path:
    """Write test-log.txt, then test-output.json (the file the watcher waits for)."""
    output_dir.mkdir(parents=True, exist_ok=True)
    log = "\n".join([
        "=== Test Execution Log ===",
        f"Command: {config.test_command}",
        f"Started: {output.executed_at}",
        f"Duration: {output.duration_ms}ms",
        f"Exit Code: {output.exit_code}",
        "",
        "=== STDOUT ===",
        output.stdout,
        "",
        "=== STDERR ===",
        output.stderr,
    ])
    (output_dir / TEST_LOG_FILE).write_text(log)

    path = output_dir / TEST_OUTPUT_FILE
    tmp = path.with_suffix(".tmp")
    tmp.write_text(output.model_dump_json(indent=2))
    os.replace(tmp, path)
    return path


def _kill_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
