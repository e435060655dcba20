"""Tests for running the verifier's test command."""

from __future__ import annotations

import json

import pytest

from orchestral import schemas
from orchestral.testrunner import parse_test_counts, run_test_command, save_test_output


class TestParseTestCounts:
    def test_jest_json(self):
        stdout = "noise\n" + json.dumps({
            "numTotalTests": 5, "numPassedTests": 3, "numFailedTests": 1, "numPendingTests": 1,
        })
        counts = parse_test_counts(stdout)
        assert (counts.total, counts.passed, counts.failed, counts.skipped) == (5, 3, 1, 1)

    def test_pytest_summary(self):
        counts = parse_test_counts("===== 4 passed, 2 failed, 1 skipped in 0.12s =====")
        assert (counts.total, counts.passed, counts.failed, counts.skipped) == (7, 4, 2, 1)

    def test_mocha_summary(self):
        counts = parse_test_counts("  12 passing (40ms)\n")
        assert counts.passed == 12
        assert counts.failed == 0

    def test_nothing_recognisable(self):
        assert parse_test_counts("compiled ok") is None


class TestRunTestCommand:
    @pytest.mark.asyncio
    async def test_captures_output(self, tmp_path):
        config = schemas.TestConfig(test_command="echo '3 passed'; echo oops >&2")
        output = await run_test_command(config, tmp_path)
        assert output.exit_code == 0
        assert "3 passed" in output.stdout
        assert "oops" in output.stderr
        assert output.test_results.passed == 3
        assert not output.timed_out
        assert output.executed_at

    @pytest.mark.asyncio
    async def test_failing_command_is_not_an_error(self, tmp_path):
        output = await run_test_command(schemas.TestConfig(test_command="exit 2"), tmp_path)
        assert output.exit_code == 2
        assert output.test_results is None

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, tmp_path):
        output = await run_test_command(schemas.TestConfig(test_command="pwd"), tmp_path)
        assert output.stdout.strip() == str(tmp_path)

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, tmp_path):
        config = schemas.TestConfig(test_command="sleep 5", timeout_ms=100)
        output = await run_test_command(config, tmp_path)
        assert output.timed_out
        assert "timed out after 100ms" in output.stderr
        assert output.duration_ms < 5000


class TestSaveTestOutput:
    def test_writes_log_and_output(self, tmp_path):
        config = schemas.TestConfig(test_command="npm test")
        output = schemas.TestOutput(
            exit_code=1, stdout="1 failed", stderr="trace", duration_ms=12,
            executed_at="2024-01-01T00:00:00",
        )
        path = save_test_output(tmp_path / "verifier", config, output)

        assert path == tmp_path / "verifier" / "test-output.json"
        assert schemas.TestOutput.model_validate_json(path.read_text()) == output
        log = (tmp_path / "verifier" / "test-log.txt").read_text()
        assert "Command: npm test" in log
        assert "Exit Code: 1" in log
        assert "trace" in log
        assert not (tmp_path / "verifier" / "test-output.tmp").exists()
