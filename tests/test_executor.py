"""Tests for ProcessExecutor - shell command execution with buffer modes and failure policy.

Real /bin/sh commands are used throughout.
"""

from __future__ import annotations

import os
import time

import pytest

from scriptkit.executor import (
    OUTPUT_MARKER,
    TIMEOUT_EXIT_CODE,
    BufferMode,
    ExecutionPolicy,
    ExecutionResult,
    Outcome,
    ProcessExecutor,
    normalize_exit_code,
)
from scriptkit.locks import LockManager

ALL_MODES = [BufferMode.BUFFERED, BufferMode.UNBUFFERED, BufferMode.FLOW]


@pytest.fixture
def locks(sink) -> LockManager:
    manager = LockManager(sink, requester="tester")
    yield manager
    manager.release_all(quiet=True)


@pytest.fixture
def executor(sink, locks) -> ProcessExecutor:
    return ProcessExecutor(sink, locks)


class TestBufferModes:
    @pytest.mark.parametrize("mode", ALL_MODES)
    def test_exit_code_matches_command(self, executor, mode) -> None:
        result = executor.run("exit 3", buffer_mode=mode, fail_on_error=False)
        assert result.exit_code == 3
        assert result.outcome is Outcome.FAILED

    def test_buffered_returns_full_output(self, executor, out, err) -> None:
        result = executor.run("echo hello; exit 5", buffer_mode=BufferMode.BUFFERED, fail_on_error=False)
        assert result.as_tuple() == (5, "hello\n")
        assert "failed with non-zero exit code (5)" in err.getvalue()
        assert OUTPUT_MARKER not in out.getvalue()

    def test_buffered_logs_captured_text_once_when_verbose(self, executor, out) -> None:
        executor.run("printf 'a\\nb\\n'", buffer_mode=BufferMode.BUFFERED)
        lines = out.getvalue().splitlines()
        i = lines.index("[INF] Command 'printf 'a\\nb\\n'' completed with exit code 0.  Command output:")
        assert lines[i + 1:i + 3] == ["[INF] a", "[INF] b"]

    def test_buffered_merges_stderr(self, executor) -> None:
        result = executor.run("echo out; echo err 1>&2", buffer_mode="buffered")
        assert result.output.splitlines() == ["out", "err"]

    def test_unbuffered_streams_and_returns_nothing(self, executor, out) -> None:
        result = executor.run("echo one; echo two", buffer_mode=BufferMode.UNBUFFERED)
        assert result.as_tuple() == (0, "")
        assert f"[INF] {OUTPUT_MARKER}one" in out.getvalue()
        assert f"[INF] {OUTPUT_MARKER}two" in out.getvalue()

    def test_flow_streams_and_returns_everything(self, executor, out) -> None:
        result = executor.run("echo one; echo two 1>&2", buffer_mode=BufferMode.FLOW)
        assert result.output == "one\ntwo\n"

        lines = out.getvalue().splitlines()
        streamed = [l for l in lines if OUTPUT_MARKER in l]
        assert streamed == [f"[INF] {OUTPUT_MARKER}one", f"[INF] {OUTPUT_MARKER}two"]
        done = lines.index("[INF] Command 'echo one; echo two 1>&2' completed with exit code 0.")
        assert all(lines.index(l) < done for l in streamed)

    def test_flow_is_the_default(self, executor) -> None:
        assert executor.run("echo x").output == "x\n"

    def test_blank_output_lines_still_logged(self, executor, out) -> None:
        executor.run("echo; echo z", verbose=False)
        assert out.getvalue().splitlines() == [f"[INF] {OUTPUT_MARKER}", f"[INF] {OUTPUT_MARKER}z"]


class TestDefaults:
    def test_exit_zero_default_policy(self, executor, err, locks) -> None:
        result = executor.run("exit 0")
        assert result.as_tuple() == (0, "")
        assert result.ok
        assert result.outcome is Outcome.SUCCESS
        assert result.lock_released is None
        assert err.getvalue() == ""

    def test_verbose_logs_command_and_cwd(self, sink, out, tmp_path) -> None:
        executor = ProcessExecutor(sink, cwd=str(tmp_path))
        executor.run("true")
        lines = out.getvalue().splitlines()
        assert lines[0] == "[INF] Executing command 'true'."
        assert lines[1] == f"[INF]     CWD: '{tmp_path}'"
        assert lines[-1] == "[INF] Command 'true' completed with exit code 0."

    def test_quiet_run_logs_nothing(self, executor, out, err) -> None:
        executor.run("true", verbose=False)
        assert out.getvalue() == ""
        assert err.getvalue() == ""

    def test_failure_is_logged_even_when_quiet(self, executor, err) -> None:
        executor.run("exit 7", verbose=False, fail_on_error=False)
        assert err.getvalue() == "[ERR] Command 'exit 7' failed with non-zero exit code (7)\n"

    def test_runs_in_configured_cwd(self, sink, tmp_path) -> None:
        executor = ProcessExecutor(sink, cwd=str(tmp_path))
        result = executor.run("pwd -P", verbose=False)
        assert os.path.realpath(result.output.strip()) == os.path.realpath(tmp_path)

    def test_shell_syntax_is_honoured(self, executor) -> None:
        result = executor.run("printf 'b\\na\\n' | sort | tr a-z A-Z", verbose=False)
        assert result.output == "A\nB\n"

    def test_percent_in_output_is_literal(self, executor, out) -> None:
        executor.run("echo '50% %s'", verbose=False)
        assert out.getvalue() == f"[INF] {OUTPUT_MARKER}50% %s\n"


class TestExitCodes:
    @pytest.mark.parametrize("raw, expected", [(0, 0), (1, 1), (255, 255), (-15, 143), (-9, 137), (None, 127)])
    def test_normalize_exit_code(self, raw, expected) -> None:
        assert normalize_exit_code(raw) == expected

    @pytest.mark.parametrize("mode", ALL_MODES)
    def test_signal_death_reported_shell_style(self, executor, mode) -> None:
        result = executor.run("kill -TERM $$", buffer_mode=mode, fail_on_error=False, verbose=False)
        assert result.exit_code == 143

    def test_launch_failure_is_127(self, sink, err, tmp_path) -> None:
        executor = ProcessExecutor(sink, cwd=str(tmp_path / "does-not-exist"))
        result = executor.run("true", fail_on_error=False)
        assert result.exit_code == 127
        assert "Couldn't launch command 'true'" in err.getvalue()

    def test_missing_program_is_127(self, executor) -> None:
        result = executor.run("definitely-not-a-real-program-xyz", fail_on_error=False, verbose=False)
        assert result.exit_code == 127


class TestTimeout:
    @pytest.mark.parametrize("mode", ALL_MODES)
    def test_timeout_kills_command(self, sink, mode) -> None:
        executor = ProcessExecutor(sink, kill_grace=1.0)
        start = time.monotonic()
        result = executor.run("echo started; sleep 10", buffer_mode=mode, timeout=0.5,
                              fail_on_error=False, verbose=False)
        assert time.monotonic() - start < 8
        assert result.timed_out
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert not result.ok

    def test_timeout_keeps_partial_output(self, sink, err) -> None:
        executor = ProcessExecutor(sink, kill_grace=1.0)
        result = executor.run("echo started; sleep 10", buffer_mode="buffered", timeout=0.5,
                              fail_on_error=False, verbose=False)
        assert result.output == "started\n"
        assert "timed out after 0.5s" in err.getvalue()

    def test_policy_timeout_applies(self, sink) -> None:
        executor = ProcessExecutor(sink, policy=ExecutionPolicy(timeout=0.3, fail_on_error=False),
                                   kill_grace=1.0)
        assert executor.run("sleep 10", verbose=False).timed_out

    def test_fast_command_not_affected(self, executor) -> None:
        result = executor.run("echo quick", timeout=5)
        assert not result.timed_out
        assert result.output == "quick\n"

    @pytest.mark.parametrize("mode", [BufferMode.UNBUFFERED, BufferMode.FLOW])
    def test_timer_firing_after_normal_exit_is_not_a_timeout(self, executor, monkeypatch, mode) -> None:
        class LateTimer:
            """Fires at the last moment: when it is being cancelled."""

            def __init__(self, interval, function):
                self.function = function
                self.daemon = False

            def start(self) -> None:
                pass

            def cancel(self) -> None:
                self.function()

        monkeypatch.setattr("scriptkit.executor.threading.Timer", LateTimer)

        result = executor.run("echo done", buffer_mode=mode, timeout=5, fail_on_error=False)

        assert not result.timed_out
        assert result.exit_code == 0
        assert result.ok


class TestFailurePolicy:
    def test_auto_release_without_fail_fast(self, executor, locks, tmp_path) -> None:
        path = str(tmp_path / "job.lock")
        locks.acquire(path)

        result = executor.run("exit 2", fail_on_error=False)

        assert result.exit_code == 2
        assert result.outcome is Outcome.FAILED
        assert result.lock_released is True
        assert not os.path.exists(path)
        assert locks.last is None

    def test_auto_release_then_terminate(self, executor, locks, tmp_path) -> None:
        path = str(tmp_path / "job.lock")
        locks.acquire(path)

        with pytest.raises(SystemExit) as exc:
            executor.execute("exit 2")

        assert exc.value.code == 2
        assert not os.path.exists(path)

    def test_execute_logs_before_exiting(self, executor, err) -> None:
        with pytest.raises(SystemExit):
            executor.execute("exit 9", verbose=False)
        assert err.getvalue().splitlines() == [
            "[ERR] Command 'exit 9' failed with non-zero exit code (9)",
            "[ERR] Exiting from command execution errors.",
        ]

    def test_run_never_exits_on_fatal(self, executor) -> None:
        result = executor.run("exit 4")
        assert result.outcome is Outcome.FATAL
        assert result.exit_code == 4

    def test_execute_returns_recoverable_failures(self, executor) -> None:
        result = executor.execute("exit 4", fail_on_error=False)
        assert isinstance(result, ExecutionResult)
        assert result.outcome is Outcome.FAILED

    def test_execute_returns_success(self, executor) -> None:
        assert executor.execute("echo ok").output == "ok\n"

    def test_lock_kept_when_release_disabled(self, executor, locks, tmp_path) -> None:
        path = str(tmp_path / "job.lock")
        handle = locks.acquire(path)
        result = executor.run("exit 1", fail_on_error=False, release_lock_on_error=False)
        assert result.lock_released is None
        assert locks.last is handle
        assert os.path.exists(path)

    def test_only_most_recent_lock_released(self, executor, locks, tmp_path) -> None:
        older = locks.acquire(str(tmp_path / "older.lock"))
        newer = locks.acquire(str(tmp_path / "newer.lock"))
        executor.run("exit 1", fail_on_error=False)
        assert newer.released
        assert not older.released
        assert locks.last is older

    def test_no_lock_held_is_not_an_error(self, executor, err) -> None:
        result = executor.run("exit 1", fail_on_error=False, verbose=False)
        assert result.lock_released is None
        assert err.getvalue().count("[ERR]") == 1

    def test_executor_without_lock_manager(self, sink) -> None:
        result = ProcessExecutor(sink).run("exit 1", fail_on_error=False)
        assert result.lock_released is None


class TestExecutionPolicy:
    def test_defaults(self) -> None:
        p = ExecutionPolicy()
        assert p.fail_on_error and p.verbose and p.release_lock_on_error
        assert p.buffer_mode is BufferMode.FLOW
        assert p.timeout is None

    def test_resolve_applies_only_given_overrides(self) -> None:
        base = ExecutionPolicy(verbose=False)
        p = base.resolve(fail_on_error=False, verbose=None, buffer_mode="unbuffered", timeout=None)
        assert p.fail_on_error is False
        assert p.verbose is False
        assert p.buffer_mode is BufferMode.UNBUFFERED
        assert base.fail_on_error is True

    def test_resolve_without_overrides_returns_same_object(self) -> None:
        p = ExecutionPolicy()
        assert p.resolve(verbose=None) is p

    def test_non_positive_timeout_means_untimed(self) -> None:
        assert ExecutionPolicy(timeout=5).resolve(timeout=0).timeout is None

    @pytest.mark.parametrize("raw, mode", [
        ("buffered", BufferMode.BUFFERED),
        ("FLOW", BufferMode.FLOW),
        (" Unbuffered ", BufferMode.UNBUFFERED),
        ("TRUE", BufferMode.BUFFERED),
        ("FALSE", BufferMode.UNBUFFERED),
        (BufferMode.FLOW, BufferMode.FLOW),
    ])
    def test_buffer_mode_parse(self, raw, mode) -> None:
        assert BufferMode.parse(raw) is mode

    def test_buffer_mode_parse_rejects_unknown(self) -> None:
        with pytest.raises(ValueError):
            BufferMode.parse("sometimes")

    def test_from_settings(self) -> None:
        settings = {"exec": {
            "fail_on_error": "FALSE",
            "verbose": False,
            "buffer_mode": "buffered",
            "release_lock_on_error": "TRUE",
            "timeout_seconds": 30,
        }}
        p = ExecutionPolicy.from_settings(settings)
        assert p == ExecutionPolicy(fail_on_error=False, verbose=False,
                                    buffer_mode=BufferMode.BUFFERED,
                                    release_lock_on_error=True, timeout=30.0)

    def test_from_settings_defaults(self) -> None:
        assert ExecutionPolicy.from_settings(None) == ExecutionPolicy()
        assert ExecutionPolicy.from_settings({"exec": {"timeout_seconds": 0}}).timeout is None
