#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
scriptkit/executor.py
=====================

Run shell commands for automation scripts with consistent logging and
failure handling.

What this module does
---------------------
- ProcessExecutor.run(command, ...) launches `command` through /bin/sh with
  stderr merged into stdout and handles the output according to BufferMode:
    BUFFERED    collect everything, log it once at the end, return it
    UNBUFFERED  log every line as it arrives, return ""
    FLOW        log every line as it arrives AND return the full text
- Exit codes follow the shell convention: a child killed by signal N is
  reported as 128+N, a launch failure as 127, a timeout as 124.
- On a non-zero exit the error is logged, the most recent lock is released
  (if the policy says so), and the result carries Outcome.FATAL or
  Outcome.FAILED. run() itself never exits the process.
- ProcessExecutor.execute(...) is the fail-fast wrapper: a FATAL result is
  turned into SystemExit(exit_code).

Security
--------
The command string is handed to the shell as-is (pipes, redirections and
globbing work). It is NOT sanitized: never build it from untrusted input.

Why the process-group dance
---------------------------
Children start with start_new_session=True so that a timeout can stop the
shell and everything it spawned with one os.killpg() (TERM, then KILL).
Without a timeout a hung command blocks the caller indefinitely.
"""

from __future__ import annotations

import os
import enum
import time
import signal
import logging
import threading
import subprocess
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple, Union

from scriptkit.locks import LockManager
from scriptkit.log_sink import LogSink
from scriptkit.utils import as_bool, section

logger = logging.getLogger(__name__)

OUTPUT_MARKER = "    [command output] "
_LINE_END = "\r\n"

LAUNCH_FAILURE_EXIT_CODE = 127
TIMEOUT_EXIT_CODE = 124
DEFAULT_KILL_GRACE_SECONDS = 3.0


class BufferMode(enum.Enum):
    BUFFERED = "buffered"
    UNBUFFERED = "unbuffered"
    FLOW = "flow"

    @classmethod
    def parse(cls, value: Union["BufferMode", str]) -> "BufferMode":
        """Accept a BufferMode, its name/value, or the legacy TRUE/FALSE spellings."""
        if isinstance(value, cls):
            return value
        s = str(value).strip().lower()
        legacy = {"true": cls.BUFFERED, "false": cls.UNBUFFERED}
        if s in legacy:
            return legacy[s]
        for mode in cls:
            if s == mode.value:
                return mode
        raise ValueError(f"Unknown buffer mode: {value!r} (expected buffered, unbuffered or flow)")


class Outcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"   # non-zero exit, returned to the caller
    FATAL = "fatal"     # non-zero exit, policy asks for termination


@dataclass(frozen=True)
class ExecutionPolicy:
    fail_on_error: bool = True
    verbose: bool = True
    buffer_mode: BufferMode = BufferMode.FLOW
    release_lock_on_error: bool = True
    timeout: Optional[float] = None

    def resolve(self, **overrides: Any) -> "ExecutionPolicy":
        """Return a copy with every override that is not None applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "buffer_mode" in changes:
            changes["buffer_mode"] = BufferMode.parse(changes["buffer_mode"])
        if changes.get("timeout") is not None and changes["timeout"] <= 0:
            changes["timeout"] = None
        return replace(self, **changes) if changes else self

    @classmethod
    def from_settings(cls, settings: Optional[Dict], logger=None) -> "ExecutionPolicy":
        cfg = section(settings, "exec")
        timeout = float(cfg.get("timeout_seconds", 0) or 0)
        policy = cls(
            fail_on_error=as_bool(cfg.get("fail_on_error"), True),
            verbose=as_bool(cfg.get("verbose"), True),
            buffer_mode=BufferMode.parse(cfg.get("buffer_mode", BufferMode.FLOW)),
            release_lock_on_error=as_bool(cfg.get("release_lock_on_error"), True),
            timeout=timeout if timeout > 0 else None,
        )
        if logger is not None:
            logger.debug(
                f"exec policy: fail_on_error={policy.fail_on_error}, "
                f"verbose={policy.verbose}, buffer_mode={policy.buffer_mode.value}, "
                f"release_lock_on_error={policy.release_lock_on_error}, "
                f"timeout={policy.timeout}"
            )
        return policy


@dataclass
class ExecutionResult:
    command: str
    exit_code: int
    output: str
    outcome: Outcome
    timed_out: bool = False
    lock_released: Optional[bool] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def as_tuple(self) -> Tuple[int, str]:
        return self.exit_code, self.output


def normalize_exit_code(returncode: Optional[int]) -> int:
    """
    Map Popen.returncode to a shell-style exit status.

    Popen already decodes the raw wait status (the high byte for a normal
    exit); a negative value means "killed by signal N" and becomes 128+N.
    """
    if returncode is None:
        return LAUNCH_FAILURE_EXIT_CODE
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def _kill_group(proc: subprocess.Popen, grace: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
    """TERM the child's process group; KILL it if it is still alive after `grace`."""
    try:
        pgid = os.getpgid(proc.pid)
    except ProcessLookupError:
        pgid = None
    try:
        if pgid is not None:
            os.killpg(pgid, signal.SIGTERM)
        else:
            proc.terminate()
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            if pgid is not None:
                os.killpg(pgid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass


class ProcessExecutor:
    """
    Runs shell commands under an ExecutionPolicy.

    The policy is fixed at construction; each call may override any field.
    The lock manager is only used on the failure path.
    """

    def __init__(self, sink: LogSink, locks: Optional[LockManager] = None,
                 policy: Optional[ExecutionPolicy] = None, cwd: Optional[str] = None,
                 kill_grace: float = DEFAULT_KILL_GRACE_SECONDS):
        self.sink = sink
        self.locks = locks
        self.policy = policy or ExecutionPolicy()
        self.cwd = cwd
        self.kill_grace = kill_grace

    # ------------------------------------------------------------------
    # Output handling
    # ------------------------------------------------------------------

    def _popen(self, command: str) -> subprocess.Popen:
        return subprocess.Popen(
            command,
            shell=True,
            cwd=self.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )

    def _run_buffered(self, proc: subprocess.Popen, timeout: Optional[float]) -> Tuple[str, bool]:
        try:
            output, _ = proc.communicate(timeout=timeout)
            return output or "", False
        except subprocess.TimeoutExpired:
            _kill_group(proc, self.kill_grace)
            output, _ = proc.communicate()
            return output or "", True

    def _run_streaming(self, proc: subprocess.Popen, mode: BufferMode,
                       timeout: Optional[float]) -> Tuple[str, bool]:
        expired = threading.Event()
        timer = None
        if timeout is not None:
            def _expire():
                expired.set()
                _kill_group(proc, self.kill_grace)
            timer = threading.Timer(timeout, _expire)
            timer.daemon = True
            timer.start()

        chunks = []
        try:
            for line in proc.stdout:
                self.sink.info(f"{OUTPUT_MARKER}{line.rstrip(_LINE_END)}")
                if mode is BufferMode.FLOW:
                    chunks.append(line)
        finally:
            proc.stdout.close()
            proc.wait()
            if timer is not None:
                timer.cancel()
        # a timer that fires after a normal exit must not turn it into a timeout
        timed_out = expired.is_set() and proc.returncode < 0
        return "".join(chunks), timed_out

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        command: str,
        *,
        fail_on_error: Optional[bool] = None,
        verbose: Optional[bool] = None,
        buffer_mode: Optional[Union[BufferMode, str]] = None,
        release_lock_on_error: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """Run `command` through the shell and return an ExecutionResult (never exits)."""
        policy = self.policy.resolve(
            fail_on_error=fail_on_error,
            verbose=verbose,
            buffer_mode=buffer_mode,
            release_lock_on_error=release_lock_on_error,
            timeout=timeout,
        )
        mode = policy.buffer_mode

        if policy.verbose:
            self.sink.info(f"Executing command '{command}'.")
            self.sink.info(f"    CWD: '{self.cwd or os.getcwd()}'")

        start = time.monotonic()
        timed_out = False
        output = ""
        try:
            proc = self._popen(command)
        except OSError as e:
            self.sink.error(f"Couldn't launch command '{command}': {e}")
            exit_code = LAUNCH_FAILURE_EXIT_CODE
        else:
            if mode is BufferMode.BUFFERED:
                output, timed_out = self._run_buffered(proc, policy.timeout)
            else:
                output, timed_out = self._run_streaming(proc, mode, policy.timeout)
            exit_code = TIMEOUT_EXIT_CODE if timed_out else normalize_exit_code(proc.returncode)

        duration = time.monotonic() - start
        logger.debug(f"'{command}' finished rc={exit_code} in {duration:.3f}s mode={mode.value}")

        if timed_out:
            self.sink.warning(f"Command '{command}' timed out after {policy.timeout}s; process group killed.")

        if policy.verbose:
            if mode is BufferMode.BUFFERED:
                self.sink.info(f"Command '{command}' completed with exit code {exit_code}.  "
                               f"Command output:\n{output}")
            else:
                self.sink.info(f"Command '{command}' completed with exit code {exit_code}.")

        result = ExecutionResult(
            command=command,
            exit_code=exit_code,
            output=output,
            outcome=Outcome.SUCCESS,
            timed_out=timed_out,
            duration_seconds=duration,
        )
        if exit_code == 0:
            return result

        self.sink.error(f"Command '{command}' failed with non-zero exit code ({exit_code})")

        if policy.release_lock_on_error and self.locks is not None and self.locks.last is not None:
            result.lock_released = bool(self.locks.release())

        result.outcome = Outcome.FATAL if policy.fail_on_error else Outcome.FAILED
        return result

    def execute(self, command: str, **overrides: Any) -> ExecutionResult:
        """
        Like run(), but a FATAL outcome terminates the script with the
        command's exit code (SystemExit).
        """
        result = self.run(command, **overrides)
        if result.outcome is Outcome.FATAL:
            self.sink.error("Exiting from command execution errors.")
            self.sink.flush()
            raise SystemExit(result.exit_code)
        return result
