#!/usr/bin/env python3
"""
scriptkit/toolkit.py

ScriptToolkit bundles one LogSink, one LockManager and one ProcessExecutor
that share the same sink, so a script gets consistent output from all three:

    kit = ScriptToolkit.from_settings(load_settings("deploy.yaml"))
    kit.acquire_lock("/var/lock/deploy.lock")
    kit.execute("make install")          # exits the script if it fails
    kit.release_lock()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from scriptkit.executor import ExecutionPolicy, ExecutionResult, ProcessExecutor
from scriptkit.locks import LockManager, LockResult
from scriptkit.log_sink import LogSink
from scriptkit.utils import refresh_logger_levels, section


class ScriptToolkit:
    def __init__(self, sink: LogSink, locks: LockManager, executor: ProcessExecutor):
        self.sink = sink
        self.locks = locks
        self.executor = executor

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]] = None, name: Optional[str] = None,
                      cwd: Optional[str] = None, **sink_kwargs: Any) -> "ScriptToolkit":
        """Build the three collaborators from a settings dict (or defaults when None)."""
        if settings:
            # push logging_levels (e.g. `scriptkit: DEBUG`) onto the module loggers
            refresh_logger_levels(settings)
        sink = LogSink(name, settings, **sink_kwargs)
        locks = LockManager(sink, requester=section(settings, "lock").get("requester"))
        policy = ExecutionPolicy.from_settings(settings, logging.getLogger("scriptkit.toolkit"))
        executor = ProcessExecutor(sink, locks, policy, cwd=cwd)
        return cls(sink, locks, executor)

    # Executor
    def run(self, command: str, **overrides: Any) -> ExecutionResult:
        return self.executor.run(command, **overrides)

    def execute(self, command: str, **overrides: Any) -> ExecutionResult:
        return self.executor.execute(command, **overrides)

    # Locks
    def acquire_lock(self, path: Optional[str], quiet: bool = False) -> LockResult:
        return self.locks.acquire(path, quiet=quiet)

    def release_lock(self, path: Optional[str] = None, quiet: bool = False) -> LockResult:
        return self.locks.release(path, quiet=quiet)

    # Sink
    def info(self, message: Any, indent: str = "") -> None:
        self.sink.info(message, indent)

    def warning(self, message: Any, indent: str = "") -> None:
        self.sink.warning(message, indent)

    def error(self, message: Any, indent: str = "") -> None:
        self.sink.error(message, indent)

    def abort(self, message: Any, exit_code: int = 1) -> None:
        self.sink.abort(message, exit_code)
