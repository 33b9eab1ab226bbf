#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
scriptkit/cli.py
================

Role
----
`scriptkit-run`: run one shell command under a lock file with scriptkit's
logging and failure policy. Handy from cron or CI wrappers:

   $ scriptkit-run --settings deploy.yaml --lock deploy.lock -- make deploy
   $ scriptkit-run --lock /tmp/sync.lock --wait 60 --buffer-mode buffered -- rsync -a src/ dst/

Lock paths without a directory part are placed under paths.locks_dir.

Exit codes
----------
RC_OK           = 0  (command succeeded)
RC_USAGE        = 2  (bad invocation or unreadable settings)
RC_LOCK_BUSY    = 3  (lock held by someone else; safe to retry later)
RC_LOCK_ERROR   = 4  (lock file could not be opened/locked)
anything else   = the command's own exit code (124 on timeout)
"""

from __future__ import annotations

import os
import sys
import argparse
from typing import List, Optional

import yaml

from scriptkit.executor import BufferMode
from scriptkit.toolkit import ScriptToolkit
from scriptkit.utils import load_settings, resolve_all_paths

# -----------------------------------------------------------------------------
RC_OK = 0
RC_USAGE = 2
RC_LOCK_BUSY = 3
RC_LOCK_ERROR = 4
# -----------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scriptkit-run",
        description="Run a shell command under an advisory lock file.",
    )
    parser.add_argument("--settings", help="Path to YAML settings.")
    parser.add_argument("--lock", help="Lock file to hold while the command runs.")
    parser.add_argument("--wait", type=float, default=0.0,
                        help="Seconds to keep retrying a busy lock (default: fail at once).")
    parser.add_argument("--buffer-mode", choices=[m.value for m in BufferMode],
                        help="Output handling (default from settings, else flow).")
    parser.add_argument("--continue-on-error", action="store_true",
                        help="Return the command's exit code instead of aborting on failure.")
    parser.add_argument("--keep-lock-on-error", action="store_true",
                        help="Do not release the lock when the command fails.")
    parser.add_argument("--quiet", action="store_true",
                        help="Do not log the command, its directory and its outcome.")
    parser.add_argument("--timeout", type=float,
                        help="Kill the command after this many seconds.")
    parser.add_argument("--log-file", metavar="PREFIX",
                        help="Redirect all output to PREFIX<timestamp>.log.")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Command to run (put it after --).")
    return parser


def _lock_path(lock: str, settings) -> str:
    if os.path.dirname(lock):
        return os.path.abspath(lock)
    locks_dir = resolve_all_paths(settings)["locks_dir"]
    os.makedirs(locks_dir, exist_ok=True)
    return os.path.join(locks_dir, lock)


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    settings = None
    if args.settings:
        try:
            settings = load_settings(args.settings)
        except (OSError, ValueError, yaml.YAMLError) as e:
            print(f"[FATAL] Cannot load settings: {e}", file=sys.stderr)
            return RC_USAGE

    kit = ScriptToolkit.from_settings(settings, name="scriptkit-run")
    if args.log_file:
        kit.sink.redirect_to_file(args.log_file)

    words = list(args.command)
    if words and words[0] == "--":
        words = words[1:]
    command = " ".join(words).strip()
    if not command:
        kit.abort("No command given.\nExample: scriptkit-run --lock deploy.lock -- make deploy", RC_USAGE)

    lock_path = None
    if args.lock:
        lock_path = _lock_path(args.lock, settings)
        if args.wait > 0:
            held = kit.locks.acquire_wait(lock_path, timeout=args.wait)
        else:
            held = kit.acquire_lock(lock_path)
        if not held:
            return RC_LOCK_BUSY if held.retryable else RC_LOCK_ERROR

    result = kit.execute(
        command,
        fail_on_error=False if args.continue_on_error else None,
        verbose=False if args.quiet else None,
        buffer_mode=args.buffer_mode,
        release_lock_on_error=False if args.keep_lock_on_error else None,
        timeout=args.timeout,
    )

    keep = args.keep_lock_on_error and not result.ok
    if lock_path and kit.locks.is_held(lock_path) and not keep:
        kit.release_lock(lock_path)

    kit.sink.flush()
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
