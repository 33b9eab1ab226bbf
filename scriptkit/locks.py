#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
scriptkit/locks.py
==================

Advisory, exclusive, non-blocking lock files for cooperating scripts.

What this module does
---------------------
- acquire(path): open the file for append, take fcntl.flock(LOCK_EX | LOCK_NB),
  seek to EOF and append a provenance line:
      Lock file requested by <requester> at <H:M:S, Wkd Mon DD, YYYY>.
  Acquisition never waits: if someone else holds the lock it fails at once.
  Use acquire_wait() to poll.
- release(path=None): unlock, unlink the file, close the handle. With no path,
  the most recently acquired lock still held is released.

Failures are logged on the sink and returned as a LockFailure (falsy), never
raised. The failure reason tells "someone else has it" (CONTENDED, worth
retrying) apart from I/O problems.

Lock bookkeeping
----------------
Held locks live in an insertion-ordered mapping  abs path -> LockHandle, so a
script may hold several locks at once. `last` is derived from that mapping.

Unlink after unlock
-------------------
Failing to delete the file after the flock has been dropped is only a
warning: the lock itself is released, a leftover file is harmless to anyone
who honours flock. There is a small window where another process can open
the old file between our unlock and unlink.
"""

from __future__ import annotations

import os
import sys
import time
import enum
import fcntl
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Dict, Iterator, List, Optional, Union

from scriptkit.log_sink import LogSink
from scriptkit.timestamps import gen_timestamp

logger = logging.getLogger(__name__)


def default_requester() -> str:
    script = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "python"
    return f"{script} (pid {os.getpid()})"


def _abandon(fh: IO[str]) -> None:
    """Unlock and close a lock file that will not be tracked."""
    try:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        try:
            fh.close()
        except OSError as e:
            # close() retries the failed flush; the descriptor is closed regardless
            logger.debug(f"closing abandoned lock file: {e}")


class LockFailureReason(enum.Enum):
    UNSET_PATH = "unset_path"
    CONTENDED = "contended"
    IO_ERROR = "io_error"
    NOT_HELD = "not_held"


@dataclass
class LockFailure:
    path: Optional[str]
    reason: LockFailureReason
    detail: str = ""

    def __bool__(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        return self.reason is LockFailureReason.CONTENDED


@dataclass
class LockHandle:
    path: str
    file: IO[str] = field(repr=False)
    requester: str = ""
    acquired_at: str = ""
    released: bool = False

    def fileno(self) -> int:
        return self.file.fileno()


LockResult = Union[LockHandle, LockFailure]


class LockUnavailable(Exception):
    """Raised by LockManager.locked() when the lock cannot be taken."""

    def __init__(self, failure: LockFailure):
        super().__init__(f"{failure.reason.value}: {failure.path} {failure.detail}".strip())
        self.failure = failure


class LockManager:
    def __init__(self, sink: LogSink, requester: Optional[str] = None):
        self.sink = sink
        self.requester = requester or default_requester()
        self._held: Dict[str, LockHandle] = {}

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def last(self) -> Optional[LockHandle]:
        """Most recently acquired lock that is still held."""
        if not self._held:
            return None
        return next(reversed(self._held.values()))

    @property
    def held(self) -> List[str]:
        return list(self._held)

    def is_held(self, path: str) -> bool:
        return os.path.abspath(path) in self._held

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    def _fail(self, path: Optional[str], reason: LockFailureReason, message: str,
              detail: str = "") -> LockFailure:
        self.sink.error(message)
        return LockFailure(path=path, reason=reason, detail=detail)

    def acquire(self, path: Optional[str], quiet: bool = False) -> LockResult:
        if not path:
            return self._fail(None, LockFailureReason.UNSET_PATH,
                              "Asked to lock file, but no filename provided.")

        key = os.path.abspath(path)
        if not quiet:
            self.sink.info(f"Acquiring lock file '{path}'.")

        if key in self._held:
            return self._fail(key, LockFailureReason.CONTENDED,
                              f"Couldn't acquire flock on lock file '{path}': already held by this process",
                              "already held by this process")

        try:
            fh = open(key, "a", encoding="utf-8")
        except OSError as e:
            return self._fail(key, LockFailureReason.IO_ERROR,
                              f"Couldn't open lock file '{path}': {e}", str(e))

        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            fh.close()
            return self._fail(key, LockFailureReason.CONTENDED,
                              f"Couldn't acquire flock on lock file '{path}': {e}", str(e))
        except OSError as e:
            fh.close()
            return self._fail(key, LockFailureReason.IO_ERROR,
                              f"Couldn't acquire flock on lock file '{path}': {e}", str(e))

        try:
            fh.seek(0, os.SEEK_END)
        except OSError as e:
            _abandon(fh)
            return self._fail(key, LockFailureReason.IO_ERROR,
                              f"Couldn't seek on lock file '{path}' - this means someone else "
                              f"appended while we were waiting for flock", str(e))

        stamp = gen_timestamp(self.sink.clock)
        try:
            fh.write(f"Lock file requested by {self.requester} at {stamp.readable}.\n")
            fh.flush()
        except OSError as e:
            _abandon(fh)
            return self._fail(key, LockFailureReason.IO_ERROR,
                              f"Couldn't write to lock file '{path}': {e}", str(e))

        handle = LockHandle(path=key, file=fh, requester=self.requester, acquired_at=stamp.readable)
        self._held[key] = handle
        logger.debug(f"held locks: {self.held}")

        if not quiet:
            self.sink.info(f"Acquired lock file '{path}'.")
        return handle

    def acquire_wait(self, path: Optional[str], timeout: float, poll_interval: float = 0.5,
                     quiet: bool = False) -> LockResult:
        """
        Poll acquire() until it succeeds, fails for a non-contention reason,
        or `timeout` seconds have passed. Returns the last result.
        """
        deadline = time.monotonic() + max(timeout, 0.0)
        attempt_quiet = quiet
        while True:
            result = self.acquire(path, quiet=attempt_quiet)
            if result or not result.retryable:
                return result
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.sink.error(f"Gave up waiting for lock file '{path}' after {timeout}s.")
                return result
            # only the first attempt announces itself
            attempt_quiet = True
            time.sleep(min(poll_interval, remaining))

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def _check_stale(self, key: str, path: str) -> LockResult:
        """Open an unheld lock file and make sure nobody else holds it."""
        if not os.path.exists(key):
            return self._fail(key, LockFailureReason.NOT_HELD,
                              f"Asked to unlock file '{path}', but no lock is held on it.")
        try:
            fh = open(key, "a", encoding="utf-8")
        except OSError as e:
            return self._fail(key, LockFailureReason.IO_ERROR,
                              f"Couldn't open lock file '{path}': {e}", str(e))
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            fh.close()
            reason = (LockFailureReason.CONTENDED if isinstance(e, BlockingIOError)
                      else LockFailureReason.IO_ERROR)
            return self._fail(key, reason,
                              f"Couldn't release lock file '{path}': held by another process ({e})",
                              str(e))
        return LockHandle(path=key, file=fh, requester=self.requester)

    def release(self, path: Optional[str] = None, quiet: bool = False) -> LockResult:
        if path is None:
            handle = self.last
            if handle is None:
                return self._fail(None, LockFailureReason.NOT_HELD,
                                  "Asked to unlock file, but no lock file is held.")
            path = handle.path
            key = handle.path
        else:
            key = os.path.abspath(path)
            handle = self._held.get(key)
            if handle is None:
                stale = self._check_stale(key, path)
                if not stale:
                    return stale
                handle = stale

        if not quiet:
            self.sink.info(f"Releasing lock file '{path}'.")

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            if key not in self._held:
                handle.file.close()
            return self._fail(key, LockFailureReason.IO_ERROR,
                              f"Couldn't release lock file '{path}': {e}", str(e))

        try:
            os.unlink(key)
        except OSError as e:
            self.sink.warning(f"Couldn't delete lock file '{path}': {e}")
            self.sink.warning("Lock will still be released, but file will be present.")

        handle.file.close()
        handle.released = True
        self._held.pop(key, None)

        if not quiet:
            self.sink.info(f"Released lock on file '{path}'.")
        return handle

    def release_all(self, quiet: bool = False) -> int:
        """Release every held lock, newest first. Returns how many were released."""
        released = 0
        for key in reversed(list(self._held)):
            if self.release(key, quiet=quiet):
                released += 1
        return released

    @contextmanager
    def locked(self, path: str, quiet: bool = False) -> Iterator[LockHandle]:
        """
        Hold `path` for the duration of a with-block.

        Raises LockUnavailable if the lock cannot be taken. The lock is
        released on exit unless something (e.g. the executor's failure path)
        already released it.
        """
        result = self.acquire(path, quiet=quiet)
        if not result:
            raise LockUnavailable(result)
        try:
            yield result
        finally:
            if not result.released:
                self.release(result.path, quiet=quiet)
