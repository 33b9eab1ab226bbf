#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
scriptkit/log_sink.py
=====================

Prefixed message channels for automation scripts.

What this module does
---------------------
- Three channels: info (output stream), warning and error (error stream).
- Every message is split on newline boundaries and written one prefixed line
  per segment:  <prefix><indent><segment>
- Prefix templates may contain %t (sortable stamp) and %T (readable stamp);
  they are resolved for every line at emit time, never cached.
- abort() prints a usage block (header + indented message) on the error
  stream and raises SystemExit. Library code never calls it; only top-level
  callers and the fail-fast executor wrapper do.

How it is built
---------------
The sink is a plain `logging.Logger` obtained through utils.setup_logger()
(so `logging_levels` and an optional rotating file mirror come from YAML)
with two extra StreamHandlers:
  - records below WARNING  -> output stream
  - WARNING and above      -> error stream
Both use PrefixFormatter, which reads the per-record prefix template and
indent passed in via `extra=`. Records without a prefix template are refused.

Every sink gets its own non-propagating logger under `scriptkit.sink`, so two
sinks never share handlers and the `scriptkit.*` module loggers (debug
diagnostics) never reach the prefixed streams.
"""

from __future__ import annotations

import os
import re
import sys
import itertools
import logging
from typing import IO, Any, Dict, List, Optional

from scriptkit.timestamps import Clock, expand_stamps, gen_timestamp
from scriptkit.utils import section, setup_logger

_SEGMENT_SPLIT = re.compile(r"\r*\n+")

USAGE_INDENT = "    "

# Sink loggers live under their own branch so module loggers never reach them.
SINK_LOGGER_ROOT = "scriptkit.sink"

_sink_ids = itertools.count(1)


def _script_name() -> str:
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "python"


def split_segments(message: Any) -> List[str]:
    """
    Split a message on newline runs (\\r*\\n+).

    Trailing empty segments are dropped, so "a\\n" yields ["a"] and an empty
    message yields []. A leading newline keeps its empty first segment.
    """
    parts = _SEGMENT_SPLIT.split(str(message))
    while parts and parts[-1] == "":
        parts.pop()
    return parts


class PrefixFormatter(logging.Formatter):
    """Render <prefix><indent><message> with the prefix resolved per record."""

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__()
        self.clock = clock

    def format(self, record: logging.LogRecord) -> str:
        template = getattr(record, "prefix_template", "")
        indent = getattr(record, "indent", "")
        prefix = expand_stamps(template, gen_timestamp(self.clock)) if template else ""
        return f"{prefix}{indent}{record.getMessage()}"


class _SinkHandler(logging.StreamHandler):
    """Stream handler that only accepts records emitted through a LogSink channel."""

    def __init__(self, stream: IO[str]):
        super().__init__(stream)
        self.addFilter(_SinkRecordsOnly())


class _SinkRecordsOnly(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return hasattr(record, "prefix_template")


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


class LogSink:
    """
    Info / warning / error channels with stamp-aware prefixes.

    Streams default to the *current* sys.stdout / sys.stderr at construction
    time. Pass `settings` (from utils.load_settings) to pick up the `log:`
    section (prefixes, usage header, file mirror) and `logging_levels`.
    """

    def __init__(
        self,
        name: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        *,
        output_stream: Optional[IO[str]] = None,
        error_stream: Optional[IO[str]] = None,
        clock: Optional[Clock] = None,
        info_prefix: Optional[str] = None,
        warning_prefix: Optional[str] = None,
        error_prefix: Optional[str] = None,
        usage_prefix: Optional[str] = None,
        usage_header: Optional[str] = None,
    ):
        script = _script_name()
        cfg = section(settings, "log")

        def pick(explicit: Optional[str], key: str, default: str) -> str:
            if explicit is not None:
                return explicit
            value = cfg.get(key)
            return default if value is None else str(value)

        self.name = name or script
        self.clock = clock
        self.info_prefix = pick(info_prefix, "info_prefix", f"[INF] [{script}] [%T] ")
        self.warning_prefix = pick(warning_prefix, "warning_prefix", f"[WRN] [{script}] [%T] ")
        self.error_prefix = pick(error_prefix, "error_prefix", f"[ERR] [{script}] [%T] ")
        self.usage_prefix = pick(usage_prefix, "usage_prefix", f"[USE] [{script}] [%T] ")
        self.usage_header = pick(usage_header, "usage_header", f"Usage: {script}")

        # Each sink owns its logger; `name` only selects the level in logging_levels.
        logfile = cfg.get("file")
        self.logger = setup_logger(
            f"{SINK_LOGGER_ROOT}.{self.name}.{next(_sink_ids)}",
            settings,
            level_key=self.name,
            to_console=False,
            to_file=bool(logfile),
            logfile_path=logfile or None,
        )
        self.logger.propagate = False

        formatter = PrefixFormatter(clock)

        self._out_handler = _SinkHandler(output_stream if output_stream is not None else sys.stdout)
        self._out_handler.setLevel(logging.DEBUG)
        self._out_handler.addFilter(_BelowWarning())
        self._out_handler.setFormatter(formatter)

        self._err_handler = _SinkHandler(error_stream if error_stream is not None else sys.stderr)
        self._err_handler.setLevel(logging.WARNING)
        self._err_handler.setFormatter(formatter)

        self.logger.addHandler(self._out_handler)
        self.logger.addHandler(self._err_handler)
        self._redirect_files: List[IO[str]] = []

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    @property
    def output_stream(self) -> IO[str]:
        return self._out_handler.stream

    @property
    def error_stream(self) -> IO[str]:
        return self._err_handler.stream

    # ------------------------------------------------------------------
    # Prefix setters
    # ------------------------------------------------------------------

    def set_info_prefix(self, value: str) -> None:
        self.info_prefix = value

    def set_warning_prefix(self, value: str) -> None:
        self.warning_prefix = value

    def set_error_prefix(self, value: str) -> None:
        self.error_prefix = value

    def set_usage_prefix(self, value: str) -> None:
        self.usage_prefix = value

    def set_usage_header(self, value: str) -> None:
        self.usage_header = value

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def _emit(self, level: int, template: str, message: Any, indent: str) -> None:
        extra = {"prefix_template": template, "indent": indent or ""}
        for segment in split_segments(message):
            # segment is passed as an argument so '%' in command output is literal
            self.logger.log(level, "%s", segment, extra=extra)

    def info(self, message: Any, indent: str = "") -> None:
        self._emit(logging.INFO, self.info_prefix, message, indent)

    def warning(self, message: Any, indent: str = "") -> None:
        self._emit(logging.WARNING, self.warning_prefix, message, indent)

    def error(self, message: Any, indent: str = "") -> None:
        self._emit(logging.ERROR, self.error_prefix, message, indent)

    def abort(self, message: Any, exit_code: int = 1) -> None:
        """Print the usage block on the error stream and exit with `exit_code`."""
        self._emit(logging.CRITICAL, self.usage_prefix, self.usage_header, "")
        self._emit(logging.CRITICAL, self.usage_prefix, message, USAGE_INDENT)
        self.flush()
        raise SystemExit(exit_code)

    def banner(self, message: str, token: str = "#", width: int = 80) -> None:
        """Three info lines: a rule, the centred message, a rule."""
        left_over = width - len(message) - 2
        left = max(left_over // 2, 1)
        right = max(left_over - left_over // 2, 1)
        rule = token * width
        self.info(rule)
        self.info(f"{token * left} {message} {token * right}")
        self.info(rule)

    def flush(self) -> None:
        for h in (self._out_handler, self._err_handler):
            h.flush()

    # ------------------------------------------------------------------
    # Redirection
    # ------------------------------------------------------------------

    def redirect_to_file(self, file_prefix: str, file_postfix: str = ".log") -> str:
        """
        Point both channels at <file_prefix><sortable stamp><file_postfix>.

        The file is truncated first; all channels then append to it.
        Returns the log path.
        """
        stamp = gen_timestamp(self.clock)
        path = f"{file_prefix}{stamp.sortable}{file_postfix}"
        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)

        # truncate once, then share one append-mode handle so lines interleave in order
        open(path, "w", encoding="utf-8").close()
        fh = open(path, "a", encoding="utf-8")
        self._out_handler.setStream(fh)
        self._err_handler.setStream(fh)
        self._close_redirects()
        self._redirect_files = [fh]
        self.info(f"Output redirected to '{path}'")
        self.flush()
        return path

    def _close_redirects(self) -> None:
        for fh in self._redirect_files:
            fh.close()
        self._redirect_files = []

    def close(self) -> None:
        """Detach every handler of the sink, closing the file mirror and any redirect files."""
        for h in list(self.logger.handlers):
            self.logger.removeHandler(h)
            if h in (self._out_handler, self._err_handler):
                h.flush()
            else:
                h.close()
        self._close_redirects()
