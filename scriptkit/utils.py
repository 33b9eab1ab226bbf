#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
scriptkit/utils.py
==================

Shared utilities for scriptkit.

Key responsibilities
--------------------
- Load YAML settings and normalize the `paths:` section to absolute paths.
- Resolve the directories the toolkit writes to (logs, locks).
- Provide logging helpers (rotating file + console), with a live-level refresher.
- Small coercion helpers for legacy "TRUE"/"FALSE" style config values.

Conventions
-----------
- All "paths" are absolute (resolved relative to the settings file if the user
  provides relative paths).
- `settings['_meta']['settings_dir']` is injected by load_settings() so other
  helpers can resolve relative paths consistently.

Example settings file
---------------------
logging_levels:
  default: INFO
  scriptkit.executor: DEBUG
paths:
  logs_dir: logs
  locks_dir: locks
log:
  info_prefix: "[INF] [deploy] [%T] "
  file: deploy.log
exec:
  fail_on_error: true
  verbose: true
  buffer_mode: flow
  release_lock_on_error: true
  timeout_seconds: 0
lock:
  requester: deploy.sh
"""

from __future__ import annotations

import os
import yaml
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional


# -----------------------------------------------------------------------------
# Settings loading / normalization
# -----------------------------------------------------------------------------

def _abspath_relative_to(base_dir: str, maybe_path: Optional[str]) -> Optional[str]:
    """Return absolute path given a base directory."""
    if not maybe_path:
        return None
    p = str(maybe_path).strip()
    if not p:
        return None
    if os.path.isabs(p):
        return p
    return os.path.abspath(os.path.join(base_dir, p))


def load_settings(path: str) -> Dict[str, Any]:
    """
    Load YAML settings and inject a `_meta` section with:
      - settings_file (abs path)
      - settings_dir  (dir of the file)

    Also normalizes `paths:` entries and `log.file` to absolute paths.
    """
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Settings file must contain a mapping at top level: {path}")

    settings_dir = os.path.dirname(path)
    data.setdefault("_meta", {})
    data["_meta"]["settings_file"] = path
    data["_meta"]["settings_dir"] = settings_dir

    if isinstance(data.get("paths"), dict):
        for k, v in list(data["paths"].items()):
            if isinstance(v, str):
                data["paths"][k] = _abspath_relative_to(settings_dir, v)

    log_cfg = data.get("log")
    if isinstance(log_cfg, dict) and isinstance(log_cfg.get("file"), str):
        log_cfg["file"] = _abspath_relative_to(settings_dir, log_cfg["file"])

    return data


def resolve_all_paths(settings: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """
    Return a dictionary of important absolute paths derived from settings.

    Keys:
      - logs_dir   (paths.logs_dir, default ./logs)
      - locks_dir  (paths.locks_dir, default ./locks)

    This function DOES NOT create directories automatically. Writers should
    create as needed.
    """
    paths = (settings or {}).get("paths", {}) or {}
    out = {}

    def must(key: str) -> Optional[str]:
        p = paths.get(key)
        if p:
            return os.path.abspath(p)
        return None

    out["logs_dir"] = must("logs_dir") or os.path.abspath("logs")
    out["locks_dir"] = must("locks_dir") or os.path.abspath("locks")
    return out


def section(settings: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    """Return settings[name] as a dict (empty if missing or not a mapping)."""
    value = (settings or {}).get(name)
    return value if isinstance(value, dict) else {}


def as_bool(value: Any, default: bool) -> bool:
    """
    Coerce YAML/legacy values to bool.

    Accepts real booleans plus the legacy string flags used by older shell
    wrappers ("TRUE"/"FALSE", "yes"/"no", "fail"/"continue").
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in ("true", "yes", "on", "1", "fail"):
        return True
    if s in ("false", "no", "off", "0", "continue"):
        return False
    raise ValueError(f"Not a boolean value: {value!r}")


# -----------------------------------------------------------------------------
# Logging helpers
# -----------------------------------------------------------------------------

def _level_from_name(name: str, default=logging.INFO) -> int:
    level = getattr(logging, str(name).upper(), None)
    return level if isinstance(level, int) else default


def setup_logger(
    name: str,
    settings: Optional[Dict[str, Any]] = None,
    *,
    level_key: Optional[str] = None,
    level_override: Optional[str] = None,
    to_console: bool = True,
    to_file: bool = True,
    logfile_path: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Create or reuse a configured logger.

    Parameters
    ----------
    name : str
        Logger name; also used to lookup per-logger level in YAML under
        `logging_levels.<name>` (falls back to `logging_levels.default`).
    settings : dict
        Settings dict loaded via load_settings(), or None.
    level_key : str
        Key looked up in `logging_levels` instead of `name`.
    level_override : str
        Force a level (e.g., "DEBUG") ignoring YAML.
    to_console : bool
        Attach a stream handler to stderr.
    to_file : bool
        Attach a RotatingFileHandler under `paths.logs_dir`.
    logfile_path : str
        Full path to a logfile; overrides the default derived from logs_dir/name.
    max_bytes : int
        RotatingFileHandler maxBytes.
    backup_count : int
        RotatingFileHandler backupCount.
    """
    logger = logging.getLogger(name)

    default_level = logging.INFO
    if settings:
        levels = settings.get("logging_levels", {}) or {}
        level_name = levels.get(level_key or name, levels.get("default", "INFO"))
        default_level = _level_from_name(level_name, logging.INFO)

    if level_override:
        default_level = _level_from_name(level_override, default_level)

    logger.setLevel(default_level)

    # Idempotent handler attachment
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    if to_console and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        sh.setLevel(default_level)
        logger.addHandler(sh)

    if to_file:
        if not logfile_path:
            logs_dir = resolve_all_paths(settings)["logs_dir"]
            logfile_path = os.path.join(logs_dir, f"{name}.log")
        logfile_path = os.path.abspath(logfile_path)

        if not any(isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", None) == logfile_path
                   for h in logger.handlers):
            os.makedirs(os.path.dirname(logfile_path), exist_ok=True)
            fh = RotatingFileHandler(logfile_path, maxBytes=max_bytes, backupCount=backup_count)
            fh.setFormatter(fmt)
            fh.setLevel(default_level)
            logger.addHandler(fh)

    return logger


def refresh_logger_levels(settings: Dict[str, Any], keys: Optional[List[str]] = None) -> None:
    """
    Refresh levels for registered loggers according to `logging_levels`.

    Only loggers named in `logging_levels` (or listed in `keys`) are touched,
    so third-party loggers keep their own configuration. ScriptToolkit calls
    it on construction; a long running script can call it again after
    re-reading its YAML.
    """
    levels = settings.get("logging_levels", {}) or {}
    wanted = set(levels) | set(keys or [])
    wanted.discard("default")

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name not in wanted:
            continue
        level = _level_from_name(levels.get(name, levels.get("default", "INFO")), logging.INFO)
        lg = logging.getLogger(name)
        lg.setLevel(level)
        for h in lg.handlers:
            h.setLevel(level)

        if lg.isEnabledFor(logging.DEBUG):
            lg.debug(f"Logger '{name}' level refreshed to {logging.getLevelName(level)}")
