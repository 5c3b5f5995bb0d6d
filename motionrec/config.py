#!/usr/bin/env python3
"""
Unified configuration loader for motionrec.

Load order (first found wins):
  1) MOTIONREC_CONFIG (env, absolute or relative to CWD)
  2) /etc/motionrec/config.yaml
  3) /apps/motionrec/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) <script_dir>/config.yaml (directory of the running script)
  6) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "recorder": {
        "command": ["./start_recording"],
        "working_dir": "",
        "term_timeout_sec": 5.0,
        "kill_timeout_sec": 2.0,
        "process_group": True,
    },
    "events": {
        "producer_command": [],  # empty: read motion events from stdin
        "poll_interval_sec": 0.25,
        "eof_is_clean": False,
        "producer_term_timeout_sec": 2.0,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Skip unreadable files and continue with other locations/defaults
        _log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _log.warning("Ignoring config %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("MOTIONREC_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/motionrec/config.yaml"),
            Path("/apps/motionrec/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def command_from_value(value: Any) -> list[str]:
    """Return an argv list from a config value (shell-style string or list)."""
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        text = value.decode() if isinstance(value, bytes) else value
        try:
            return shlex.split(text)
        except ValueError as exc:
            raise ValueError(f"cannot parse command {text!r}: {exc}") from exc
    if isinstance(value, (list, tuple)):
        return [str(part) for part in value if part is not None and str(part) != ""]
    return [str(value)]


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "LOG_LEVEL" in os.environ:
        value = os.environ["LOG_LEVEL"].strip()
        if value:
            cfg.setdefault("logging", {})["level"] = value

    env_map = {
        "RECORDER_CMD": ("recorder", "command", command_from_value),
        "RECORDER_WORKDIR": ("recorder", "working_dir", str),
        "RECORDER_TERM_TIMEOUT_SEC": ("recorder", "term_timeout_sec", float),
        "RECORDER_KILL_TIMEOUT_SEC": ("recorder", "kill_timeout_sec", float),
        "RECORDER_PROCESS_GROUP": ("recorder", "process_group", _parse_bool),
        "MOTION_PRODUCER_CMD": ("events", "producer_command", command_from_value),
        "EVENT_POLL_INTERVAL_SEC": ("events", "poll_interval_sec", float),
        "EVENT_EOF_IS_CLEAN": ("events", "eof_is_clean", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (motionrec/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)
