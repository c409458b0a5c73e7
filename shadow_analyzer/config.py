#!/usr/bin/env python3
"""
Unified configuration loader for the shadowing analyzer.

Load order (first found wins):
  1) SHADOW_CONFIG (env, absolute or relative to CWD)
  2) ~/.config/shadow-analyzer/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, MutableMapping

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

_DEFAULTS: Dict[str, Any] = {
    "mpv": {
        "ipc_path": "/tmp/mpv-shadow.sock",
        "connect_retry_ms": 300,
        "request_timeout_s": 5.0,
        "trigger_keyword": "cut_current_sub",
        "osd_duration_ms": 1200,
    },
    "clips": {
        "out_dir": "shadow_out",
        "keep": 5,
        "mic_keep": 5,
        "pad_seconds": 0.10,
        "stop_lead_seconds": 0.02,
    },
    "ffmpeg": {
        "binary": "ffmpeg",
        "sample_rate": 48000,
    },
    "mic": {
        "device": "",  # empty: first enumerated capture device
        "input_format": "alsa",
        "ready_timeout_ms": 150,
        "ready_poll_ms": 25,
    },
    "analysis": {
        "timeout_ms": 200,
        "frames": 4096,
        "pitch": {
            "sample_rate": 24000,
            "frame_ms": 40,
            "hop_ms": 10,
            "fmin_hz": 70.0,
            "fmax_hz": 350.0,
            "threshold": 0.40,
        },
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
    "web_server": {
        "enabled": True,
        "listen_host": "127.0.0.1",
        "listen_port": 8765,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None
_primary_config_path: Path | None = None


class ConfigPersistenceError(Exception):
    """Raised when configuration changes cannot be persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc}", flush=True)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SHADOW_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path.home() / ".config" / "shadow-analyzer" / "config.yaml",
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


def _resolve_primary_path(search: list[Path], active: Path | None) -> Path:
    env_cfg = os.getenv("SHADOW_CONFIG")
    if env_cfg:
        return Path(env_cfg).expanduser().resolve()
    if active is not None:
        return active
    return search[0] if search else Path.cwd() / "config.yaml"


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "MPV_IPC_PATH" in os.environ:
        value = os.environ["MPV_IPC_PATH"].strip()
        if value:
            cfg.setdefault("mpv", {})["ipc_path"] = value
    if "SHADOW_OUT_DIR" in os.environ:
        value = os.environ["SHADOW_OUT_DIR"].strip()
        if value:
            cfg.setdefault("clips", {})["out_dir"] = value
    if "FFMPEG_BINARY" in os.environ:
        value = os.environ["FFMPEG_BINARY"].strip()
        if value:
            cfg.setdefault("ffmpeg", {})["binary"] = value
    # Microphone: the config file wins unless it still carries the default.
    if "MIC_DEV" in os.environ:
        env_device = os.environ["MIC_DEV"].strip()
        if env_device:
            mic_section = cfg.setdefault("mic", {})
            current_device = mic_section.get("device")
            default_device = _DEFAULTS["mic"]["device"]
            if current_device in (None, "", default_device):
                mic_section["device"] = env_device

    env_map = {
        "SHADOW_KEEP": ("clips", "keep", int),
        "SHADOW_MIC_KEEP": ("clips", "mic_keep", int),
        "SHADOW_WEB_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (shadow_analyzer/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
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
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _primary_config_path = _resolve_primary_path(search, active)

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def primary_config_path() -> Path:
    if _primary_config_path is None:
        get_cfg()
    assert _primary_config_path is not None
    return _primary_config_path


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _load_yaml_for_update(path: Path) -> MutableMapping[str, Any]:
    if not path.exists():
        return CommentedMap()
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = _ROUND_TRIP_YAML.load(handle)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
    if data is None:
        return CommentedMap()
    if not isinstance(data, MutableMapping):
        raise ConfigPersistenceError("Configuration root must be a mapping")
    return data


def _dump_yaml(path: Path, payload: MutableMapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    try:
        with path.open("w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(payload, handle)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


def _persist_settings_section(section: str, settings: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(settings, dict):
        raise ConfigPersistenceError(f"{section} settings payload must be a mapping")

    primary_path = primary_config_path()
    updated = _load_yaml_for_update(primary_path)

    target = updated.get(section)
    if target is None:
        target = CommentedMap()
        updated[section] = target
    if not isinstance(target, MutableMapping):
        raise ConfigPersistenceError(f"Configuration section {section!r} is not a mapping")
    for key, value in settings.items():
        target[key] = value

    _dump_yaml(primary_path, updated)
    return reload_cfg().get(section, {})


def update_mic_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return _persist_settings_section("mic", settings)
