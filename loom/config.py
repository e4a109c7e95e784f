#!/usr/bin/env python3
"""
Service configuration loader for obs-loom.

Load order (first found wins):
  1) LOOM_CONFIG (env, absolute or relative to CWD)
  2) /etc/obs-loom/config.yaml
  3) ~/.config/obs-loom/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.

User-facing choices (bucket, watch directory, device selection) live in the
JSON settings file handled by ``loom.settings``; this file only carries
service tuning.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "settings_file": "~/.obs-loom-config.json",
    },
    "watch": {
        "extension": ".mp4",
        "poll_interval_sec": 1.0,
        "stable_checks": 2,
    },
    "capture": {
        "ffmpeg_path": "",
        "rec_path": "",
        "folder_suffix": "_sources",
        "stop_grace_sec": 3.0,
        "framerate": 30,
        "webcam_size": "1280x720",
        "audio_channels": 2,
        "audio_sample_rate": 48000,
        "audio_bits": 16,
    },
    "upload": {
        "gsutil_path": "",
        "public_url_template": "https://storage.googleapis.com/{bucket}/{path}",
        "cache_control": "no-cache, no-store, must-revalidate",
        "placeholder_refresh_sec": 5,
        "max_workers": 2,
    },
    "alerts": {
        "clipboard": True,
        "webhook": {},
    },
    "web_server": {
        "enabled": False,
        "listen_host": "127.0.0.1",
        "listen_port": 8765,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, log every size sample
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARN: ignoring unreadable config {path}: {exc}", flush=True)
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("LOOM_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/obs-loom/config.yaml"),
            Path("~/.config/obs-loom/config.yaml").expanduser(),
            project_root / "config.yaml",
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


def _normalize_extension(value: str) -> str:
    token = value.strip().lower()
    if token and not token.startswith("."):
        token = f".{token}"
    return token


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "LOOM_SETTINGS_FILE" in os.environ:
        value = os.environ["LOOM_SETTINGS_FILE"].strip()
        if value:
            cfg.setdefault("paths", {})["settings_file"] = value

    env_map = {
        "LOOM_EXTENSION": ("watch", "extension", _normalize_extension),
        "LOOM_POLL_INTERVAL_SEC": ("watch", "poll_interval_sec", float),
        "LOOM_STABLE_CHECKS": ("watch", "stable_checks", int),
        "LOOM_FFMPEG": ("capture", "ffmpeg_path", str.strip),
        "LOOM_REC": ("capture", "rec_path", str.strip),
        "LOOM_STOP_GRACE_SEC": ("capture", "stop_grace_sec", float),
        "LOOM_GSUTIL": ("upload", "gsutil_path", str.strip),
        "LOOM_WEB_ENABLED": ("web_server", "enabled", _parse_bool),
        "LOOM_WEB_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                print(f"[config] WARN: ignoring invalid {env_key}={os.environ[env_key]!r}", flush=True)

    if "LOOM_ALERT_WEBHOOK" in os.environ:
        url = os.environ["LOOM_ALERT_WEBHOOK"].strip()
        if url:
            alerts = cfg.setdefault("alerts", {})
            webhook = alerts.get("webhook")
            if not isinstance(webhook, dict):
                webhook = {}
            alerts["webhook"] = {**webhook, "url": url}


def _sanitize(cfg: Dict[str, Any]) -> None:
    watch = cfg.setdefault("watch", {})
    watch["extension"] = _normalize_extension(str(watch.get("extension") or ".mp4")) or ".mp4"
    try:
        watch["stable_checks"] = max(1, int(watch.get("stable_checks", 2)))
    except (TypeError, ValueError):
        watch["stable_checks"] = 2
    try:
        watch["poll_interval_sec"] = max(0.05, float(watch.get("poll_interval_sec", 1.0)))
    except (TypeError, ValueError):
        watch["poll_interval_sec"] = 1.0

    capture = cfg.setdefault("capture", {})
    try:
        capture["stop_grace_sec"] = max(0.0, float(capture.get("stop_grace_sec", 3.0)))
    except (TypeError, ValueError):
        capture["stop_grace_sec"] = 3.0


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # loom/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
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
    _sanitize(cfg)
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


def settings_path(cfg: Dict[str, Any] | None = None) -> Path:
    cfg = cfg if cfg is not None else get_cfg()
    raw = str(cfg.get("paths", {}).get("settings_file") or _DEFAULTS["paths"]["settings_file"])
    return Path(raw).expanduser()


def dev_mode(cfg: Dict[str, Any] | None = None) -> bool:
    cfg = cfg if cfg is not None else get_cfg()
    return bool(cfg.get("logging", {}).get("dev_mode"))
