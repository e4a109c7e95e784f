#!/usr/bin/env python3
"""Persisted user settings (bucket, directories, device selection)."""
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from loom.config import get_cfg, settings_path


def default_watch_directory() -> str:
    return str(Path("~/OBSRecordings").expanduser())


def default_source_directory() -> str:
    return str(Path("~/OBSSourceFiles").expanduser())


def expand_directory(value: str) -> str:
    text = value.strip()
    if text.startswith("~"):
        return str(Path(text).expanduser())
    return text


@dataclass
class Settings:
    bucket: str = ""
    watch_directory: str = ""
    source_capture_enabled: bool = False
    source_output_directory: str = ""
    selected_screen_id: str | None = None
    selected_camera_id: str | None = None
    selected_audio_id: str | None = None

    def __post_init__(self) -> None:
        if not self.watch_directory:
            self.watch_directory = default_watch_directory()
        if not self.source_output_directory:
            self.source_output_directory = default_source_directory()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Settings":
        defaults = cls()

        def _text(key: str, fallback: str) -> str:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return expand_directory(value) if key.endswith("_directory") else value.strip()
            return fallback

        def _optional(key: str) -> str | None:
            value = payload.get(key)
            if value is None:
                return None
            text = str(value).strip()
            return text or None

        return cls(
            bucket=_text("bucket", defaults.bucket),
            watch_directory=_text("watch_directory", defaults.watch_directory),
            source_capture_enabled=payload.get("source_capture_enabled") is True,
            source_output_directory=_text(
                "source_output_directory", defaults.source_output_directory
            ),
            selected_screen_id=_optional("selected_screen_id"),
            selected_camera_id=_optional("selected_camera_id"),
            selected_audio_id=_optional("selected_audio_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


SETTING_KEYS = tuple(field.name for field in fields(Settings))


def load_settings(path: Path | None = None) -> Settings:
    """Return saved settings; a missing or malformed file yields defaults."""

    target = Path(path) if path is not None else settings_path(get_cfg())
    try:
        with target.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        print(f"[settings] No settings file at {target}, using defaults", flush=True)
        return Settings()
    except (OSError, json.JSONDecodeError) as exc:
        print(f"[settings] WARN: unreadable settings {target} ({exc}); using defaults", flush=True)
        return Settings()
    if not isinstance(payload, dict):
        print(f"[settings] WARN: settings {target} is not an object; using defaults", flush=True)
        return Settings()
    settings = Settings.from_dict(payload)
    print(
        f"[settings] Loaded: bucket={settings.bucket or '-'}, watch={settings.watch_directory}, "
        f"sourceCapture={settings.source_capture_enabled}",
        flush=True,
    )
    return settings


def save_settings(settings: Settings, path: Path | None = None) -> bool:
    target = Path(path) if path is not None else settings_path(get_cfg())
    tmp = target.with_suffix(target.suffix + ".tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(settings.to_dict(), handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp, target)
    except OSError as exc:
        print(f"[settings] WARN: failed to save settings to {target}: {exc}", flush=True)
        return False
    print("[settings] Saved", flush=True)
    return True


def apply_changes(settings: Settings, changes: dict[str, Any]) -> tuple[Settings, list[str]]:
    """Return a copy of ``settings`` with ``changes`` applied plus any validation errors."""

    errors: list[str] = []
    merged = settings.to_dict()
    for key, value in changes.items():
        if key not in SETTING_KEYS:
            errors.append(f"unknown setting: {key}")
            continue
        if key == "source_capture_enabled":
            if isinstance(value, str):
                value = value.strip().lower() in {"1", "true", "yes", "on"}
            elif not isinstance(value, bool):
                errors.append("source_capture_enabled must be a boolean")
                continue
        elif value is not None and not isinstance(value, str):
            errors.append(f"{key} must be a string or null")
            continue
        elif key.endswith("_directory") and not (value or "").strip():
            errors.append(f"{key} must not be empty")
            continue
        merged[key] = value
    return Settings.from_dict(merged), errors


def update_settings(path: Path | None = None, **changes: Any) -> Settings:
    settings, errors = apply_changes(load_settings(path), changes)
    if errors:
        raise ValueError("; ".join(errors))
    save_settings(settings, path)
    return settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Show or change obs-loom settings")
    parser.add_argument("--file", help="Settings file (defaults to the configured path)")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("show", help="Print the current settings as JSON")
    set_parser = sub.add_parser("set", help="Change one setting")
    set_parser.add_argument("key", choices=SETTING_KEYS)
    set_parser.add_argument("value", help="New value ('none' clears a selection)")
    args = parser.parse_args(argv)

    path = Path(args.file).expanduser() if args.file else None
    if args.command == "set":
        value: Any = args.value
        if args.key.startswith("selected_") and value.strip().lower() in {"", "none", "null"}:
            value = None
        try:
            settings = update_settings(path, **{args.key: value})
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2
    else:
        settings = load_settings(path)
    print(json.dumps(settings.to_dict(), indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
