#!/usr/bin/env python3
"""Watcher service: builds the collaborators and drives the lifecycle."""
from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict

from loom.alerts import AlertDispatcher, ClipboardPublisher, build_alerts
from loom.capture import CaptureSupervisor
from loom.change_notifier import ChangeNotifier
from loom.config import dev_mode, get_cfg, settings_path
from loom.devices import DeviceCatalog, run_listing
from loom.lifecycle import RecordingLifecycle
from loom.object_store import GsutilStore, ObjectStore
from loom.path_scanner import scan
from loom.processes import SubprocessLauncher, resolve_executable
from loom.settings import Settings, apply_changes, load_settings, save_settings
from loom.stability_poller import StabilityPoller
from loom.status import project_status
from loom.uploads import UploadCoordinator


class Watcher:
    def __init__(
        self,
        cfg: Dict[str, Any] | None = None,
        *,
        settings: Settings | None = None,
        settings_file: Path | str | None = None,
        launcher: SubprocessLauncher | None = None,
        store_factory: Callable[[str], ObjectStore] | None = None,
        notifier_factory: Callable[..., ChangeNotifier] = ChangeNotifier,
        poller: StabilityPoller | None = None,
        catalog: DeviceCatalog | None = None,
        device_listing: Callable[[], str] | None = None,
        alerts: AlertDispatcher | None = None,
        clipboard: ClipboardPublisher | None = None,
        executor=None,
        threaded: bool = True,
    ) -> None:
        self.cfg = cfg if cfg is not None else get_cfg()
        watch_cfg = self.cfg["watch"]
        capture_cfg = self.cfg["capture"]
        upload_cfg = self.cfg["upload"]

        self.settings_file = Path(settings_file).expanduser() if settings_file else settings_path(self.cfg)
        self.settings = settings if settings is not None else load_settings(self.settings_file)
        self.extension = str(watch_cfg["extension"])

        ffmpeg = resolve_executable("ffmpeg", capture_cfg.get("ffmpeg_path"))
        rec = resolve_executable("rec", capture_cfg.get("rec_path"))
        if store_factory is None:
            gsutil = resolve_executable("gsutil", upload_cfg.get("gsutil_path"))
            store_factory = partial(
                GsutilStore,
                gsutil_path=gsutil,
                url_template=str(upload_cfg["public_url_template"]),
            )

        if alerts is None or clipboard is None:
            built_alerts, built_clipboard = build_alerts(self.cfg.get("alerts"))
            alerts = alerts or built_alerts
            clipboard = clipboard or built_clipboard
        self.alerts = alerts
        self.clipboard = clipboard

        self._device_listing = device_listing or partial(run_listing, ffmpeg)
        self.catalog = catalog if catalog is not None else DeviceCatalog()
        # An injected catalog is already populated by its owner.
        self._discover_devices = catalog is None

        self.uploads = UploadCoordinator(
            store_factory,
            bucket=self.settings.bucket,
            extension=self.extension,
            cache_control=str(upload_cfg["cache_control"]),
            placeholder_refresh_sec=float(upload_cfg["placeholder_refresh_sec"]),
            executor=executor,
            max_workers=int(upload_cfg.get("max_workers", 2)),
        )
        self.capture = CaptureSupervisor.from_cfg(
            capture_cfg,
            launcher=launcher,
            ffmpeg_path=ffmpeg,
            rec_path=rec,
            output_directory=self.settings.source_output_directory,
            enabled=self.settings.source_capture_enabled,
        )
        self.lifecycle = RecordingLifecycle(
            uploads=self.uploads,
            capture=self.capture,
            poller=poller or StabilityPoller(float(watch_cfg["poll_interval_sec"])),
            catalog=self.catalog,
            alerts=self.alerts,
            clipboard=self.clipboard,
            extension=self.extension,
            stable_checks=int(watch_cfg["stable_checks"]),
            verbose=dev_mode(self.cfg),
        )
        self._notifier_factory = notifier_factory
        self._notifier: ChangeNotifier | None = None
        self._threaded = threaded
        self.watching = False

    @property
    def watch_directory(self) -> Path:
        return Path(self.settings.watch_directory).expanduser()

    def start(self) -> bool:
        if self.watching:
            return True
        directory = self.watch_directory
        known = scan(directory, self.extension)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"[watcher] WARN: cannot create {directory}: {exc}", flush=True)
            return False

        if self._threaded:
            self.lifecycle.start()
        self.lifecycle.call(lambda: self.lifecycle.reset_known(known))
        if self._discover_devices:
            self.refresh_devices()

        notifier = self._notifier_factory(str(directory), self.lifecycle.notify_changes)
        try:
            notifier.start()
        except OSError as exc:
            print(f"[watcher] WARN: cannot watch {directory}: {exc}", flush=True)
            return False
        self._notifier = notifier
        self.watching = True
        print(
            f"[watcher] Watching {directory} for new {self.extension} files "
            f"({len(known)} already present)",
            flush=True,
        )
        return True

    def stop(self) -> None:
        notifier = self._notifier
        self._notifier = None
        if notifier is not None:
            notifier.stop()
        self.lifecycle.call(self.lifecycle.halt)
        if self.watching:
            print("[watcher] Stopped", flush=True)
        self.watching = False

    def restart(self) -> bool:
        self.stop()
        started = self.start()
        if started:
            self.alerts.show("Watcher restarted")
        return started

    def close(self) -> None:
        """Stop watching and release the worker threads."""

        self.stop()
        self.lifecycle.stop()
        self.uploads.shutdown(wait=False)
        self.alerts.close()

    def status(self) -> Dict[str, Any]:
        snapshot = self.lifecycle.call(self.lifecycle.snapshot)
        state = project_status(
            self.watching,
            snapshot["active_file"] is not None,
            snapshot["uploads_in_flight"] > 0,
        )
        return {
            "status": state.value,
            "watching": self.watching,
            "watch_directory": str(self.watch_directory),
            "bucket": self.settings.bucket,
            "source_capture_enabled": self.settings.source_capture_enabled,
            **snapshot,
        }

    def update_settings(self, **changes: Any) -> Settings:
        """Validate, persist and apply ``changes``; raises ``ValueError`` on bad input."""

        updated, errors = apply_changes(self.settings, changes)
        if errors:
            raise ValueError("; ".join(errors))
        previous_directory = self.settings.watch_directory

        def _apply() -> None:
            self.settings = updated
            self.uploads.configure(bucket=updated.bucket)
            self.capture.configure(
                enabled=updated.source_capture_enabled,
                output_directory=updated.source_output_directory,
            )
            self.catalog.apply_selection(
                updated.selected_screen_id,
                updated.selected_camera_id,
                updated.selected_audio_id,
            )

        self.lifecycle.call(_apply)
        save_settings(updated, self.settings_file)
        if self.watching and updated.watch_directory != previous_directory:
            print(f"[watcher] Watch directory changed to {updated.watch_directory}", flush=True)
            self.restart()
        return updated

    def refresh_devices(self) -> Dict[str, Any]:
        def _refresh() -> Dict[str, Any]:
            self.catalog.refresh(self._device_listing)
            self.catalog.apply_selection(
                self.settings.selected_screen_id,
                self.settings.selected_camera_id,
                self.settings.selected_audio_id,
            )
            return self.catalog.to_payload()

        return self.lifecycle.call(_refresh)

    def devices(self) -> Dict[str, Any]:
        return self.lifecycle.call(self.catalog.to_payload)
