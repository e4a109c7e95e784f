#!/usr/bin/env python3
"""
Recording lifecycle: detection, stability, capture bracketing and uploads.

All state lives on one ``RecordingLifecycle`` object and is only touched on
its consumer thread. Collaborators run elsewhere (watchdog observer, poller
thread, process waiters, upload workers) and report back by posting typed
events, so the handlers below never need a lock.

Phases:
    IDLE -> DETECTED -> POLLING -> FINALIZING -> IDLE

A recording is claimed on first sight and never re-triggers. Poll samples
carry the generation of the recording that armed the poller; a sample left
over from an earlier recording is dropped instead of being counted against
the new one.
"""
from __future__ import annotations

import os
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from loom.alerts import AlertDispatcher, ClipboardPublisher
from loom.capture import CaptureSession, CaptureSupervisor
from loom.devices import DeviceCatalog, DeviceKind
from loom.events import Call, CaptureExited, Event, FileDetected, PollSample, UploadCompleted
from loom.path_scanner import has_extension
from loom.stability_poller import StabilityPoller
from loom.uploads import PLACEHOLDER_KIND, VIDEO_KIND, UploadCoordinator, UploadResult

_STOP = object()


class Phase(str, Enum):
    IDLE = "idle"
    DETECTED = "detected"
    POLLING = "polling"
    FINALIZING = "finalizing"


@dataclass
class ActiveRecording:
    path: str
    file_name: str
    base_name: str
    generation: int
    last_size: int = -1
    stable_count: int = 0
    session: Optional[CaptureSession] = None


class RecordingLifecycle:
    """Single-recording state machine driven by a serialized event queue."""

    def __init__(
        self,
        *,
        uploads: UploadCoordinator,
        capture: CaptureSupervisor,
        poller: StabilityPoller,
        catalog: DeviceCatalog | None = None,
        alerts: AlertDispatcher | None = None,
        clipboard: ClipboardPublisher | None = None,
        extension: str = ".mp4",
        stable_checks: int = 2,
        exists: Callable[[str], bool] = os.path.exists,
        verbose: bool = False,
    ) -> None:
        self.uploads = uploads
        self.capture = capture
        self.poller = poller
        self.catalog = catalog
        self.alerts = alerts or AlertDispatcher(run_async=False)
        self.clipboard = clipboard or ClipboardPublisher(enabled=False)
        self.extension = extension
        self.stable_checks = max(1, int(stable_checks))
        self._exists = exists
        self.verbose = verbose

        self.known_files: set[str] = set()
        self.active: ActiveRecording | None = None
        self.phase = Phase.IDLE
        self.uploads_in_flight = 0
        self.last_url: str | None = None
        self._generation = 0

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: threading.Thread | None = None

        self.uploads.set_completion_callback(lambda result: self.post(UploadCompleted(result)))
        self.capture.set_exit_listener(lambda kind, code: self.post(CaptureExited(kind, code)))

    # ------------------------------------------------------------------
    # Loop plumbing
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name="loom-lifecycle", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def post(self, event: Event) -> None:
        self._queue.put(event)

    def notify_changes(self, paths: Iterable[str]) -> None:
        self.post(FileDetected(tuple(paths)))

    def process_pending(self) -> int:
        """Drain queued events on the calling thread; returns how many ran."""

        handled = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if event is _STOP:
                continue
            self._dispatch(event)
            handled += 1

    def call(self, func: Callable[[], Any], timeout: float | None = 10.0) -> Any:
        """Run ``func`` on the lifecycle thread and return its result."""

        if not self.running or self._thread is threading.current_thread():
            return func()
        done: Future = Future()
        self.post(Call(func, done))
        return done.result(timeout=timeout)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                break
            self._dispatch(event)

    def _dispatch(self, event: Event) -> None:
        try:
            self.handle(event)
        except Exception as exc:  # noqa: BLE001 - keep the loop alive
            print(f"[lifecycle] WARN: {type(event).__name__} handler failed: {exc!r}", flush=True)

    def handle(self, event: Event) -> None:
        if isinstance(event, FileDetected):
            for path in event.paths:
                self._consider(path)
        elif isinstance(event, PollSample):
            self._on_sample(event)
        elif isinstance(event, CaptureExited):
            print(f"[capture] {event.kind} capture stopped (exit: {event.exit_code})", flush=True)
        elif isinstance(event, UploadCompleted):
            self._on_upload_completed(event.result)
        elif isinstance(event, Call):
            self._on_call(event)
        else:
            print(f"[lifecycle] WARN: unknown event {event!r}", flush=True)

    @staticmethod
    def _on_call(event: Call) -> None:
        done = event.done
        try:
            result = event.func()
        except Exception as exc:  # noqa: BLE001 - handed back to the caller
            if done is None:
                raise
            done.set_exception(exc)
            return
        if done is not None:
            done.set_result(result)

    # ------------------------------------------------------------------
    # Watcher-facing operations (run on the lifecycle thread)
    # ------------------------------------------------------------------
    def reset_known(self, names: Iterable[str]) -> None:
        self.known_files = set(names)

    def halt(self) -> None:
        """Cancel polling, drop the active slot and stop any capture session."""

        self.poller.stop()
        if self.capture.stop_session():
            self.alerts.show("Source capture saved")
        if self.active is not None:
            print(f"[lifecycle] Dropping active recording {self.active.file_name}", flush=True)
        self.active = None
        self.phase = Phase.IDLE

    def snapshot(self) -> dict[str, Any]:
        active = self.active
        return {
            "phase": self.phase.value,
            "active_file": active.file_name if active else None,
            "active_path": active.path if active else None,
            "last_size": active.last_size if active else None,
            "stable_count": active.stable_count if active else 0,
            "capturing": self.capture.capturing,
            "uploads_in_flight": self.uploads_in_flight,
            "known_files": len(self.known_files),
            "last_url": self.last_url,
        }

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------
    def _consider(self, path: str) -> None:
        name = os.path.basename(path)
        if not name or not has_extension(name, self.extension):
            return
        if name in self.known_files:
            return
        if self.active is not None:
            if self.verbose:
                print(f"[lifecycle] Ignoring {name}: {self.active.file_name} is still recording", flush=True)
            return
        if not self._exists(path):
            # delete events and stale paths from the notifier
            return
        self._begin(path, name)

    def _begin(self, path: str, name: str) -> None:
        self.known_files.add(name)
        self._generation += 1
        base_name = name[: -len(self.extension)] if self.extension else os.path.splitext(name)[0]
        record = ActiveRecording(
            path=path,
            file_name=name,
            base_name=base_name,
            generation=self._generation,
        )
        self.active = record
        self.phase = Phase.DETECTED
        print(f"[lifecycle] New recording detected: {name}", flush=True)

        self.uploads.upload_placeholder(base_name)

        if self.capture.enabled:
            screen, camera, microphone = self._selected_devices()
            record.session = self.capture.start_session(base_name, screen, camera, microphone)

        generation = record.generation
        self.poller.start(path, lambda size: self.post(PollSample(generation, size)))
        self.phase = Phase.POLLING

    def _selected_devices(self):
        if self.catalog is None:
            return None, None, None
        return (
            self.catalog.selected(DeviceKind.SCREEN),
            self.catalog.selected(DeviceKind.CAMERA),
            self.catalog.selected(DeviceKind.MICROPHONE),
        )

    # ------------------------------------------------------------------
    # Stability
    # ------------------------------------------------------------------
    def _on_sample(self, sample: PollSample) -> None:
        record = self.active
        if record is None or sample.generation != record.generation:
            return
        if sample.size is None:
            self._abort(record, "file is no longer accessible")
            return

        if sample.size == record.last_size:
            record.stable_count += 1
        else:
            record.last_size = sample.size
            record.stable_count = 1
        if self.verbose:
            print(
                f"[poller] {record.file_name}: {sample.size} bytes "
                f"(stable {record.stable_count}/{self.stable_checks})",
                flush=True,
            )
        if record.stable_count >= self.stable_checks:
            self._finalize(record)

    def _abort(self, record: ActiveRecording, reason: str) -> None:
        print(f"[lifecycle] WARN: {record.file_name} {reason}; abandoning upload", flush=True)
        self.poller.stop()
        self.capture.stop_session()
        self.active = None
        self.phase = Phase.IDLE

    def _finalize(self, record: ActiveRecording) -> None:
        self.phase = Phase.FINALIZING
        print(f"[lifecycle] Recording finished: {record.file_name} ({record.last_size} bytes)", flush=True)
        self.poller.stop()
        if self.capture.stop_session():
            self.alerts.show("Source capture saved", folder=str(self.capture.source_folder(record.base_name)))

        self.uploads_in_flight += 1
        if self.uploads.upload_real_video(record.path, record.base_name) is None:
            self.uploads_in_flight -= 1
        else:
            self.alerts.show("Uploading video...", file=record.file_name)

        self.active = None
        self.phase = Phase.IDLE

    # ------------------------------------------------------------------
    # Upload completions
    # ------------------------------------------------------------------
    def _on_upload_completed(self, result: UploadResult) -> None:
        if result.kind == PLACEHOLDER_KIND:
            if not result.ok:
                return
            self.last_url = result.url
            if self.clipboard.publish(result.url):
                self.alerts.show("URL copied to clipboard", url=result.url)
            else:
                self.alerts.show(f"Share URL: {result.url}", url=result.url)
            return

        if result.kind == VIDEO_KIND:
            self.uploads_in_flight = max(0, self.uploads_in_flight - 1)
            if result.ok:
                self.last_url = result.url
                self.alerts.show("Video uploaded!", url=result.url)
            else:
                self.alerts.show("Upload failed", level="error", error=result.error)
