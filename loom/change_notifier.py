"""Directory change notifications backed by watchdog.

The notifier does not classify events: created, modified, moved and deleted
paths are all forwarded as a batch, and the lifecycle re-checks existence
itself.
"""
from __future__ import annotations

import os
from typing import Callable, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

ChangeCallback = Callable[[Sequence[str]], None]


class _BatchHandler(FileSystemEventHandler):
    def __init__(self, callback: ChangeCallback) -> None:
        super().__init__()
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths: list[str] = []
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if not raw:
                continue
            path = os.fsdecode(raw)
            if path not in paths:
                paths.append(path)
        if not paths:
            return
        try:
            self._callback(tuple(paths))
        except Exception as exc:  # noqa: BLE001 - keep the observer thread alive
            print(f"[notifier] WARN: change callback failed: {exc!r}", flush=True)


class ChangeNotifier:
    """Subscribe ``callback`` to non-recursive changes under ``directory``."""

    def __init__(
        self,
        directory: str,
        callback: ChangeCallback,
        *,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.directory = directory
        self._callback = callback
        self._observer_factory = observer_factory
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = self._observer_factory()
        observer.schedule(_BatchHandler(self._callback), self.directory, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        print(f"[notifier] Watching {self.directory}", flush=True)

    def stop(self, timeout: float = 2.0) -> None:
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=timeout)
        print(f"[notifier] Stopped watching {self.directory}", flush=True)


def subscribe(directory: str, callback: ChangeCallback) -> ChangeNotifier:
    notifier = ChangeNotifier(directory, callback)
    notifier.start()
    return notifier
