"""Periodic size sampling for the file that is currently being recorded."""
from __future__ import annotations

import os
import threading
from typing import Callable, Optional

SampleCallback = Callable[[Optional[int]], None]
SizeReader = Callable[[str], Optional[int]]


def read_size(path: str) -> int | None:
    """Return the byte size of ``path`` or ``None`` when it cannot be read."""

    try:
        return os.stat(path).st_size
    except OSError:
        return None


class StabilityPoller:
    """Sample a file's size every ``interval`` seconds on a helper thread.

    Only one timer is live at a time: ``start`` always stops the previous one.
    The poller never interprets samples, it only forwards them.
    """

    def __init__(self, interval: float = 1.0, *, size_reader: SizeReader = read_size) -> None:
        self.interval = max(0.01, float(interval))
        self._size_reader = size_reader
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._stop_event is not None

    def start(self, path: str, on_sample: SampleCallback) -> None:
        self.stop()
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(path, on_sample, stop_event),
            name="loom-poller",
            daemon=True,
        )
        with self._lock:
            self._stop_event = stop_event
            self._thread = thread
        thread.start()

    def stop(self) -> None:
        with self._lock:
            stop_event = self._stop_event
            thread = self._thread
            self._stop_event = None
            self._thread = None
        if stop_event is None:
            return
        stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1.0)

    def _run(self, path: str, on_sample: SampleCallback, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            size = self._size_reader(path)
            if stop_event.is_set():
                break
            try:
                on_sample(size)
            except Exception as exc:  # noqa: BLE001 - keep ticking
                print(f"[poller] WARN: sample callback failed: {exc!r}", flush=True)
