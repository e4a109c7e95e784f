"""Subprocess launching for capture tools plus executable discovery."""
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, Mapping, Sequence

ExitCallback = Callable[[int], None]

_SEARCH_DIRS = ("/opt/homebrew/bin", "/usr/local/bin", "/usr/bin")


def resolve_executable(name: str, configured: str | None = None) -> str:
    """Locate ``name``: configured path, then PATH, then the usual install dirs."""

    if configured:
        candidate = Path(configured).expanduser()
        if candidate.is_file():
            return str(candidate)
        print(f"[loom] WARN: configured {name} not found at {candidate}", flush=True)
    found = shutil.which(name)
    if found:
        return found
    for directory in _SEARCH_DIRS:
        candidate = Path(directory) / name
        if candidate.is_file():
            return str(candidate)
    return str(Path(_SEARCH_DIRS[0]) / name)


class ProcessHandle:
    """Running capture process wrapped around :class:`subprocess.Popen`."""

    def __init__(self, name: str, proc: subprocess.Popen) -> None:
        self.name = name
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    def is_running(self) -> bool:
        return self._proc.poll() is None

    def send_signal(self, sig: int) -> None:
        if not self.is_running():
            return
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> int:
        return self._proc.wait(timeout=timeout)


class SubprocessLauncher:
    """Start processes without blocking and report their exit asynchronously."""

    def launch(
        self,
        name: str,
        command: Sequence[str],
        *,
        on_exit: ExitCallback | None = None,
        env: Mapping[str, str] | None = None,
        log_path: Path | None = None,
    ) -> ProcessHandle:
        """Spawn ``command``; raises ``OSError`` when it cannot be started."""

        merged_env = os.environ.copy()
        if env:
            merged_env.update(env)

        log_handle = None
        if log_path is not None:
            try:
                log_handle = open(log_path, "ab")
            except OSError as exc:
                print(f"[capture] WARN: cannot open log {log_path}: {exc}", flush=True)
        try:
            proc = subprocess.Popen(
                list(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_handle if log_handle is not None else subprocess.DEVNULL,
                start_new_session=True,
                env=merged_env,
            )
        finally:
            if log_handle is not None:
                log_handle.close()

        handle = ProcessHandle(name, proc)
        waiter = threading.Thread(
            target=self._wait_for_exit,
            args=(handle, on_exit),
            name=f"loom-{name}-exit",
            daemon=True,
        )
        waiter.start()
        return handle

    @staticmethod
    def _wait_for_exit(handle: ProcessHandle, on_exit: ExitCallback | None) -> None:
        code = handle.wait()
        if on_exit is None:
            return
        try:
            on_exit(code)
        except Exception as exc:  # noqa: BLE001 - diagnostics only
            print(f"[capture] WARN: exit callback for {handle.name} failed: {exc!r}", flush=True)
