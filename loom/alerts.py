#!/usr/bin/env python3
"""User-visible alerts and the clipboard sink for shareable URLs."""

import json
import queue
import shutil
import socket
import subprocess
import threading
import time
from typing import Any, Callable, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

_CLIPBOARD_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
)


class AlertDispatcher:
    """Log alerts and optionally forward them to a webhook."""

    def __init__(
        self,
        *,
        webhook_cfg: dict[str, Any] | None = None,
        run_async: bool = True,
        queue_size: int = 32,
    ) -> None:
        self.webhook_cfg = webhook_cfg or {}
        self.hostname = socket.gethostname()
        self._run_async = run_async
        self._queue: queue.Queue[dict[str, Any] | None] | None = None
        self._worker: threading.Thread | None = None
        self._queue_size = max(1, int(queue_size or 32))
        self.history: list[dict[str, Any]] = []

        self.webhook_url = str(self.webhook_cfg.get("url") or "").strip()
        self.webhook_method = (
            str(self.webhook_cfg.get("method", "POST")) or "POST"
        ).upper()
        self.webhook_headers = self._normalise_headers(self.webhook_cfg.get("headers"))
        self.webhook_timeout = float(self.webhook_cfg.get("timeout_sec", 5.0) or 5.0)

        if self._run_async and self.webhook_url:
            self._queue = queue.Queue(maxsize=self._queue_size)
            self._worker = threading.Thread(
                target=self._dispatch_loop,
                name="alert-dispatcher",
                daemon=True,
            )
            self._worker.start()

    @staticmethod
    def _normalise_headers(headers: Any) -> dict[str, str]:
        if isinstance(headers, dict):
            return {
                str(key): str(value)
                for key, value in headers.items()
                if str(key).strip()
            }
        return {}

    def show(self, message: str, *, level: str = "info", **details: Any) -> None:
        alert = {"message": message, "level": level, **details}
        self.history.append(alert)
        del self.history[:-50]
        prefix = "WARN: " if level == "error" else ""
        print(f"[alert] {prefix}{message}", flush=True)

        if not self.webhook_url:
            return

        payload = {
            "alert": alert,
            "host": self.hostname,
            "generated_at": time.time(),
        }
        if self._queue is None:
            self._send_webhook(payload)
            return
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            print("[alerts] WARN: dropping alert payload (queue full)", flush=True)

    def close(self, timeout: float = 2.0) -> None:
        if self._queue is None or self._worker is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            return
        self._worker.join(timeout=timeout)

    def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            payload = self._queue.get()
            if payload is None:
                self._queue.task_done()
                break
            try:
                self._send_webhook(payload)
            except Exception as exc:
                print(
                    f"[alerts] WARN: webhook dispatch raised unexpected error: {exc}",
                    flush=True,
                )
            finally:
                self._queue.task_done()

    def _send_webhook(self, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        request = Request(
            self.webhook_url,
            data=body,
            method=self.webhook_method,
            headers={"Content-Type": "application/json", **self.webhook_headers},
        )
        try:
            with urlopen(request, timeout=self.webhook_timeout) as response:
                response.read()
        except (URLError, OSError) as exc:
            print(f"[alerts] WARN: webhook delivery failed: {exc}", flush=True)


class ClipboardPublisher:
    """Copy text to the desktop clipboard with whichever helper is installed."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        commands: Sequence[Sequence[str]] = _CLIPBOARD_COMMANDS,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.enabled = enabled
        self._commands = [tuple(cmd) for cmd in commands]
        self._which = which
        self.last_published: str | None = None

    def _command(self) -> tuple[str, ...] | None:
        for cmd in self._commands:
            if self._which(cmd[0]):
                return cmd
        return None

    def publish(self, text: str) -> bool:
        self.last_published = text
        if not self.enabled:
            print(f"[alerts] URL: {text}", flush=True)
            return False
        cmd = self._command()
        if cmd is None:
            print(f"[alerts] no clipboard helper found; URL: {text}", flush=True)
            return False
        try:
            subprocess.run(list(cmd), input=text.encode("utf-8"), check=True, timeout=5.0)
        except (OSError, subprocess.SubprocessError) as exc:
            print(f"[alerts] WARN: clipboard copy failed ({exc}); URL: {text}", flush=True)
            return False
        return True


def build_alerts(cfg: dict[str, Any] | None) -> tuple[AlertDispatcher, ClipboardPublisher]:
    cfg = cfg if isinstance(cfg, dict) else {}
    webhook_cfg = cfg.get("webhook")
    dispatcher = AlertDispatcher(webhook_cfg=webhook_cfg if isinstance(webhook_cfg, dict) else None)
    clipboard = ClipboardPublisher(enabled=bool(cfg.get("clipboard", True)))
    return dispatcher, clipboard
