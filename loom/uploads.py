#!/usr/bin/env python3
"""Two-phase publishing of a recording: placeholder page first, video second.

Both phases write the same object, ``<base_name><ext>``, so the shared URL
is valid the moment a recording starts. The real upload deletes the object
before writing the video, which means a viewer only ever sees the
placeholder, nothing, or the finished video.
"""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loom.object_store import ObjectStore, StoreError

CACHE_CONTROL = "no-cache, no-store, must-revalidate"
PLACEHOLDER_CONTENT_TYPE = "text/html"

VIDEO_CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/x-m4v",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".flv": "video/x-flv",
    ".ts": "video/mp2t",
}

PLACEHOLDER_KIND = "placeholder"
VIDEO_KIND = "video"


def destination_path(base_name: str, extension: str = ".mp4") -> str:
    return f"{base_name}{extension}"


def content_type_for(extension: str) -> str:
    return VIDEO_CONTENT_TYPES.get(extension.lower(), "application/octet-stream")


_PLACEHOLDER_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta http-equiv="Cache-Control" content="no-cache, no-store, must-revalidate">
    <title>Video Processing...</title>
    <style>
        body {{
            margin: 0;
            display: flex;
            justify-content: center;
            align-items: center;
            min-height: 100vh;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
        }}
        .container {{
            text-align: center;
            padding: 40px;
            background: white;
            border-radius: 20px;
            box-shadow: 0 20px 60px rgba(0,0,0,0.3);
            max-width: 500px;
        }}
        h1 {{ color: #333; margin: 0 0 20px 0; font-size: 28px; }}
        p {{ color: #666; line-height: 1.6; font-size: 16px; margin: 15px 0; }}
        .spinner {{
            width: 50px;
            height: 50px;
            margin: 30px auto;
            border: 5px solid #f3f3f3;
            border-top: 5px solid #667eea;
            border-radius: 50%;
            animation: spin 1s linear infinite;
        }}
        @keyframes spin {{
            0% {{ transform: rotate(0deg); }}
            100% {{ transform: rotate(360deg); }}
        }}
        .reload-btn {{
            margin-top: 30px;
            padding: 12px 30px;
            background: #667eea;
            color: white;
            border: none;
            border-radius: 8px;
            font-size: 16px;
            cursor: pointer;
        }}
        .reload-btn:hover {{ background: #5568d3; }}
    </style>
    <script>
        setTimeout(function() {{ location.reload(); }}, {refresh_ms});
    </script>
</head>
<body>
    <div class="container">
        <div class="spinner"></div>
        <h1>Video Processing</h1>
        <p>Your recording is being uploaded...</p>
        <p><strong>This page will auto-refresh</strong> when the video is ready.</p>
        <p style="font-size: 14px; color: #999;">Or click the button below to reload manually.</p>
        <button class="reload-btn" onclick="location.reload()">Reload Now</button>
    </div>
</body>
</html>
"""


def render_placeholder_html(refresh_sec: float = 5) -> str:
    refresh_ms = max(1000, int(float(refresh_sec) * 1000))
    return _PLACEHOLDER_TEMPLATE.format(refresh_ms=refresh_ms)


@dataclass(frozen=True)
class UploadResult:
    kind: str
    base_name: str
    destination: str
    ok: bool
    url: str = ""
    error: str = ""


class UploadCoordinator:
    """Run uploads on a worker pool and report every outcome exactly once."""

    def __init__(
        self,
        store_factory: Callable[[str], ObjectStore],
        *,
        bucket: str = "",
        extension: str = ".mp4",
        cache_control: str = CACHE_CONTROL,
        placeholder_refresh_sec: float = 5,
        on_complete: Callable[[UploadResult], None] | None = None,
        executor: ThreadPoolExecutor | None = None,
        max_workers: int = 2,
    ) -> None:
        self._store_factory = store_factory
        self.bucket = bucket.strip()
        self.extension = extension
        self.cache_control = cache_control
        self.placeholder_refresh_sec = placeholder_refresh_sec
        self._on_complete = on_complete
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix="loom-upload"
        )
        # destination -> placeholder job the real upload must follow
        self._pending: dict[str, Future] = {}
        self._lock = threading.Lock()

    def set_completion_callback(self, callback: Callable[[UploadResult], None]) -> None:
        self._on_complete = callback

    def configure(self, *, bucket: str | None = None) -> None:
        if bucket is not None:
            self.bucket = bucket.strip()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    def upload_placeholder(self, base_name: str) -> Future | None:
        if not self.bucket:
            print("[upload] No bucket configured, skipping placeholder", flush=True)
            return None
        destination = destination_path(base_name, self.extension)
        store = self._store_factory(self.bucket)
        print(f"[upload] Uploading placeholder for {destination}", flush=True)
        future = self._executor.submit(
            self._run, PLACEHOLDER_KIND, base_name, destination, store,
            lambda: self._write_placeholder(store, destination),
        )
        with self._lock:
            self._pending[destination] = future
        future.add_done_callback(lambda done: self._forget(destination, done))
        return future

    def upload_real_video(self, path: str | Path, base_name: str) -> Future | None:
        if not self.bucket:
            print("[upload] No bucket configured, skipping upload", flush=True)
            return None
        destination = destination_path(base_name, self.extension)
        store = self._store_factory(self.bucket)
        print(f"[upload] Uploading real video: {path} -> gs://{self.bucket}/{destination}", flush=True)
        with self._lock:
            placeholder = self._pending.get(destination)
        return self._executor.submit(
            self._run, VIDEO_KIND, base_name, destination, store,
            lambda: self._write_video(store, Path(path), destination, placeholder),
        )

    def _forget(self, destination: str, future: Future) -> None:
        with self._lock:
            if self._pending.get(destination) is future:
                del self._pending[destination]

    def _write_placeholder(self, store: ObjectStore, destination: str) -> None:
        html = render_placeholder_html(self.placeholder_refresh_sec).encode("utf-8")
        store.put_bytes(html, destination, PLACEHOLDER_CONTENT_TYPE, self.cache_control)
        store.set_public_read(destination)

    def _write_video(
        self,
        store: ObjectStore,
        path: Path,
        destination: str,
        placeholder: Future | None = None,
    ) -> None:
        # The placeholder job was submitted first, so it is already running or done.
        if placeholder is not None:
            wait([placeholder])
        store.delete(destination)
        store.put_file(path, destination, content_type_for(path.suffix or self.extension), self.cache_control)
        store.set_public_read(destination)

    def _run(
        self,
        kind: str,
        base_name: str,
        destination: str,
        store: ObjectStore,
        operation: Callable[[], None],
    ) -> UploadResult:
        try:
            operation()
        except StoreError as exc:
            result = UploadResult(kind, base_name, destination, ok=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001 - every upload must report back
            result = UploadResult(kind, base_name, destination, ok=False, error=repr(exc))
        else:
            result = UploadResult(kind, base_name, destination, ok=True, url=store.public_url(destination))

        if result.ok:
            print(f"[upload] {kind} uploaded: {result.url}", flush=True)
        else:
            print(f"[upload] WARN: {kind} upload failed for {destination}: {result.error}", flush=True)

        if self._on_complete is not None:
            try:
                self._on_complete(result)
            except Exception as exc:  # noqa: BLE001 - diagnostics only
                print(f"[upload] WARN: completion callback failed: {exc!r}", flush=True)
        return result
