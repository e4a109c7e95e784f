#!/usr/bin/env python3
"""Object store backends used by the upload coordinator."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

# gsutil answers a delete of a missing object with one of these.
_NOT_FOUND_MARKERS = ("No URLs matched", "NotFoundException", "404")


class StoreError(RuntimeError):
    """Raised when an object store operation fails."""


class ObjectStore:
    """Minimal protocol for object store backends."""

    def put_bytes(
        self, data: bytes, destination: str, content_type: str, cache_control: str
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def put_file(
        self, path: Path, destination: str, content_type: str, cache_control: str
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete(self, destination: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def set_public_read(self, destination: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def public_url(self, destination: str) -> str:  # pragma: no cover - interface only
        raise NotImplementedError


@dataclass
class GsutilStore(ObjectStore):
    bucket: str
    gsutil_path: str = "gsutil"
    url_template: str = "https://storage.googleapis.com/{bucket}/{path}"
    timeout: float | None = None

    def _uri(self, destination: str) -> str:
        return f"gs://{self.bucket}/{destination.lstrip('/')}"

    def _run(self, args: Sequence[str], *, data: bytes | None = None) -> subprocess.CompletedProcess:
        cmd = [self.gsutil_path, *args]
        try:
            return subprocess.run(
                cmd,
                input=data,
                capture_output=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise StoreError(f"gsutil not available at {self.gsutil_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise StoreError(f"gsutil timed out: {' '.join(args)}") from exc
        except subprocess.CalledProcessError as exc:
            detail = _decode(exc.stderr) or _decode(exc.stdout) or f"exit {exc.returncode}"
            raise StoreError(detail) from exc

    @staticmethod
    def _headers(content_type: str, cache_control: str) -> list[str]:
        return ["-h", f"Content-Type:{content_type}", "-h", f"Cache-Control:{cache_control}"]

    def put_bytes(self, data: bytes, destination: str, content_type: str, cache_control: str) -> None:
        self._run(
            [*self._headers(content_type, cache_control), "cp", "-", self._uri(destination)],
            data=data,
        )

    def put_file(self, path: Path, destination: str, content_type: str, cache_control: str) -> None:
        if not Path(path).exists():
            raise StoreError(f"missing file: {path}")
        self._run([*self._headers(content_type, cache_control), "cp", str(path), self._uri(destination)])

    def delete(self, destination: str) -> None:
        try:
            self._run(["rm", self._uri(destination)])
        except StoreError as exc:
            if any(marker in str(exc) for marker in _NOT_FOUND_MARKERS):
                print(f"[store] nothing to delete at {self._uri(destination)}", flush=True)
                return
            raise

    def set_public_read(self, destination: str) -> None:
        self._run(["acl", "ch", "-u", "AllUsers:R", self._uri(destination)])

    def public_url(self, destination: str) -> str:
        return self.url_template.format(bucket=self.bucket, path=destination.lstrip("/"))


def _decode(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return raw.strip()
