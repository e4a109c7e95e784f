"""Events consumed by the lifecycle loop.

Every collaborator thread (watchdog observer, poller, process waiters,
upload workers) talks to the lifecycle only by posting one of these.
"""
from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from loom.uploads import UploadResult


@dataclass(frozen=True)
class FileDetected:
    paths: Tuple[str, ...]


@dataclass(frozen=True)
class PollSample:
    # generation ties the sample to the recording that armed the poller
    generation: int
    size: Optional[int]


@dataclass(frozen=True)
class CaptureExited:
    kind: str
    exit_code: int


@dataclass(frozen=True)
class UploadCompleted:
    result: UploadResult


@dataclass(frozen=True)
class Call:
    """Run ``func`` on the lifecycle thread; used for settings and halt requests."""

    func: Callable[[], Any]
    done: Optional[Future] = None


Event = FileDetected | PollSample | CaptureExited | UploadCompleted | Call
