"""Status projection shown in the menu, the CLI and the status API."""
from __future__ import annotations

from enum import Enum


class WatchStatus(str, Enum):
    WATCHING = "Watching"
    RECORDING_DETECTED = "Recording detected"
    UPLOADING = "Uploading"
    STOPPED = "Stopped"


def project_status(watching: bool, recording_active: bool, uploading: bool) -> WatchStatus:
    """Uploading wins over an active recording, which wins over Stopped/Watching."""

    if uploading:
        return WatchStatus.UPLOADING
    if recording_active:
        return WatchStatus.RECORDING_DETECTED
    if not watching:
        return WatchStatus.STOPPED
    return WatchStatus.WATCHING
