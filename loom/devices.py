"""Enumerate screens, cameras and microphones through ffmpeg's avfoundation listing."""

from __future__ import annotations

import argparse
import re
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List

from loom.config import get_cfg
from loom.processes import resolve_executable
from loom.settings import load_settings

NO_CAMERA = "none"
FALLBACK_MICROPHONE = "Built-in Microphone"

_DEVICE_LINE = re.compile(r"\[(?P<index>\d+)\]\s+(?P<name>.+?)\s*$")
_SCREEN_NAME = re.compile(r"^capture screen\b", re.IGNORECASE)


class DeviceKind(str, Enum):
    SCREEN = "screen"
    CAMERA = "camera"
    MICROPHONE = "microphone"


@dataclass(frozen=True)
class Device:
    kind: DeviceKind
    identifier: str
    name: str
    index: int | None

    def to_payload(self) -> dict[str, object]:
        return {"id": self.identifier, "name": self.name, "index": self.index}


def run_listing(ffmpeg_path: str) -> str:
    command = [ffmpeg_path, "-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""]
    try:
        result = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except FileNotFoundError:
        print(f"[devices] ffmpeg not available at {ffmpeg_path}", flush=True)
        return ""
    except subprocess.SubprocessError as exc:
        print(f"[devices] device listing failed: {exc}", flush=True)
        return ""
    # ffmpeg prints the listing on stderr and exits non-zero because of the empty input.
    return "\n".join(part for part in (result.stderr, result.stdout) if part)


def parse_listing(output: str) -> tuple[List[Device], List[Device], List[Device]]:
    """Split an avfoundation device listing into screens, cameras and microphones."""

    screens: List[Device] = []
    cameras: List[Device] = []
    microphones: List[Device] = []
    section: str | None = None
    for line in output.splitlines():
        if "AVFoundation video devices:" in line:
            section = "video"
            continue
        if "AVFoundation audio devices:" in line:
            section = "audio"
            continue
        if section is None:
            continue
        if "AVFoundation" not in line:
            if section == "audio":
                break
            continue
        match = _DEVICE_LINE.search(line)
        if not match:
            continue
        index = int(match.group("index"))
        name = match.group("name")
        if section == "audio":
            microphones.append(Device(DeviceKind.MICROPHONE, name, name, index))
        elif _SCREEN_NAME.match(name):
            screens.append(Device(DeviceKind.SCREEN, name, name, index))
        else:
            cameras.append(Device(DeviceKind.CAMERA, name, name, index))
    return screens, cameras, microphones


class DeviceCatalog:
    """Selectable capture devices; selections are kept by identifier."""

    def __init__(
        self,
        screens: Iterable[Device] = (),
        cameras: Iterable[Device] = (),
        microphones: Iterable[Device] = (),
    ) -> None:
        self._devices: Dict[DeviceKind, List[Device]] = {kind: [] for kind in DeviceKind}
        self._selected: Dict[DeviceKind, str | None] = {kind: None for kind in DeviceKind}
        self._replace(list(screens), list(cameras), list(microphones))

    @classmethod
    def from_listing(cls, output: str) -> "DeviceCatalog":
        return cls(*parse_listing(output))

    def _replace(
        self, screens: List[Device], cameras: List[Device], microphones: List[Device]
    ) -> None:
        if not microphones:
            microphones = [Device(DeviceKind.MICROPHONE, FALLBACK_MICROPHONE, FALLBACK_MICROPHONE, None)]
        self._devices[DeviceKind.SCREEN] = screens
        self._devices[DeviceKind.CAMERA] = cameras
        self._devices[DeviceKind.MICROPHONE] = microphones
        self._normalize_selection()

    def refresh(self, listing: Callable[[], str] | str) -> None:
        output = listing if isinstance(listing, str) else listing()
        self._replace(*parse_listing(output))
        print(
            "[devices] Found "
            f"{len(self._devices[DeviceKind.SCREEN])} screens, "
            f"{len(self._devices[DeviceKind.CAMERA])} cameras, "
            f"{len(self._devices[DeviceKind.MICROPHONE])} microphones",
            flush=True,
        )

    def _find(self, kind: DeviceKind, identifier: str | None) -> Device | None:
        if identifier is None:
            return None
        for device in self._devices[kind]:
            if device.identifier == identifier:
                return device
        return None

    def _normalize_selection(self) -> None:
        for kind in (DeviceKind.SCREEN, DeviceKind.MICROPHONE):
            if self._find(kind, self._selected[kind]) is None:
                devices = self._devices[kind]
                self._selected[kind] = devices[0].identifier if devices else None
        # An unplugged camera falls back to "No Camera", never to another camera.
        if self._find(DeviceKind.CAMERA, self._selected[DeviceKind.CAMERA]) is None:
            self._selected[DeviceKind.CAMERA] = None

    def devices(self, kind: DeviceKind) -> List[Device]:
        return list(self._devices[kind])

    def camera_available(self) -> bool:
        return bool(self._devices[DeviceKind.CAMERA])

    def select(self, kind: DeviceKind, identifier: str | None) -> bool:
        if kind is DeviceKind.CAMERA and identifier in (None, NO_CAMERA):
            self._selected[kind] = None
            return True
        if self._find(kind, identifier) is None:
            return False
        self._selected[kind] = identifier
        return True

    def selected(self, kind: DeviceKind) -> Device | None:
        return self._find(kind, self._selected[kind])

    def apply_selection(
        self, screen_id: str | None, camera_id: str | None, microphone_id: str | None
    ) -> None:
        """Restore saved selections; unknown identifiers keep the defaults."""

        if screen_id is not None:
            self.select(DeviceKind.SCREEN, screen_id)
        self.select(DeviceKind.CAMERA, camera_id)
        if microphone_id is not None:
            self.select(DeviceKind.MICROPHONE, microphone_id)

    def selection(self) -> Dict[str, str | None]:
        return {kind.value: self._selected[kind] for kind in DeviceKind}

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {}
        for kind in DeviceKind:
            payload[kind.value] = {
                "devices": [device.to_payload() for device in self._devices[kind]],
                "selected": self._selected[kind],
            }
        return payload


def discover(ffmpeg_path: str) -> DeviceCatalog:
    catalog = DeviceCatalog()
    catalog.refresh(lambda: run_listing(ffmpeg_path))
    return catalog


__all__ = ["Device", "DeviceCatalog", "DeviceKind", "NO_CAMERA", "discover", "parse_listing"]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="List capture devices known to ffmpeg")
    parser.add_argument("--ffmpeg", help="ffmpeg binary (defaults to the configured one)")
    args = parser.parse_args(argv)

    cfg = get_cfg()
    ffmpeg = args.ffmpeg or resolve_executable("ffmpeg", cfg["capture"].get("ffmpeg_path"))
    catalog = discover(ffmpeg)
    settings = load_settings()
    catalog.apply_selection(
        settings.selected_screen_id, settings.selected_camera_id, settings.selected_audio_id
    )
    for kind in DeviceKind:
        print(f"{kind.value}s:")
        devices = catalog.devices(kind)
        if kind is DeviceKind.CAMERA:
            marker = "*" if catalog.selected(kind) is None else " "
            print(f"  {marker} {NO_CAMERA}: No Camera")
        selected = catalog.selected(kind)
        for device in devices:
            marker = "*" if selected is not None and device == selected else " "
            index = "-" if device.index is None else device.index
            print(f"  {marker} [{index}] {device.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

