#!/usr/bin/env python3
"""
Raw source capture that runs alongside a recording.

Why this file exists:
- Editors want the unmixed screen, webcam and microphone tracks next to the
  composited recording.
- The tracks must cover the same window as the recording, so the lifecycle
  starts a session on detection and stops it when the file is stable.

Each track is a ``CaptureSource``: the command to run plus the signal that
stops it cleanly. ffmpeg's screen grab needs SIGTERM to finalize the mp4;
the webcam and ``rec`` take SIGINT. Anything still alive after the grace
period is killed.
"""
from __future__ import annotations

import signal
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from loom.devices import Device
from loom.processes import ProcessHandle, SubprocessLauncher

Scheduler = Callable[[float, Callable[[], None]], object]
ExitListener = Callable[[str, int], None]


class SourceKind(str, Enum):
    SCREEN = "screen"
    CAMERA = "camera"
    AUDIO = "audio"


@dataclass(frozen=True)
class CaptureSource:
    kind: SourceKind
    command: tuple[str, ...]
    output: Path
    stop_signal: int
    env: Mapping[str, str] = field(default_factory=dict)

    def start(self, launcher: SubprocessLauncher, on_exit: Callable[[int], None]) -> ProcessHandle:
        return launcher.launch(
            self.kind.value,
            self.command,
            on_exit=on_exit,
            env=dict(self.env) or None,
            log_path=self.output.with_suffix(".log"),
        )

    def stop(self, handle: ProcessHandle) -> None:
        handle.send_signal(self.stop_signal)


def screen_source(ffmpeg: str, screen: Device | None, folder: Path, framerate: int = 30) -> CaptureSource:
    output = folder / "screen.mp4"
    device = str(screen.index) if screen is not None and screen.index is not None else "Capture screen 0"
    command = (
        ffmpeg,
        "-f", "avfoundation",
        "-framerate", str(framerate),
        "-capture_cursor", "1",
        "-capture_mouse_clicks", "1",
        "-i", f"{device}:none",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-y",
        str(output),
    )
    return CaptureSource(SourceKind.SCREEN, command, output, signal.SIGTERM)


def camera_source(
    ffmpeg: str,
    camera: Device,
    folder: Path,
    framerate: int = 30,
    video_size: str = "1280x720",
) -> CaptureSource:
    output = folder / "webcam.mp4"
    device = str(camera.index) if camera.index is not None else camera.identifier
    command = (
        ffmpeg,
        "-f", "avfoundation",
        "-framerate", str(framerate),
        "-video_size", video_size,
        "-i", f"{device}:",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-y",
        str(output),
    )
    return CaptureSource(SourceKind.CAMERA, command, output, signal.SIGINT)


def audio_source(
    rec: str,
    microphone: Device | None,
    folder: Path,
    channels: int = 2,
    sample_rate: int = 48000,
    bits: int = 16,
) -> CaptureSource:
    output = folder / "audio.wav"
    command = (
        rec,
        "-c", str(channels),
        "-r", str(sample_rate),
        "-b", str(bits),
        str(output),
    )
    env: Dict[str, str] = {}
    if microphone is not None and microphone.index is not None:
        # sox picks the CoreAudio input from AUDIODEV.
        env["AUDIODEV"] = microphone.name
    return CaptureSource(SourceKind.AUDIO, command, output, signal.SIGINT, env)


@dataclass
class CaptureSession:
    base_name: str
    folder: Path
    handles: Dict[SourceKind, Optional[ProcessHandle]] = field(default_factory=dict)
    sources: Dict[SourceKind, CaptureSource] = field(default_factory=dict)

    @property
    def capturing(self) -> bool:
        return any(handle is not None for handle in self.handles.values())


def _timer_schedule(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


# Force-kill sweep visits the tracks in this order.
_SWEEP_ORDER = (SourceKind.AUDIO, SourceKind.CAMERA, SourceKind.SCREEN)


class CaptureSupervisor:
    """Own at most one capture session at a time."""

    def __init__(
        self,
        launcher: SubprocessLauncher | None = None,
        *,
        ffmpeg_path: str = "ffmpeg",
        rec_path: str = "rec",
        output_directory: str | Path = "",
        enabled: bool = False,
        folder_suffix: str = "_sources",
        stop_grace_sec: float = 3.0,
        framerate: int = 30,
        webcam_size: str = "1280x720",
        audio_channels: int = 2,
        audio_sample_rate: int = 48000,
        audio_bits: int = 16,
        schedule: Scheduler | None = None,
        on_exit: ExitListener | None = None,
    ) -> None:
        self.launcher = launcher or SubprocessLauncher()
        self.ffmpeg_path = ffmpeg_path
        self.rec_path = rec_path
        self.output_directory = Path(output_directory).expanduser() if output_directory else Path.cwd()
        self.enabled = enabled
        self.folder_suffix = folder_suffix
        self.stop_grace_sec = stop_grace_sec
        self.framerate = framerate
        self.webcam_size = webcam_size
        self.audio_channels = audio_channels
        self.audio_sample_rate = audio_sample_rate
        self.audio_bits = audio_bits
        self._schedule = schedule or _timer_schedule
        self._on_exit = on_exit
        self._session: CaptureSession | None = None

    @classmethod
    def from_cfg(cls, capture_cfg: Mapping[str, object], **kwargs) -> "CaptureSupervisor":
        return cls(
            folder_suffix=str(capture_cfg.get("folder_suffix") or "_sources"),
            stop_grace_sec=float(capture_cfg.get("stop_grace_sec", 3.0)),
            framerate=int(capture_cfg.get("framerate", 30)),
            webcam_size=str(capture_cfg.get("webcam_size") or "1280x720"),
            audio_channels=int(capture_cfg.get("audio_channels", 2)),
            audio_sample_rate=int(capture_cfg.get("audio_sample_rate", 48000)),
            audio_bits=int(capture_cfg.get("audio_bits", 16)),
            **kwargs,
        )

    def set_exit_listener(self, listener: ExitListener | None) -> None:
        self._on_exit = listener

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def capturing(self) -> bool:
        return self._session is not None and self._session.capturing

    def configure(self, *, enabled: bool | None = None, output_directory: str | Path | None = None) -> None:
        if enabled is not None:
            self.enabled = bool(enabled)
        if output_directory:
            self.output_directory = Path(output_directory).expanduser()

    def source_folder(self, base_name: str) -> Path:
        return self.output_directory / f"{base_name}{self.folder_suffix}"

    def build_sources(
        self,
        folder: Path,
        screen: Device | None,
        camera: Device | None,
        microphone: Device | None,
    ) -> list[CaptureSource]:
        sources = [screen_source(self.ffmpeg_path, screen, folder, self.framerate)]
        if camera is not None:
            sources.append(
                camera_source(self.ffmpeg_path, camera, folder, self.framerate, self.webcam_size)
            )
        sources.append(
            audio_source(
                self.rec_path,
                microphone,
                folder,
                self.audio_channels,
                self.audio_sample_rate,
                self.audio_bits,
            )
        )
        return sources

    def start_session(
        self,
        base_name: str,
        screen: Device | None = None,
        camera: Device | None = None,
        microphone: Device | None = None,
    ) -> CaptureSession | None:
        if self._session is not None:
            print("[capture] Source capture already running", flush=True)
            return None
        if not self.enabled:
            return None

        folder = self.source_folder(base_name)
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"[capture] WARN: cannot create source folder {folder}: {exc}", flush=True)
            return None
        print(f"[capture] Starting source capture in {folder}", flush=True)

        session = CaptureSession(base_name=base_name, folder=folder)
        for source in self.build_sources(folder, screen, camera, microphone):
            session.sources[source.kind] = source
            try:
                handle = source.start(self.launcher, self._exit_callback(source.kind))
            except OSError as exc:
                print(f"[capture] WARN: {source.kind.value} capture failed to start: {exc}", flush=True)
                session.handles[source.kind] = None
                continue
            session.handles[source.kind] = handle
            print(f"[capture] {source.kind.value} capture started (pid {handle.pid})", flush=True)

        if not session.capturing:
            print("[capture] WARN: no capture process could be started", flush=True)
            return None
        self._session = session
        return session

    def _exit_callback(self, kind: SourceKind) -> Callable[[int], None]:
        def _on_exit(code: int) -> None:
            if self._on_exit is not None:
                self._on_exit(kind.value, code)
            else:
                print(f"[capture] {kind.value} capture stopped (exit: {code})", flush=True)

        return _on_exit

    def stop_session(self) -> bool:
        session = self._session
        if session is None or not session.capturing:
            self._session = None
            return False

        print(f"[capture] Stopping source capture for {session.base_name}", flush=True)
        # The sweep only sees the handles of this session.
        snapshot = {kind: handle for kind, handle in session.handles.items() if handle is not None}
        for kind in (SourceKind.SCREEN, SourceKind.AUDIO, SourceKind.CAMERA):
            handle = snapshot.get(kind)
            if handle is None:
                continue
            source = session.sources[kind]
            print(
                f"[capture] Sending {signal.Signals(source.stop_signal).name} to {kind.value} "
                f"(pid {handle.pid})",
                flush=True,
            )
            try:
                source.stop(handle)
            except OSError as exc:
                print(f"[capture] WARN: failed to signal {kind.value}: {exc}", flush=True)

        self._schedule(self.stop_grace_sec, lambda: self._sweep(snapshot))

        for kind in session.handles:
            session.handles[kind] = None
        self._session = None
        print(f"[capture] Source files in {session.folder}", flush=True)
        return True

    @staticmethod
    def _sweep(snapshot: Mapping[SourceKind, ProcessHandle]) -> None:
        for kind in _SWEEP_ORDER:
            handle = snapshot.get(kind)
            if handle is None or not handle.is_running():
                continue
            print(f"[capture] Force killing {kind.value} (pid {handle.pid})", flush=True)
            try:
                handle.kill()
            except OSError as exc:
                print(f"[capture] WARN: failed to kill {kind.value}: {exc}", flush=True)
        print("[capture] All source capture processes stopped", flush=True)
