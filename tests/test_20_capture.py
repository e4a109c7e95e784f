import signal
from pathlib import Path

from loom.capture import (
    CaptureSupervisor,
    SourceKind,
    audio_source,
    camera_source,
    screen_source,
)
from loom.devices import Device, DeviceKind


class FakeHandle:
    def __init__(self, name, pid):
        self.name = name
        self.pid = pid
        self.signals = []
        self.alive = True

    def is_running(self):
        return self.alive

    def send_signal(self, sig):
        self.signals.append(sig)

    def kill(self):
        self.signals.append(signal.SIGKILL)
        self.alive = False


class FakeLauncher:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.handles = {}
        self.calls = []

    def launch(self, name, command, *, on_exit=None, env=None, log_path=None):
        self.calls.append({"name": name, "command": list(command), "env": env, "log_path": log_path, "on_exit": on_exit})
        if name in self.fail:
            raise FileNotFoundError(2, "No such file", command[0])
        handle = FakeHandle(name, 1000 + len(self.calls))
        self.handles[name] = handle
        return handle


class RecordingScheduler:
    def __init__(self):
        self.calls = []

    def __call__(self, delay, callback):
        self.calls.append((delay, callback))

    def fire(self):
        for _, callback in self.calls:
            callback()


SCREEN = Device(DeviceKind.SCREEN, "Capture screen 0", "Capture screen 0", 2)
CAMERA = Device(DeviceKind.CAMERA, "FaceTime HD Camera", "FaceTime HD Camera", 0)
MIC = Device(DeviceKind.MICROPHONE, "External Mic", "External Mic", 1)


def _supervisor(tmp_path, launcher=None, scheduler=None, **kwargs):
    return CaptureSupervisor(
        launcher or FakeLauncher(),
        ffmpeg_path="/opt/homebrew/bin/ffmpeg",
        rec_path="/opt/homebrew/bin/rec",
        output_directory=tmp_path,
        enabled=kwargs.pop("enabled", True),
        schedule=scheduler or RecordingScheduler(),
        **kwargs,
    )


def test_screen_command_uses_device_index(tmp_path: Path):
    source = screen_source("ffmpeg", SCREEN, tmp_path)
    assert source.kind is SourceKind.SCREEN
    assert source.stop_signal == signal.SIGTERM
    assert source.command[:3] == ("ffmpeg", "-f", "avfoundation")
    assert "2:none" in source.command
    assert source.command[-1] == str(tmp_path / "screen.mp4")


def test_camera_and_audio_commands(tmp_path: Path):
    camera = camera_source("ffmpeg", CAMERA, tmp_path, framerate=25, video_size="640x480")
    assert camera.stop_signal == signal.SIGINT
    assert "0:" in camera.command
    assert "640x480" in camera.command
    assert camera.output.name == "webcam.mp4"

    audio = audio_source("rec", MIC, tmp_path)
    assert audio.command == ("rec", "-c", "2", "-r", "48000", "-b", "16", str(tmp_path / "audio.wav"))
    assert audio.stop_signal == signal.SIGINT
    assert dict(audio.env) == {"AUDIODEV": "External Mic"}


def test_start_session_launches_screen_and_audio_without_camera(tmp_path: Path):
    launcher = FakeLauncher()
    supervisor = _supervisor(tmp_path, launcher)

    session = supervisor.start_session("demo", SCREEN, None, MIC)

    assert session is not None
    assert session.folder == tmp_path / "demo_sources"
    assert session.folder.is_dir()
    assert [call["name"] for call in launcher.calls] == ["screen", "audio"]
    assert launcher.calls[0]["log_path"] == tmp_path / "demo_sources" / "screen.log"
    assert supervisor.capturing


def test_start_session_with_camera(tmp_path: Path):
    launcher = FakeLauncher()
    supervisor = _supervisor(tmp_path, launcher)

    supervisor.start_session("demo", SCREEN, CAMERA, MIC)

    assert [call["name"] for call in launcher.calls] == ["screen", "camera", "audio"]


def test_second_start_is_noop(tmp_path: Path, capsys):
    launcher = FakeLauncher()
    supervisor = _supervisor(tmp_path, launcher)

    first = supervisor.start_session("demo", SCREEN, None, MIC)
    second = supervisor.start_session("other", SCREEN, None, MIC)

    assert first is not None
    assert second is None
    assert len(launcher.calls) == 2
    assert supervisor.session is first
    assert "already running" in capsys.readouterr().out


def test_disabled_supervisor_does_nothing(tmp_path: Path):
    launcher = FakeLauncher()
    supervisor = _supervisor(tmp_path, launcher, enabled=False)

    assert supervisor.start_session("demo", SCREEN, None, MIC) is None
    assert launcher.calls == []
    assert not (tmp_path / "demo_sources").exists()


def test_launch_failure_is_logged_and_others_continue(tmp_path: Path, capsys):
    launcher = FakeLauncher(fail={"audio"})
    supervisor = _supervisor(tmp_path, launcher)

    session = supervisor.start_session("demo", SCREEN, None, MIC)

    assert session is not None
    assert session.handles[SourceKind.AUDIO] is None
    assert session.handles[SourceKind.SCREEN] is not None
    assert "audio capture failed to start" in capsys.readouterr().out


def test_all_launches_failing_leaves_no_session(tmp_path: Path):
    launcher = FakeLauncher(fail={"screen", "audio"})
    supervisor = _supervisor(tmp_path, launcher)

    assert supervisor.start_session("demo", SCREEN, None, MIC) is None
    assert supervisor.session is None
    assert not supervisor.capturing


def test_stop_signals_then_sweeps_survivors(tmp_path: Path):
    launcher = FakeLauncher()
    scheduler = RecordingScheduler()
    supervisor = _supervisor(tmp_path, launcher, scheduler, stop_grace_sec=3.0)
    supervisor.start_session("demo", SCREEN, CAMERA, MIC)

    assert supervisor.stop_session() is True

    screen = launcher.handles["screen"]
    camera = launcher.handles["camera"]
    audio = launcher.handles["audio"]
    assert screen.signals == [signal.SIGTERM]
    assert camera.signals == [signal.SIGINT]
    assert audio.signals == [signal.SIGINT]
    assert not supervisor.capturing
    assert supervisor.session is None
    assert [delay for delay, _ in scheduler.calls] == [3.0]

    # screen exits on its own, camera and audio hang
    screen.alive = False
    scheduler.fire()

    assert screen.signals == [signal.SIGTERM]
    assert camera.signals[-1] == signal.SIGKILL
    assert audio.signals[-1] == signal.SIGKILL
    assert not any(handle.is_running() for handle in launcher.handles.values())


def test_stop_without_session_is_noop(tmp_path: Path):
    scheduler = RecordingScheduler()
    supervisor = _supervisor(tmp_path, scheduler=scheduler)

    assert supervisor.stop_session() is False
    assert scheduler.calls == []


def test_sweep_only_touches_handles_from_its_session(tmp_path: Path):
    launcher = FakeLauncher()
    scheduler = RecordingScheduler()
    supervisor = _supervisor(tmp_path, launcher, scheduler)

    supervisor.start_session("first", SCREEN, None, MIC)
    first_screen = launcher.handles["screen"]
    supervisor.stop_session()
    supervisor.start_session("second", SCREEN, None, MIC)
    second_screen = launcher.handles["screen"]

    scheduler.calls[0][1]()

    assert first_screen.signals[-1] == signal.SIGKILL
    assert second_screen.signals == []
    assert supervisor.capturing


def test_exit_listener_receives_kind_and_code(tmp_path: Path):
    launcher = FakeLauncher()
    exits = []
    supervisor = _supervisor(tmp_path, launcher, on_exit=lambda kind, code: exits.append((kind, code)))
    supervisor.start_session("demo", SCREEN, None, MIC)

    launcher.calls[0]["on_exit"](0)
    launcher.calls[1]["on_exit"](1)

    assert exits == [("screen", 0), ("audio", 1)]


def test_from_cfg_reads_tuning(tmp_path: Path):
    supervisor = CaptureSupervisor.from_cfg(
        {"folder_suffix": "_raw", "stop_grace_sec": 1.5, "framerate": 60, "webcam_size": "1920x1080"},
        launcher=FakeLauncher(),
        output_directory=tmp_path,
    )
    assert supervisor.stop_grace_sec == 1.5
    assert supervisor.framerate == 60
    assert supervisor.source_folder("demo") == tmp_path / "demo_raw"
