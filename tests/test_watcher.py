import copy
import json
from concurrent.futures import Future
from pathlib import Path

import pytest

from loom import config as config_module
from loom.alerts import AlertDispatcher, ClipboardPublisher
from loom.devices import DeviceKind
from loom.object_store import ObjectStore
from loom.settings import Settings
from loom.watcher import Watcher

LISTING = """\
[AVFoundation indev @ 0x1] AVFoundation video devices:
[AVFoundation indev @ 0x1] [0] FaceTime HD Camera
[AVFoundation indev @ 0x1] [1] Capture screen 0
[AVFoundation indev @ 0x1] AVFoundation audio devices:
[AVFoundation indev @ 0x1] [0] Shure MV7
"""


class FakeStore(ObjectStore):
    def __init__(self, bucket, ops):
        self.bucket = bucket
        self.ops = ops

    def put_bytes(self, data, destination, content_type, cache_control):
        self.ops.append(("put_bytes", self.bucket, destination))

    def put_file(self, path, destination, content_type, cache_control):
        self.ops.append(("put_file", self.bucket, destination))

    def delete(self, destination):
        self.ops.append(("delete", self.bucket, destination))

    def set_public_read(self, destination):
        self.ops.append(("acl", self.bucket, destination))

    def public_url(self, destination):
        return f"https://storage.googleapis.com/{self.bucket}/{destination}"


class DeferredExecutor:
    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args):
        fut = Future()
        self.jobs.append((fut, fn, args))
        return fut

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for fut, fn, args in jobs:
            fut.set_result(fn(*args))

    def shutdown(self, wait=False):
        pass


class FakeNotifier:
    instances = []

    def __init__(self, directory, callback):
        self.directory = directory
        self.callback = callback
        self.started = False
        self.stopped = False
        FakeNotifier.instances.append(self)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


class FakePoller:
    def __init__(self):
        self.callback = None

    @property
    def running(self):
        return self.callback is not None

    def start(self, path, on_sample):
        self.callback = on_sample

    def stop(self):
        self.callback = None


class FakeLauncher:
    def launch(self, name, command, *, on_exit=None, env=None, log_path=None):
        raise AssertionError("capture is disabled in these tests")


class FakeHandle:
    def __init__(self, pid):
        self.pid = pid
        self.alive = True

    def is_running(self):
        return self.alive

    def send_signal(self, sig):
        self.alive = False

    def kill(self):
        self.alive = False


class RecordingLauncher:
    def __init__(self):
        self.launches = []

    def launch(self, name, command, *, on_exit=None, env=None, log_path=None):
        self.launches.append((name, tuple(command), env))
        return FakeHandle(100 + len(self.launches))


class Env:
    def __init__(self, tmp_path: Path, launcher=None):
        FakeNotifier.instances = []
        self.watch_dir = tmp_path / "recordings"
        self.settings_file = tmp_path / "settings.json"
        self.ops = []
        self.executor = DeferredExecutor()
        self.poller = FakePoller()
        self.alerts = AlertDispatcher(run_async=False)
        cfg = copy.deepcopy(config_module._DEFAULTS)
        self.watcher = Watcher(
            cfg,
            settings=Settings(
                bucket="team-bucket",
                watch_directory=str(self.watch_dir),
                source_output_directory=str(tmp_path / "sources"),
                selected_camera_id="FaceTime HD Camera",
                source_capture_enabled=launcher is not None,
            ),
            settings_file=self.settings_file,
            launcher=launcher or FakeLauncher(),
            store_factory=lambda bucket: FakeStore(bucket, self.ops),
            notifier_factory=FakeNotifier,
            poller=self.poller,
            device_listing=lambda: LISTING,
            alerts=self.alerts,
            clipboard=ClipboardPublisher(enabled=False),
            executor=self.executor,
            threaded=False,
        )

    @property
    def notifier(self):
        return FakeNotifier.instances[-1]

    def drain(self):
        self.watcher.lifecycle.process_pending()

    def notify(self, path):
        self.notifier.callback([str(path)])
        self.drain()

    def sample(self, size):
        self.poller.callback(size)
        self.drain()

    def finish_uploads(self):
        self.executor.run_all()
        self.drain()


@pytest.fixture
def env(tmp_path):
    return Env(tmp_path)


def test_start_creates_directory_and_ignores_existing(env):
    env.watch_dir.mkdir()
    (env.watch_dir / "old.mp4").write_bytes(b"x")

    assert env.watcher.start() is True
    assert env.notifier.started
    assert env.notifier.directory == str(env.watch_dir)

    env.notify(env.watch_dir / "old.mp4")
    assert env.watcher.status()["active_file"] is None

    new = env.watch_dir / "new.mp4"
    new.write_bytes(b"x")
    env.notify(new)
    assert env.watcher.status()["active_file"] == "new.mp4"


def test_start_creates_missing_watch_directory(env):
    assert not env.watch_dir.exists()
    assert env.watcher.start()
    assert env.watch_dir.is_dir()


def test_status_precedence(env):
    assert env.watcher.status()["status"] == "Stopped"
    env.watcher.start()
    assert env.watcher.status()["status"] == "Watching"

    clip = env.watch_dir / "demo.mp4"
    clip.write_bytes(b"x")
    env.notify(clip)
    assert env.watcher.status()["status"] == "Recording detected"

    env.sample(1)
    env.sample(1)
    status = env.watcher.status()
    assert status["status"] == "Uploading"
    assert status["uploads_in_flight"] == 1

    env.watcher.stop()
    assert env.watcher.status()["status"] == "Uploading"

    env.finish_uploads()
    assert env.watcher.status()["status"] == "Stopped"
    assert ("put_file", "team-bucket", "demo.mp4") in env.ops


def test_stop_halts_active_recording(env):
    env.watcher.start()
    clip = env.watch_dir / "demo.mp4"
    clip.write_bytes(b"x")
    env.notify(clip)

    env.watcher.stop()

    assert env.notifier.stopped
    assert not env.poller.running
    status = env.watcher.status()
    assert status["active_file"] is None
    assert status["watching"] is False


def test_update_settings_persists_and_applies(env):
    env.watcher.start()

    updated = env.watcher.update_settings(bucket="other-bucket", source_capture_enabled=False)

    assert updated.bucket == "other-bucket"
    assert json.loads(env.settings_file.read_text())["bucket"] == "other-bucket"
    assert env.watcher.uploads.bucket == "other-bucket"

    clip = env.watch_dir / "demo.mp4"
    clip.write_bytes(b"x")
    env.notify(clip)
    env.executor.run_all()
    assert ("put_bytes", "other-bucket", "demo.mp4") in env.ops


def test_update_settings_rejects_bad_input(env):
    with pytest.raises(ValueError):
        env.watcher.update_settings(colour="blue")
    assert not env.settings_file.exists()


def test_changing_watch_directory_restarts(env, tmp_path):
    env.watcher.start()
    first = env.notifier
    target = tmp_path / "elsewhere"

    env.watcher.update_settings(watch_directory=str(target))

    assert first.stopped
    assert env.notifier is not first
    assert env.notifier.directory == str(target)
    assert target.is_dir()
    assert "Watcher restarted" in [a["message"] for a in env.alerts.history]


def test_refresh_devices_applies_saved_selection(env):
    payload = env.watcher.refresh_devices()

    assert payload["camera"]["selected"] == "FaceTime HD Camera"
    assert payload["screen"]["selected"] == "Capture screen 0"
    assert payload["microphone"]["selected"] == "Shure MV7"
    assert env.watcher.devices() == payload


def test_start_loads_devices_and_saved_selection(env):
    env.watcher.start()

    assert env.watcher.catalog.selected(DeviceKind.CAMERA).name == "FaceTime HD Camera"
    assert env.watcher.catalog.selected(DeviceKind.SCREEN).name == "Capture screen 0"
    assert env.watcher.catalog.selected(DeviceKind.MICROPHONE).name == "Shure MV7"


def test_detected_recording_captures_saved_devices(tmp_path):
    launcher = RecordingLauncher()
    env = Env(tmp_path, launcher=launcher)
    env.watcher.start()

    clip = env.watch_dir / "demo.mp4"
    clip.write_bytes(b"x")
    env.notify(clip)

    names = [name for name, _, _ in launcher.launches]
    assert names == ["screen", "camera", "audio"]
    screen_cmd = launcher.launches[0][1]
    assert screen_cmd[screen_cmd.index("-i") + 1] == "1:none"
    assert launcher.launches[2][2] == {"AUDIODEV": "Shure MV7"}


def test_threaded_lifecycle_serves_status(tmp_path):
    env = Env(tmp_path)
    env.watcher._threaded = True
    try:
        env.watcher.start()
        assert env.watcher.lifecycle.running
        assert env.watcher.status()["status"] == "Watching"
    finally:
        env.watcher.close()
    assert not env.watcher.lifecycle.running
