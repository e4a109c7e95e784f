import threading
import time

from loom.stability_poller import StabilityPoller, read_size


def test_read_size(tmp_path):
    target = tmp_path / "clip.mp4"
    target.write_bytes(b"12345")

    assert read_size(str(target)) == 5
    assert read_size(str(tmp_path / "missing.mp4")) is None


def test_poller_forwards_samples_until_stopped():
    sizes = iter([10, 20, None])
    samples = []
    got_three = threading.Event()

    def _sample(size):
        samples.append(size)
        if len(samples) >= 3:
            got_three.set()

    poller = StabilityPoller(0.01, size_reader=lambda path: next(sizes, 0))
    poller.start("/tmp/clip.mp4", _sample)
    assert got_three.wait(2.0)
    poller.stop()

    assert samples[:3] == [10, 20, None]
    assert not poller.running
    count = len(samples)
    time.sleep(0.1)
    assert len(samples) == count


def test_start_replaces_previous_timer():
    first, second = [], []
    poller = StabilityPoller(0.01, size_reader=lambda path: 1 if path == "a" else 2)

    poller.start("a", first.append)
    time.sleep(0.1)
    poller.start("b", second.append)
    frozen = len(first)
    time.sleep(0.1)
    poller.stop()

    assert frozen >= 1
    assert len(first) == frozen
    assert second and set(second) == {2}


def test_stop_when_idle_is_safe():
    poller = StabilityPoller(0.01)
    poller.stop()
    poller.stop()
    assert not poller.running


def test_callback_errors_do_not_stop_polling():
    calls = []
    done = threading.Event()

    def _sample(size):
        calls.append(size)
        if len(calls) == 2:
            done.set()
        raise RuntimeError("boom")

    poller = StabilityPoller(0.01, size_reader=lambda path: 3)
    poller.start("x", _sample)
    assert done.wait(2.0)
    poller.stop()
