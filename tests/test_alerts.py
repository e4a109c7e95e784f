import json
import subprocess

from loom import alerts as alerts_module
from loom.alerts import AlertDispatcher, ClipboardPublisher, build_alerts


def test_show_logs_and_keeps_history(capsys):
    dispatcher = AlertDispatcher(run_async=False)
    dispatcher.show("Video uploaded!", url="https://x/demo.mp4")
    dispatcher.show("Upload failed", level="error")

    out = capsys.readouterr().out
    assert "[alert] Video uploaded!" in out
    assert "[alert] WARN: Upload failed" in out
    assert dispatcher.history[0] == {"message": "Video uploaded!", "level": "info", "url": "https://x/demo.mp4"}


def test_history_is_bounded():
    dispatcher = AlertDispatcher(run_async=False)
    for idx in range(80):
        dispatcher.show(f"alert {idx}")
    assert len(dispatcher.history) == 50
    assert dispatcher.history[-1]["message"] == "alert 79"


def test_webhook_payload_is_sent(monkeypatch):
    class Dummy(AlertDispatcher):
        def __init__(self):
            super().__init__(webhook_cfg={"url": "http://hooks.example"}, run_async=False)
            self.payloads = []

        def _send_webhook(self, payload):
            self.payloads.append(payload)

    dummy = Dummy()
    dummy.show("Watcher restarted")

    assert len(dummy.payloads) == 1
    payload = dummy.payloads[0]
    assert payload["alert"]["message"] == "Watcher restarted"
    assert payload["host"] == dummy.hostname
    json.dumps(payload)


def test_async_webhook_worker_drains_and_closes(monkeypatch):
    sent = []
    monkeypatch.setattr(AlertDispatcher, "_send_webhook", lambda self, payload: sent.append(payload))

    dispatcher = AlertDispatcher(webhook_cfg={"url": "http://hooks.example"})
    dispatcher.show("one")
    dispatcher.show("two")
    dispatcher.close()

    assert [p["alert"]["message"] for p in sent] == ["one", "two"]


def test_clipboard_uses_first_available_helper(monkeypatch):
    runs = []

    def _run(cmd, input=None, check=False, timeout=None):
        runs.append((cmd, input))
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(alerts_module.subprocess, "run", _run)
    publisher = ClipboardPublisher(which=lambda name: "/usr/bin/xclip" if name == "xclip" else None)

    assert publisher.publish("https://x/demo.mp4") is True
    assert runs == [(["xclip", "-selection", "clipboard"], b"https://x/demo.mp4")]
    assert publisher.last_published == "https://x/demo.mp4"


def test_clipboard_without_helper_only_logs(capsys):
    publisher = ClipboardPublisher(which=lambda name: None)

    assert publisher.publish("https://x/demo.mp4") is False
    assert "https://x/demo.mp4" in capsys.readouterr().out


def test_build_alerts_from_cfg():
    dispatcher, clipboard = build_alerts({"clipboard": False, "webhook": {}})
    assert dispatcher.webhook_url == ""
    assert clipboard.enabled is False
