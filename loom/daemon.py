#!/usr/bin/env python3
"""obs-loom service entry point."""
from __future__ import annotations

import argparse
import signal
import sys
import threading

from loom.config import active_config_path, get_cfg
from loom.watcher import Watcher
from loom.web_status import start_web_status_in_thread


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Watch a recordings folder and publish new videos")
    parser.add_argument("--settings", help="Settings JSON file (defaults to the configured path)")
    parser.add_argument("--no-web", action="store_true", help="Do not start the status API")
    args = parser.parse_args(argv)

    cfg = get_cfg()
    print(f"[loom] config: {active_config_path() or 'defaults'}", flush=True)

    watcher = Watcher(cfg, settings_file=args.settings)
    stop_requested = threading.Event()
    restart_requested = threading.Event()

    def handle_signal(signum, frame):  # noqa
        if signum == signal.SIGHUP:
            restart_requested.set()
            return
        print(f"[loom] received signal {signum}, shutting down...", flush=True)
        stop_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, handle_signal)

    if not watcher.start():
        print("[loom] WARN: watcher failed to start", flush=True)
        watcher.close()
        return 1

    web_cfg = cfg["web_server"]
    web_handle = None
    if web_cfg.get("enabled") and not args.no_web:
        try:
            web_handle = start_web_status_in_thread(
                watcher,
                host=str(web_cfg.get("listen_host") or "127.0.0.1"),
                port=int(web_cfg.get("listen_port") or 8765),
            )
        except OSError as exc:
            print(f"[loom] WARN: status API unavailable: {exc}", flush=True)

    try:
        while not stop_requested.wait(0.5):
            if restart_requested.is_set():
                restart_requested.clear()
                print("[loom] Restart requested", flush=True)
                watcher.restart()
    finally:
        if web_handle is not None:
            web_handle.stop()
        watcher.close()
        print("[loom] Exited", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
