#!/usr/bin/env python3
"""
Development launcher for obs-loom.

- Runs the watcher daemon in the foreground with dev logging
- Ctrl-C exits cleanly
- Ctrl-R restarts the watcher (same as SIGHUP)
"""

import os
import signal
import sys
import termios
import threading
import tty

from loom import daemon


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)

    def run(self):
        try:
            while True:
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    os.kill(os.getpid(), signal.SIGINT)
                elif ch == b"\x12":  # Ctrl-R
                    os.kill(os.getpid(), signal.SIGHUP)
        finally:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def main():
    os.environ.setdefault("DEV", "1")
    print("[dev] Running obs-loom (Ctrl-C to exit, Ctrl-R to restart the watcher)")

    keys = None
    if sys.stdin.isatty():
        keys = KeyWatcher()
        keys.start()
    try:
        return daemon.main(sys.argv[1:])
    finally:
        # Always restore terminal mode after the watcher is down
        if keys is not None:
            termios.tcsetattr(keys.fd, termios.TCSADRAIN, keys.old_settings)
        print("[dev] Exiting dev mode")


if __name__ == "__main__":
    sys.exit(main())
