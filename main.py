#!/usr/bin/env python3
"""
Development launcher for wavgate.

- Runs the capture daemon in foreground
- Ctrl-C exits cleanly (the in-flight segment is flushed)
- Ctrl-R restarts the foreground daemon
- Ctrl-A asks the daemon for a snapshot
"""

import os
import signal
import sys
import termios
import threading
import tty

from wavgate import capture_daemon


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = False

    def run(self):
        try:
            while True:
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    os.kill(os.getpid(), signal.SIGINT)
                elif ch == b"\x12":  # Ctrl-R
                    self.restart_requested = True
                    os.kill(os.getpid(), signal.SIGTERM)
                elif ch == b"\x01":  # Ctrl-A
                    os.kill(os.getpid(), signal.SIGUSR1)
        finally:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def run_once(argv):
    try:
        return capture_daemon.main(argv)
    except KeyboardInterrupt:
        return 0


def main():
    argv = sys.argv[1:]
    print("[dev] Running capture_daemon (Ctrl-C to exit, Ctrl-R to restart, Ctrl-A for a snapshot)")

    while True:
        watcher = KeyWatcher()
        watcher.start()
        try:
            rc = run_once(argv)
        finally:
            # Always restore terminal mode after the daemon is down
            termios.tcsetattr(watcher.fd, termios.TCSADRAIN, watcher.old_settings)

        if watcher.restart_requested:
            print("[dev] Restart requested via Ctrl-R")
            continue
        print("[dev] Exiting dev mode")
        return rc


if __name__ == "__main__":
    sys.exit(main())
