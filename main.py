#!/usr/bin/env python3
"""
Development launcher for the shadowing analyzer.

- Starts mpv on the given media with the IPC server enabled and the
  `c` key bound to the cut trigger
- Runs the analyzer in the foreground until mpv quits
- Ctrl-C exits cleanly
"""

import os
import subprocess
import sys
import tempfile

from shadow_analyzer import service
from shadow_analyzer.config import get_cfg

INPUT_CONF = "c script-message cut_current_sub\n"


def write_input_conf(keyword: str) -> str:
    fd, path = tempfile.mkstemp(prefix="shadow-input-", suffix=".conf")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(INPUT_CONF.replace("cut_current_sub", keyword))
    return path


def start_mpv(media: list[str], ipc_path: str, input_conf: str) -> subprocess.Popen:
    cmd = [
        "mpv",
        f"--input-ipc-server={ipc_path}",
        f"--input-conf={input_conf}",
        "--force-window=yes",
        *media,
    ]
    print(f"[dev] Launching: {' '.join(cmd)}")
    return subprocess.Popen(cmd)


def main():
    if len(sys.argv) < 2:
        print("usage: main.py MEDIA [MEDIA ...]", file=sys.stderr)
        return 2

    cfg = get_cfg()
    service.configure_logging(cfg)
    ipc_path = str(cfg["mpv"]["ipc_path"])
    input_conf = write_input_conf(str(cfg["mpv"]["trigger_keyword"]))
    player = start_mpv(sys.argv[1:], ipc_path, input_conf)
    print("[dev] Running analyzer (press c in mpv to cut, Ctrl-C to exit)")
    try:
        return service.run_analyzer(cfg)
    except KeyboardInterrupt:
        return 0
    finally:
        if player.poll() is None:
            print("[dev] Stopping mpv ...")
            player.terminate()
            try:
                player.wait(timeout=3)
            except subprocess.TimeoutExpired:
                player.kill()
        try:
            os.unlink(input_conf)
        except OSError:
            pass
        print("[dev] Exiting dev mode")


if __name__ == "__main__":
    sys.exit(main())
