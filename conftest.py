"""Shared pytest fixtures."""

from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

import transcoding


# Stand-in for ffmpeg: the last argv entry is the output ("pipe:1" = stdout).
_FAKE_FFMPEG = """#!{python}
import sys, time
args = sys.argv[1:]
out = args[-1] if args else "-"
behavior = {behavior!r}
log_path = {log_path!r}
started = time.time()
if behavior == "sleep":
    time.sleep(60)
if behavior == "fail":
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.stderr.flush()
    sys.exit(1)
if behavior == "slow":
    time.sleep(0.3)
data = b"FAKEMP4 " + " ".join(args).encode()
if out == "pipe:1":
    for _ in range(4):
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
        if behavior == "stall":
            time.sleep(60)
else:
    with open(out, "wb") as f:
        f.write(data)
if log_path:
    with open(log_path, "a") as f:
        f.write("%f %f\\n" % (started, time.time()))
"""


@pytest.fixture
def make_ffmpeg(tmp_path: Path):
    """Build a fake ffmpeg executable with the given behavior.

    Behaviors: "ok", "slow", "sleep", "fail", "stall" (stream one chunk, hang).
    """

    def make(behavior: str = "ok", log_path: Path | None = None) -> Path:
        script = tmp_path / f"ffmpeg_{behavior}"
        script.write_text(
            _FAKE_FFMPEG.format(
                python=sys.executable,
                behavior=behavior,
                log_path=str(log_path) if log_path else "",
            )
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return make


@pytest.fixture
def encoder_settings():
    """Point transcoding at a settings dict the test can mutate."""
    settings: dict = {
        "ffmpeg_path": "ffmpeg",
        "encoder_threads": 1,
        "preview_timeout_secs": 30,
        "download_timeout_secs": 60,
    }
    transcoding.init(lambda: settings)
    yield settings
    transcoding.init(dict)

