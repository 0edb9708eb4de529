"""Segment trimming with ffmpeg: command building and process supervision."""

from __future__ import annotations

import asyncio
import logging
import os
import pathlib
import subprocess
import tempfile
import threading
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any

from errors import Cancelled, EncodeFailure, EncodeTimeout
from gate import ConcurrencyGate, GateSlot
from timerange import TimeRange, TrimMode, format_seconds


log = logging.getLogger(__name__)

_STREAM_CHUNK_BYTES = 64 * 1024
_STDERR_TAIL_LINES = 10
_KILL_WAIT_SEC = 5.0
_PROBE_TIMEOUT_SEC = 10

INTENTS = ("preview", "download")

_active_jobs: dict[str, EncodeJob] = {}
_jobs_lock = threading.Lock()
_background_tasks: set[asyncio.Task[None]] = set()
_load_settings: Callable[[], dict[str, Any]] = dict


@dataclass(frozen=True, slots=True)
class QualityProfile:
    preset: str
    crf: int
    max_height: int  # 0 = keep source resolution
    audio_bitrate: str


_PROFILES: dict[str, QualityProfile] = {
    "preview": QualityProfile(preset="ultrafast", crf=32, max_height=480, audio_bitrate="96k"),
    "download": QualityProfile(preset="veryfast", crf=20, max_height=0, audio_bitrate="192k"),
}

_DEFAULT_TIMEOUT_SEC = {"preview": 120, "download": 900}


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    global _load_settings
    _load_settings = load_settings


def _ffmpeg_path() -> str:
    return _load_settings().get("ffmpeg_path", "ffmpeg")


def job_timeout(intent: str) -> float:
    """Seconds an encode may run; previews get the shorter budget."""
    return float(_load_settings().get(f"{intent}_timeout_secs", _DEFAULT_TIMEOUT_SEC[intent]))


@dataclass(slots=True)
class EncodeJob:
    source_path: pathlib.Path
    time_range: TimeRange
    mode: TrimMode
    intent: str
    output_path: pathlib.Path | None  # None = pipe to stdout
    deadline: float  # event loop clock
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    process: asyncio.subprocess.Process | None = None
    started: float = field(default_factory=time.time)

    def remaining(self) -> float:
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


def new_job(
    source_path: pathlib.Path,
    time_range: TimeRange,
    mode: TrimMode,
    intent: str,
    output_path: pathlib.Path | None,
    timeout_sec: float | None = None,
) -> EncodeJob:
    if intent not in INTENTS:
        raise ValueError(f"Unknown intent: {intent}")
    timeout = job_timeout(intent) if timeout_sec is None else timeout_sec
    deadline = asyncio.get_running_loop().time() + timeout
    return EncodeJob(source_path, time_range, mode, intent, output_path, deadline)


def build_trim_ffmpeg_cmd(
    source: str,
    time_range: TimeRange,
    mode: TrimMode,
    intent: str,
    output: str,
    ffmpeg: str = "ffmpeg",
    threads: int = 2,
) -> list[str]:
    """Build the ffmpeg argv for one trim.

    COPY seeks on the demuxer (before -i) and remuxes; it starts on the
    keyframe at or before the requested start. PRECISE decodes then seeks
    (after -i) and re-encodes, so boundaries are exact.
    """
    start = format_seconds(time_range.start_ms)
    duration = format_seconds(time_range.duration_ms)
    to_pipe = output in ("-", "pipe:1")

    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostdin",
        "-y",
        "-threads",
        str(threads),
    ]
    if mode is TrimMode.COPY:
        cmd.extend(["-ss", start, "-i", source, "-t", duration])
    else:
        cmd.extend(["-i", source, "-ss", start, "-t", duration])

    cmd.extend(["-map", "0:v:0", "-map", "0:a:0?"])

    if mode is TrimMode.COPY:
        cmd.extend(["-c", "copy", "-avoid_negative_ts", "make_zero"])
    else:
        profile = _PROFILES[intent]
        vf = "format=yuv420p"
        if profile.max_height:
            # -2 keeps width even, min() only ever scales down
            vf = f"scale=-2:'min(ih,{profile.max_height})',{vf}"
        cmd.extend(
            [
                "-vf",
                vf,
                "-c:v",
                "libx264",
                "-profile:v",
                "main",
                "-preset",
                profile.preset,
                "-crf",
                str(profile.crf),
                "-c:a",
                "aac",
                "-ac",
                "2",
                "-b:a",
                profile.audio_bitrate,
            ]
        )

    if to_pipe:
        # mp4 on a pipe cannot seek back to write moov, so fragment it
        cmd.extend(["-movflags", "frag_keyframe+empty_moov+default_base_moof"])
    else:
        cmd.extend(["-movflags", "+faststart"])
    cmd.extend(["-f", "mp4", "pipe:1" if to_pipe else output])
    return cmd


def _job_cmd(job: EncodeJob) -> list[str]:
    settings = _load_settings()
    return build_trim_ffmpeg_cmd(
        str(job.source_path),
        job.time_range,
        job.mode,
        job.intent,
        str(job.output_path) if job.output_path else "pipe:1",
        ffmpeg=settings.get("ffmpeg_path", "ffmpeg"),
        threads=int(settings.get("encoder_threads", 2)),
    )


def _kill_process(proc: Any) -> bool:
    """Kill process, return True if killed."""
    try:
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


async def _monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    job_id: str,
    stderr_lines: list[str] | None = None,
) -> None:
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        if stderr_lines is not None:
            stderr_lines.append(text)
        # Only log actual fatal errors as WARNING, not decoder warnings
        is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", job_id, text)


def _spawn_background_task(coro: Any) -> asyncio.Task[None]:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def await_or_abort(aw: Any, cancel: asyncio.Event, timeout: float | None) -> Any:
    """Await ``aw`` unless the cancel token fires or ``timeout`` runs out first.

    Raises Cancelled or EncodeTimeout respectively; the inner awaitable is
    cancelled in both cases.
    """
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    if waiter in done:
        raise Cancelled()
    raise EncodeTimeout()


async def _spawn(
    job: EncodeJob, stderr_lines: list[str]
) -> tuple[asyncio.subprocess.Process, asyncio.Task[None]]:
    cmd = _job_cmd(job)
    log.info(
        "Starting %s %s job %s (%dms-%dms): %s",
        job.intent,
        job.mode.value,
        job.job_id,
        job.time_range.start_ms,
        job.time_range.end_ms,
        " ".join(cmd),
    )
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if job.output_path is None else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log.error("Cannot start %s: %s", cmd[0], e)
        raise EncodeFailure(diagnostic=f"cannot start {cmd[0]}: {e}") from e
    job.process = process
    with _jobs_lock:
        _active_jobs[job.job_id] = job
    monitor = _spawn_background_task(_monitor_ffmpeg_stderr(process, job.job_id, stderr_lines))
    return process, monitor


def _release_job(job: EncodeJob) -> None:
    """Kill ffmpeg if still running and drop the job from the registry."""
    proc = job.process
    if proc is not None and proc.returncode is None and _kill_process(proc):
        log.info("Killed ffmpeg for job %s", job.job_id)
    with _jobs_lock:
        _active_jobs.pop(job.job_id, None)


async def _reap(job: EncodeJob) -> None:
    # Kill first: everything before the first await runs even if we are
    # being cancelled again
    _release_job(job)
    if job.process is not None:
        with suppress(asyncio.TimeoutError, ProcessLookupError):
            await asyncio.wait_for(job.process.wait(), _KILL_WAIT_SEC)


async def _finish(
    job: EncodeJob,
    process: asyncio.subprocess.Process,
    monitor: asyncio.Task[None],
    stderr_lines: list[str],
    cancel: asyncio.Event,
) -> None:
    try:
        returncode = await await_or_abort(process.wait(), cancel, job.remaining())
    except (Cancelled, EncodeTimeout) as e:
        _log_abort(job, e)
        raise
    # Let the monitor drain the last stderr lines
    await asyncio.wait({monitor}, timeout=1.0)
    _check_exit(job, returncode, stderr_lines)


def _check_exit(job: EncodeJob, returncode: int, stderr_lines: list[str]) -> None:
    if returncode == 0:
        log.info("Job %s finished in %.1fs", job.job_id, time.time() - job.started)
        return
    error_msg = "\n".join(stderr_lines[-_STDERR_TAIL_LINES:]) if stderr_lines else "unknown"
    log.error("ffmpeg:%s failed (exit %d): %s", job.job_id, returncode, error_msg)
    raise EncodeFailure(diagnostic=error_msg)


def _log_abort(job: EncodeJob, e: Exception) -> None:
    if isinstance(e, EncodeTimeout):
        log.warning("Job %s exceeded its deadline, killing ffmpeg", job.job_id)
    elif isinstance(e, Cancelled):
        log.info("Job %s cancelled by client disconnect", job.job_id)


async def encode_to_file(job: EncodeJob, cancel: asyncio.Event) -> pathlib.Path:
    """Run the job to completion and return its output file.

    The output file is deleted on every failure path.
    """
    assert job.output_path is not None
    stderr_lines: list[str] = []
    ok = False
    try:
        process, monitor = await _spawn(job, stderr_lines)
        await _finish(job, process, monitor, stderr_lines, cancel)
        ok = True
        return job.output_path
    finally:
        if not ok:
            _release_job(job)
            with suppress(OSError):
                job.output_path.unlink(missing_ok=True)
        await _reap(job)


async def stream_encode(job: EncodeJob, cancel: asyncio.Event) -> AsyncIterator[bytes]:
    """Yield ffmpeg stdout as it is produced, with no intermediate file."""
    assert job.output_path is None
    stderr_lines: list[str] = []
    try:
        process, monitor = await _spawn(job, stderr_lines)
        assert process.stdout is not None
        while True:
            try:
                chunk = await await_or_abort(
                    process.stdout.read(_STREAM_CHUNK_BYTES), cancel, job.remaining()
                )
            except (Cancelled, EncodeTimeout) as e:
                _log_abort(job, e)
                raise
            if not chunk:
                break
            yield chunk
        await _finish(job, process, monitor, stderr_lines, cancel)
    finally:
        await _reap(job)


@asynccontextmanager
async def _admitted(gate: ConcurrencyGate, cancel: asyncio.Event) -> AsyncIterator[GateSlot]:
    # Waiting for a slot can be abandoned by the client too
    slot = await await_or_abort(gate.acquire(), cancel, None)
    try:
        yield slot
    finally:
        slot.release()


def make_output_path(work_dir: pathlib.Path) -> pathlib.Path:
    work_dir.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="clip_", suffix=".mp4", dir=work_dir)
    os.close(fd)
    return pathlib.Path(name)


async def run_clip_to_file(
    gate: ConcurrencyGate,
    source_path: pathlib.Path,
    time_range: TimeRange,
    mode: TrimMode,
    intent: str,
    work_dir: pathlib.Path,
    cancel: asyncio.Event,
) -> pathlib.Path:
    """Wait for a gate slot, then trim into a new temp file."""
    async with _admitted(gate, cancel):
        job = new_job(source_path, time_range, mode, intent, None)
        job.output_path = make_output_path(work_dir)
        return await encode_to_file(job, cancel)


async def stream_clip(
    gate: ConcurrencyGate,
    source_path: pathlib.Path,
    time_range: TimeRange,
    mode: TrimMode,
    intent: str,
    cancel: asyncio.Event,
) -> AsyncIterator[bytes]:
    """Wait for a gate slot, then yield the trimmed stream.

    Admission happens on first iteration, so a response that is never
    started never holds a slot.
    """
    async with _admitted(gate, cancel):
        job = new_job(source_path, time_range, mode, intent, None)
        async with aclosing(stream_encode(job, cancel)) as chunks:
            async for chunk in chunks:
                yield chunk


def active_jobs() -> list[dict[str, Any]]:
    with _jobs_lock:
        return [
            {
                "job_id": job.job_id,
                "intent": job.intent,
                "mode": job.mode.value,
                "duration_ms": job.time_range.duration_ms,
                "running_secs": round(time.time() - job.started, 1),
            }
            for job in _active_jobs.values()
        ]


def shutdown() -> None:
    """Kill all running ffmpeg processes for clean shutdown."""
    with _jobs_lock:
        for job_id, job in list(_active_jobs.items()):
            if job.process and job.process.returncode is None and _kill_process(job.process):
                log.info("Shutdown: killed ffmpeg for job %s", job_id)
        _active_jobs.clear()


def _test_encoder(cmd: list[str], timeout: int = _PROBE_TIMEOUT_SEC) -> tuple[bool, str]:
    """Test if an encoder works. Returns (success, error_message)."""
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout)
        if result.returncode == 0:
            return True, ""
        stderr = result.stderr.decode(errors="replace").strip()
        # Extract the most relevant error line
        for line in stderr.split("\n"):
            if line and not line.startswith("["):
                return False, line
        return False, stderr if stderr else "unknown error"
    except subprocess.TimeoutExpired:
        return False, "timeout"
    except FileNotFoundError:
        return False, "ffmpeg not found"
    except Exception as e:
        return False, str(e)


def probe_encoder() -> dict[str, Any]:
    """Check that ffmpeg can encode H.264/AAC, as PRECISE mode needs."""
    cmd = [
        _ffmpeg_path(),
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "lavfi",
        "-i",
        "color=black:s=64x64:d=0.04",
        "-f",
        "lavfi",
        "-i",
        "anullsrc=r=48000:cl=stereo",
        "-frames:v",
        "1",
        "-t",
        "0.04",
        "-c:v",
        "libx264",
        "-preset",
        "ultrafast",
        "-c:a",
        "aac",
        "-f",
        "null",
        "-",
    ]
    ok, err = _test_encoder(cmd)
    if ok:
        log.info("Encoder (libx264/aac): available")
    else:
        log.warning("Encoder (libx264/aac): unavailable - %s", err)
    return {"available": ok, "error": err}
