#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]", "httpx", "itsdangerous"]
# ///
"""Clip server: trim segments out of shared Drive videos.

Usage:
    ./main.py [--host HOST] [--port PORT] [--debug] [--cert FILE --key FILE]

Options:
    --host HOST     Interface to bind (default: 0.0.0.0)
    --port PORT     Port to listen on (default: 3000)
    --debug         Verbose logging, including ffmpeg stderr
    --cert FILE     SSL certificate file
    --key FILE      SSL private key file

Examples:
    GOOGLE_API_KEY=... ./main.py
    curl -b jar -c jar 'localhost:3000/clip/FILE_ID?start=10&end=15'
    curl -b jar -c jar 'localhost:3000/clip/FILE_ID?start_ms=2500&end_ms=4800&intent=download' -OJ
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import pathlib
import secrets
import signal
import subprocess
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

import httpx
from fastapi import Depends
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Request
from fastapi.responses import FileResponse
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

import cache
import transcoding
from cache import AssetMetadata
from cache import SourceCache
from cache import is_valid_session_id
from delivery import ClosingStreamResponse
from delivery import PreviewRegistry
from delivery import TempFileResponse
from delivery import remove_stale_clips
from delivery import watch_disconnect
from drive import DriveClient
from errors import ClipError
from gate import ConcurrencyGate
from timerange import normalize_range
from transcoding import await_or_abort


log = logging.getLogger()

_SESSION_COOKIE = "clip_session"
_SESSION_MAX_AGE = 7 * 24 * 3600
_PREVIEW_SWEEP_SEC = 15


# =============================================================================
# App Setup
# =============================================================================


def _kill_orphaned_ffmpeg(cache_dir: pathlib.Path) -> None:
    """Kill ffmpeg processes left over from a previous run."""
    try:
        result = subprocess.run(
            ["pgrep", "-f", f"ffmpeg.*{cache_dir}"],
            check=False,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        log.debug("pgrep unavailable: %s", e)
        return
    for pid in result.stdout.strip().split("\n"):
        if pid:
            try:
                os.kill(int(pid), signal.SIGKILL)
                log.info("Killed orphaned ffmpeg pid %s", pid)
            except (ProcessLookupError, ValueError):
                pass


async def _session_sweeper(sources: SourceCache, interval_sec: float) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await asyncio.to_thread(sources.prune_stale)
        except OSError as e:
            log.error("Session sweep failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire up shared state, clean leftovers from the last run, start sweepers."""
    settings = cache.load_server_settings()
    transcoding.init(cache.load_server_settings)

    cache_dir = cache.CACHE_DIR
    _kill_orphaned_ffmpeg(cache_dir)

    clips_dir = cache_dir / "clips"
    clips_dir.mkdir(parents=True, exist_ok=True)
    remove_stale_clips(clips_dir)

    sources = SourceCache(
        cache_dir / "sessions",
        large_threshold=int(settings["large_asset_bytes"]),
        ttl_sec=float(settings["session_ttl_secs"]),
    )
    sources.clear_orphans()
    sources.prune_stale()

    store = DriveClient(settings["google_api_key"])
    previews = PreviewRegistry(float(settings["preview_ttl_secs"]))

    app.state.gate = ConcurrencyGate(int(settings["gate_capacity"]))
    app.state.previews = previews
    app.state.sources = sources
    app.state.store = store
    app.state.clips_dir = clips_dir
    app.state.encoder = await asyncio.to_thread(transcoding.probe_encoder)

    sweep_sec = min(_PREVIEW_SWEEP_SEC, float(settings["preview_ttl_secs"]))
    tasks = [
        asyncio.create_task(previews.run_sweeper(sweep_sec)),
        asyncio.create_task(_session_sweeper(sources, float(settings["sweep_interval_secs"]))),
    ]
    log.info("Clip server ready (gate capacity %d)", app.state.gate.capacity)

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    transcoding.shutdown()
    previews.clear()
    await store.aclose()


app = FastAPI(title="Clipper", lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=cache.load_server_settings()["session_secret"],
    session_cookie=_SESSION_COOKIE,
    max_age=_SESSION_MAX_AGE,
    same_site="lax",
)


@app.exception_handler(ClipError)
async def clip_error_handler(request: Request, exc: ClipError):
    # Diagnostics (ffmpeg stderr, upstream status) stay in the log
    if exc.diagnostic:
        log.warning("%s on %s: %s", exc.code, request.url.path, exc.diagnostic)
    else:
        log.info("%s on %s", exc.code, request.url.path)
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=exc.status_code)


def get_session_id(request: Request) -> str:
    """Session id from the signed cookie, issuing a new one on first contact."""
    session_id = request.session.get("sid")
    if not session_id or not is_valid_session_id(session_id):
        session_id = secrets.token_urlsafe(24)
        request.session["sid"] = session_id
        log.info("Issued session %s", session_id[:8])
    return session_id


SessionId = Annotated[str, Depends(get_session_id)]


def _download_name(metadata: AssetMetadata, asset_id: str, start_ms: int, end_ms: int) -> str:
    stem = cache._sanitize_name(pathlib.Path(metadata.name).stem) if metadata.name else ""
    return f"{stem or asset_id}_{start_ms}-{end_ms}.mp4"


async def _prepend(first: bytes, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    async with contextlib.aclosing(chunks):
        if first:
            yield first
        async for chunk in chunks:
            yield chunk


# =============================================================================
# Clip routes (logic in transcoding.py / delivery.py)
# =============================================================================


@app.get("/clip/{asset_id}")
async def extract_segment(
    request: Request,
    asset_id: str,
    session_id: SessionId,
    start_ms: float | None = None,
    end_ms: float | None = None,
    start: float | None = None,
    end: float | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    mode: str = "auto",  # "auto", "copy", or "precise"
    intent: str = "preview",  # "preview" or "download"
    stream: bool = False,
):
    """Trim a segment. Preview returns a handle, download returns the file."""
    if intent not in transcoding.INTENTS:
        raise HTTPException(400, "intent must be 'preview' or 'download'")
    # Validate before touching the cache or the gate
    rng = normalize_range(start_ms, end_ms, start, end, start_time, end_time, mode)
    state = request.app.state

    cancel = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel))
    try:
        metadata = await await_or_abort(state.store.get_metadata(asset_id), cancel, None)
        source = await await_or_abort(
            state.sources.resolve(session_id, asset_id, metadata, state.store.fetch_content),
            cancel,
            None,
        )
        if stream:
            # Start the encode while errors can still become a status code
            chunks = transcoding.stream_clip(
                state.gate, source.local_path, rng.time_range, rng.mode, intent, cancel
            )
            try:
                first = await chunks.__anext__()
            except StopAsyncIteration:
                first = b""
        else:
            path = await transcoding.run_clip_to_file(
                state.gate,
                source.local_path,
                rng.time_range,
                rng.mode,
                intent,
                state.clips_dir,
                cancel,
            )
    finally:
        # The response reads disconnects itself from here on
        watcher.cancel()

    headers = {"X-Trim-Mode": rng.mode.value, "Cache-Control": "no-store"}
    if stream:
        if intent == "download":
            name = _download_name(metadata, asset_id, rng.time_range.start_ms, rng.time_range.end_ms)
            headers["Content-Disposition"] = f'attachment; filename="{name}"'
        return ClosingStreamResponse(
            _prepend(first, chunks), cancel=cancel, media_type="video/mp4", headers=headers
        )

    if intent == "download":
        return TempFileResponse(
            path,
            media_type="video/mp4",
            filename=_download_name(
                metadata, asset_id, rng.time_range.start_ms, rng.time_range.end_ms
            ),
            headers=headers,
        )

    handle = state.previews.register(path, session_id)
    return JSONResponse(
        {
            "id": handle.id,
            "url": f"/preview/{handle.id}",
            "expires_at": handle.expires_at,
            "mode": rng.mode.value,
            "force_precise": rng.force_precise,
            "start_ms": rng.time_range.start_ms,
            "end_ms": rng.time_range.end_ms,
            "duration_ms": rng.time_range.duration_ms,
        },
        headers=headers,
    )


@app.get("/preview/{handle_id}")
async def retrieve_preview(request: Request, handle_id: str, session_id: SessionId):
    """Serve a materialized preview; Range requests get 206 partial content."""
    handle = request.app.state.previews.lookup(handle_id, session_id)
    return FileResponse(
        handle.file_path,
        media_type="video/mp4",
        headers={"Cache-Control": "no-store"},
    )


@app.delete("/preview/{handle_id}")
async def evict_preview(request: Request, handle_id: str, session_id: SessionId):
    previews: PreviewRegistry = request.app.state.previews
    previews.lookup(handle_id, session_id)
    previews.evict(handle_id)
    return {"status": "evicted"}


# =============================================================================
# Source playback
# =============================================================================


async def _relay(upstream: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_bytes():
            yield chunk
    finally:
        await upstream.aclose()


@app.get("/video/{asset_id}")
async def play_source(request: Request, asset_id: str, session_id: SessionId):
    """Play the whole source video.

    Large files are cached locally (one per session) and served with range
    support; small ones are proxied straight from Drive.
    """
    state = request.app.state
    metadata = await state.store.get_metadata(asset_id)
    if state.sources.is_large(metadata.size_bytes):
        cancel = asyncio.Event()
        watcher = asyncio.create_task(watch_disconnect(request, cancel))
        try:
            source = await await_or_abort(
                state.sources.resolve(session_id, asset_id, metadata, state.store.fetch_content),
                cancel,
                None,
            )
        finally:
            watcher.cancel()
        return FileResponse(source.local_path, media_type=metadata.mime_type)

    upstream = await state.store.open_passthrough(asset_id, request.headers.get("range"))
    headers = {
        k: v
        for k, v in upstream.headers.items()
        if k.lower() in ("content-length", "content-range", "accept-ranges")
    }
    return ClosingStreamResponse(
        _relay(upstream),
        status_code=upstream.status_code,
        headers=headers,
        media_type=metadata.mime_type,
    )


@app.get("/status")
async def status(request: Request) -> dict[str, Any]:
    state = request.app.state
    return {
        "gate": state.gate.stats(),
        "jobs": transcoding.active_jobs(),
        "previews": len(state.previews),
        "encoder": state.encoder,
    }


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="Clip server")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument(
        "--port", type=int, default=int(os.environ.get("PORT", 3000)), help="Port to listen on"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--cert", help="SSL certificate file (e.g., fullchain.pem)")
    parser.add_argument("--key", help="SSL private key file (e.g., privkey.pem)")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    if not cache.load_server_settings()["google_api_key"]:
        raise SystemExit("Missing GOOGLE_API_KEY (env or server_settings.json)")

    ssl_args = {}
    if args.cert and args.key:
        ssl_args = {"ssl_certfile": args.cert, "ssl_keyfile": args.key}

    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        access_log=args.debug,
        log_level=uv_log,
        **ssl_args,  # pyright: ignore[reportArgumentType]
    )
