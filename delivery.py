"""Getting finished clips to the client: streamed downloads and previews."""

from __future__ import annotations

import asyncio
import logging
import pathlib
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

import anyio
from starlette.requests import Request
from starlette.responses import FileResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from errors import ClipError, Forbidden, NotFound


log = logging.getLogger(__name__)

PREVIEW_TTL = 600  # 10 minutes


def _remove_file(path: pathlib.Path) -> None:
    """Best-effort delete, the file may already be gone."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug("Could not delete %s: %s", path, e)


class UnlinkOnce:
    """Deletes a file the first time it is called, then does nothing."""

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path
        self._done = False
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self._done

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        _remove_file(self.path)
        log.debug("Removed temp file %s", self.path.name)


class TempFileResponse(FileResponse):
    """FileResponse whose file is deleted once the transfer ends, however it ends."""

    def __init__(self, path: pathlib.Path, **kwargs: Any) -> None:
        super().__init__(path, **kwargs)
        self.cleanup = UnlinkOnce(path)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.cleanup()


class ClosingStreamResponse(StreamingResponse):
    """StreamingResponse that always closes its iterator.

    Starlette drops the iterator on disconnect without closing it, which
    would leave ffmpeg (or an upstream connection) open until garbage
    collection.
    """

    def __init__(self, content: Any, cancel: asyncio.Event | None = None, **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self.cancel = cancel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except ClipError as e:
            # Headers are already sent, the body just ends early
            log.warning("Stream ended early (%s): %s", e.code, e.diagnostic or e.message)
        finally:
            if self.cancel is not None:
                self.cancel.set()
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                with anyio.CancelScope(shield=True):
                    await aclose()


async def watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    """Set ``cancel`` as soon as the client goes away."""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            log.debug("Client disconnected from %s", request.url.path)
            cancel.set()
            return


@dataclass(slots=True)
class PreviewHandle:
    id: str
    file_path: pathlib.Path
    session_id: str
    expires_at: float
    created: float

    def expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class PreviewRegistry:
    """Finished preview files, addressable by opaque id within one session."""

    def __init__(self, ttl_sec: float = PREVIEW_TTL) -> None:
        self.ttl_sec = ttl_sec
        self._handles: dict[str, PreviewHandle] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def register(self, file_path: pathlib.Path, session_id: str) -> PreviewHandle:
        now = time.time()
        handle = PreviewHandle(
            id=uuid.uuid4().hex,
            file_path=file_path,
            session_id=session_id,
            expires_at=now + self.ttl_sec,
            created=now,
        )
        with self._lock:
            self._handles[handle.id] = handle
        log.info("Registered preview %s (session %s)", handle.id, session_id[:8])
        return handle

    def lookup(self, handle_id: str, session_id: str) -> PreviewHandle:
        """Return the handle if it is live and owned by ``session_id``.

        Raises:
            NotFound: Unknown, expired, or file missing
            Forbidden: Owned by another session
        """
        with self._lock:
            handle = self._handles.get(handle_id)
        if handle is None:
            raise NotFound()
        if handle.expired():
            self.evict(handle_id)
            raise NotFound()
        if handle.session_id != session_id:
            log.warning("Session %s tried to read preview %s", session_id[:8], handle_id)
            raise Forbidden()
        if not handle.file_path.exists():
            self.evict(handle_id)
            raise NotFound()
        return handle

    def evict(self, handle_id: str) -> bool:
        with self._lock:
            handle = self._handles.pop(handle_id, None)
        if handle is None:
            return False
        _remove_file(handle.file_path)
        log.info("Evicted preview %s", handle_id)
        return True

    def sweep_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [h for h in self._handles.values() if h.expired(now)]
            for h in expired:
                del self._handles[h.id]
        for h in expired:
            _remove_file(h.file_path)
        if expired:
            log.info("Expired %d previews", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for h in handles:
            _remove_file(h.file_path)

    async def run_sweeper(self, interval_sec: float) -> None:
        while True:
            await asyncio.sleep(interval_sec)
            self.sweep_expired()


def remove_stale_clips(clips_dir: pathlib.Path) -> int:
    """Delete clip outputs left behind by a previous run."""
    count = 0
    for p in clips_dir.glob("clip_*.mp4"):
        _remove_file(p)
        count += 1
    if count:
        log.info("Removed %d stale clip files", count)
    return count
