"""Settings and the per-session source file cache."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import asyncio
import json
import logging
import os
import pathlib
import re
import secrets
import shutil
import threading
import time

from errors import IntegrityError


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = pathlib.Path(os.environ.get("CLIPPER_CACHE_DIR") or APP_DIR / ".cache")
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"

LARGE_ASSET_BYTES = 100 * 1024 * 1024  # 100MB, one per session
SESSION_TTL = 3600  # 1 hour

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")

_EXT_MAP = {
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/x-matroska": "mkv",
    "video/webm": "webm",
}


def load_server_settings() -> dict[str, Any]:
    """Load server-wide settings, filling in defaults."""
    if SERVER_SETTINGS_FILE.exists():
        data: dict[str, Any] = json.loads(SERVER_SETTINGS_FILE.read_text())
    else:
        data = {}
    data.setdefault("gate_capacity", 1)
    data.setdefault("preview_timeout_secs", 120)
    data.setdefault("download_timeout_secs", 900)
    data.setdefault("preview_ttl_secs", 600)
    data.setdefault("session_ttl_secs", SESSION_TTL)
    data.setdefault("sweep_interval_secs", 60)
    data.setdefault("large_asset_bytes", LARGE_ASSET_BYTES)
    data.setdefault("ffmpeg_path", "ffmpeg")
    data.setdefault("encoder_threads", 2)
    data.setdefault("google_api_key", "")
    if env_key := os.environ.get("GOOGLE_API_KEY"):
        data["google_api_key"] = env_key
    if not data.get("session_secret"):
        # Persist so session cookies survive restarts
        data["session_secret"] = secrets.token_hex(32)
        save_server_settings(data)
    return data


def save_server_settings(settings: dict[str, Any]) -> None:
    """Save server-wide settings."""
    SERVER_SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVER_SETTINGS_FILE.write_text(json.dumps(settings, indent=2))


def is_valid_session_id(session_id: str) -> bool:
    return bool(_SESSION_ID_RE.match(session_id or ""))


def _sanitize_name(name: str) -> str:
    """Sanitize a name for use as a directory/file name."""
    name = name.replace("..", "").replace("/", "_").replace("\\", "_")
    name = "".join(c for c in name if c.isalnum() or c in "-_ ")
    return name[:224] or "default"


@dataclass(slots=True)
class AssetMetadata:
    size_bytes: int
    mime_type: str = "video/mp4"
    name: str = ""


@dataclass(slots=True)
class SourceAsset:
    asset_id: str
    session_id: str
    local_path: pathlib.Path
    size_bytes: int
    mime_type: str


@dataclass(slots=True)
class Session:
    id: str
    directory: pathlib.Path
    last_large_asset: SourceAsset | None = None


def _unlink(path: pathlib.Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning("Failed to delete %s: %s", path, e)


class SourceCache:
    """Local copies of remote assets, one directory per session."""

    def __init__(
        self,
        root: pathlib.Path,
        large_threshold: int = LARGE_ASSET_BYTES,
        ttl_sec: float = SESSION_TTL,
    ) -> None:
        self.root = root
        self.large_threshold = large_threshold
        self.ttl_sec = ttl_sec
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._fetch_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self.root.mkdir(parents=True, exist_ok=True)

    def session(self, session_id: str) -> Session:
        if not is_valid_session_id(session_id):
            raise ValueError("Invalid session id")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id, self.root / session_id)
                self._sessions[session_id] = session
        session.directory.mkdir(parents=True, exist_ok=True)
        return session

    def local_path(self, session_id: str, asset_id: str, mime_type: str) -> pathlib.Path:
        ext = _EXT_MAP.get(mime_type.split(";")[0].strip(), "mp4")
        return self.root / session_id / f"{_sanitize_name(asset_id)}.{ext}"

    def is_large(self, size_bytes: int) -> bool:
        return size_bytes > self.large_threshold

    async def resolve(
        self,
        session_id: str,
        asset_id: str,
        metadata: AssetMetadata,
        fetch: Callable[[str], AsyncIterator[bytes]],
    ) -> SourceAsset:
        """Return a complete local copy of the asset, downloading it if needed.

        A download whose size differs from ``metadata.size_bytes`` is deleted
        and raises IntegrityError; nothing retries automatically.
        """
        session = self.session(session_id)
        key = (session_id, asset_id)
        with self._lock:
            lock = self._fetch_locks.setdefault(key, asyncio.Lock())
        async with lock:
            path = self.local_path(session_id, asset_id, metadata.mime_type)
            asset = SourceAsset(asset_id, session_id, path, metadata.size_bytes, metadata.mime_type)
            if path.exists() and path.stat().st_size == metadata.size_bytes:
                os.utime(path)
                log.info("Source cache hit for %s (session %s)", asset_id, session_id[:8])
            else:
                await self._download(asset, fetch)

            if self.is_large(metadata.size_bytes):
                # No await between evict and assign: concurrent fetches of
                # different large assets settle on the last one to finish
                self._evict_previous_large(session, asset)
                session.last_large_asset = asset
            return asset

    def _evict_previous_large(self, session: Session, asset: SourceAsset) -> None:
        previous = session.last_large_asset
        if previous is None or previous.local_path == asset.local_path:
            return
        _unlink(previous.local_path)
        session.last_large_asset = None
        log.info("Evicted previous large asset %s (session %s)", previous.asset_id, session.id[:8])

    async def _download(
        self,
        asset: SourceAsset,
        fetch: Callable[[str], AsyncIterator[bytes]],
    ) -> None:
        path = asset.local_path
        tmp = path.with_suffix(path.suffix + ".part")
        log.info("Downloading %s (%d bytes) to %s", asset.asset_id, asset.size_bytes, path)
        ok = False
        try:
            with open(tmp, "wb") as f:
                async for chunk in fetch(asset.asset_id):
                    await asyncio.to_thread(f.write, chunk)
            size = tmp.stat().st_size
            if size != asset.size_bytes:
                raise IntegrityError(
                    diagnostic=f"{asset.asset_id}: expected {asset.size_bytes} bytes, got {size}"
                )
            # Atomic: only complete files ever carry the final name
            tmp.rename(path)
            ok = True
            log.info("Download complete: %s", path.name)
        finally:
            if not ok:
                _unlink(tmp)
                _unlink(path)

    def prune_stale(self, now: float | None = None) -> int:
        """Remove session dirs whose files are all older than the TTL."""
        now = time.time() if now is None else now
        removed = 0
        if not self.root.exists():
            return 0
        for d in self.root.iterdir():
            if not d.is_dir():
                continue
            try:
                mtimes = [p.stat().st_mtime for p in d.rglob("*") if p.is_file()]
                newest = max(mtimes) if mtimes else d.stat().st_mtime
            except OSError:
                continue
            if now - newest <= self.ttl_sec:
                continue
            with self._lock:
                self._sessions.pop(d.name, None)
                for k in [k for k in self._fetch_locks if k[0] == d.name]:
                    del self._fetch_locks[k]
            shutil.rmtree(d, ignore_errors=True)
            removed += 1
            log.info("Removed expired session dir %s", d.name[:8])
        return removed

    def clear_orphans(self) -> int:
        """Delete interrupted downloads left over from a previous run."""
        count = 0
        for p in self.root.glob("*/*.part"):
            _unlink(p)
            count += 1
        if count:
            log.info("Removed %d partial downloads", count)
        return count
