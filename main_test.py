"""End-to-end tests for the HTTP routes in main.py."""

from __future__ import annotations

import asyncio
import time

import httpx
import pytest
from fastapi.testclient import TestClient

import cache
import main
import transcoding
from cache import AssetMetadata
from drive import DriveClient
from errors import MetadataUnavailable


class FakeStore:
    """In-memory stand-in for the Drive client."""

    def __init__(self, data: bytes = b"v" * 1000, declared_size: int | None = None) -> None:
        self.data = data
        self.declared_size = declared_size
        self.fail_metadata = False
        self.meta_calls = 0
        self.fetch_calls = 0

    async def get_metadata(self, asset_id: str) -> AssetMetadata:
        self.meta_calls += 1
        if self.fail_metadata:
            raise MetadataUnavailable(diagnostic="status 404")
        size = len(self.data) if self.declared_size is None else self.declared_size
        return AssetMetadata(size, "video/mp4", "My Video.mp4")

    async def fetch_content(self, asset_id: str):
        self.fetch_calls += 1
        for i in range(0, len(self.data), 128):
            yield self.data[i : i + 128]

    async def aclose(self) -> None:
        pass


@pytest.fixture
def settings(tmp_path, monkeypatch, make_ffmpeg):
    cache_dir = tmp_path / "cache"
    monkeypatch.setattr(cache, "CACHE_DIR", cache_dir)
    monkeypatch.setattr(cache, "SERVER_SETTINGS_FILE", cache_dir / "server_settings.json")
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.setattr(main, "_kill_orphaned_ffmpeg", lambda cache_dir: None)
    monkeypatch.setattr(
        transcoding, "probe_encoder", lambda: {"available": True, "error": ""}
    )
    data = {
        "session_secret": "test-secret",
        "google_api_key": "test-key",
        "ffmpeg_path": str(make_ffmpeg("ok")),
        "encoder_threads": 1,
    }
    cache.save_server_settings(data)
    yield data
    transcoding.init(dict)


def _use_encoder(settings: dict, path) -> None:
    settings["ffmpeg_path"] = str(path)
    cache.save_server_settings(settings)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def client(settings, store):
    with TestClient(main.app) as client:
        main.app.state.store = store
        yield client


def _clips_dir():
    return cache.CACHE_DIR / "clips"


class TestPreview:
    def test_preview_handle_and_retrieval(self, client, store):
        response = client.get("/clip/abc", params={"start": 1, "end": 3})
        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "copy"
        assert body["force_precise"] is False
        assert body["start_ms"] == 1000
        assert body["duration_ms"] == 2000
        assert body["url"] == f"/preview/{body['id']}"
        assert response.headers["x-trim-mode"] == "copy"

        preview = client.get(body["url"])
        assert preview.status_code == 200
        assert preview.headers["content-type"] == "video/mp4"
        assert preview.content.startswith(b"FAKEMP4")
        assert b"-ss 1.000 -i" in preview.content

    def test_range_request_gets_partial_content(self, client):
        url = client.get("/clip/abc", params={"start": 1, "end": 3}).json()["url"]
        full = client.get(url).content
        partial = client.get(url, headers={"Range": "bytes=0-9"})
        assert partial.status_code == 206
        assert partial.headers["content-range"] == f"bytes 0-9/{len(full)}"
        assert partial.headers["content-length"] == "10"
        assert partial.content == full[:10]

    def test_subsecond_range_is_precise(self, client):
        response = client.get("/clip/abc", params={"start_ms": 2500, "end_ms": 4800})
        body = response.json()
        assert body["mode"] == "precise"
        assert body["force_precise"] is True
        assert body["duration_ms"] == 2300
        content = client.get(body["url"]).content
        assert b"libx264" in content
        assert b"-t 2.300" in content

    def test_other_session_forbidden(self, client):
        url = client.get("/clip/abc", params={"start": 1, "end": 3}).json()["url"]
        client.cookies.clear()
        response = client.get(url)
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_expired_preview_not_found(self, client):
        body = client.get("/clip/abc", params={"start": 1, "end": 3}).json()
        assert main.app.state.previews.sweep_expired(now=time.time() + 10_000) == 1
        assert client.get(body["url"]).status_code == 404
        assert list(_clips_dir().iterdir()) == []

    def test_evict_preview(self, client):
        url = client.get("/clip/abc", params={"start": 1, "end": 3}).json()["url"]
        assert client.delete(url).json() == {"status": "evicted"}
        assert client.get(url).status_code == 404

    def test_unknown_preview(self, client):
        response = client.get("/preview/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_source_fetched_once_per_session(self, client, store):
        client.get("/clip/abc", params={"start": 1, "end": 3})
        client.get("/clip/abc", params={"start": 4, "end": 6})
        assert store.fetch_calls == 1
        assert store.meta_calls == 2


class TestDownload:
    def test_download_attachment_removed_after_send(self, client):
        response = client.get(
            "/clip/abc", params={"start_ms": 1000, "end_ms": 3000, "intent": "download"}
        )
        assert response.status_code == 200
        disposition = response.headers["content-disposition"]
        assert disposition.startswith("attachment")
        assert "1000-3000.mp4" in disposition
        assert response.content.startswith(b"FAKEMP4")
        assert list(_clips_dir().iterdir()) == []

    def test_streamed_download(self, client):
        response = client.get(
            "/clip/abc", params={"start": 1, "end": 3, "intent": "download", "stream": "true"}
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "video/mp4"
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.count(b"FAKEMP4") == 4
        assert b"frag_keyframe" in response.content
        assert main.app.state.gate.running == 0

    def test_download_uses_quality_profile(self, client):
        response = client.get(
            "/clip/abc", params={"start": 1, "end": 3, "intent": "download", "mode": "precise"}
        )
        assert response.headers["x-trim-mode"] == "precise"
        assert b"-preset veryfast" in response.content


class TestErrors:
    def test_invalid_range_rejected_before_fetch(self, client, store):
        response = client.get("/clip/abc", params={"start": 5, "end": 2})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_range"
        assert store.meta_calls == 0

    def test_missing_range(self, client):
        assert client.get("/clip/abc").status_code == 400

    def test_unknown_intent(self, client, store):
        response = client.get("/clip/abc", params={"start": 1, "end": 3, "intent": "gif"})
        assert response.status_code == 400
        assert store.meta_calls == 0

    def test_metadata_unavailable(self, client, store):
        store.fail_metadata = True
        response = client.get("/clip/abc", params={"start": 1, "end": 3})
        assert response.status_code == 424
        assert "public" in response.json()["detail"]

    def test_encode_failure_hides_stderr(self, client, settings, make_ffmpeg):
        _use_encoder(settings, make_ffmpeg("fail"))
        response = client.get("/clip/abc", params={"start": 1, "end": 3})
        assert response.status_code == 500
        assert response.json()["error"] == "encode_failed"
        assert "Invalid data" not in response.text
        assert main.app.state.gate.running == 0
        assert list(_clips_dir().iterdir()) == []

    def test_encode_timeout(self, client, settings, make_ffmpeg):
        _use_encoder(settings, make_ffmpeg("sleep"))
        settings["preview_timeout_secs"] = 0.5
        cache.save_server_settings(settings)
        response = client.get("/clip/abc", params={"start": 1, "end": 3})
        assert response.status_code == 504
        assert transcoding.active_jobs() == []

    def test_incomplete_download_then_retry(self, client, store):
        store.declared_size = 2000
        response = client.get("/clip/abc", params={"start": 1, "end": 3})
        assert response.status_code == 503
        assert response.json()["error"] == "integrity_error"

        store.declared_size = None
        assert client.get("/clip/abc", params={"start": 1, "end": 3}).status_code == 200
        assert store.fetch_calls == 2


class TestStreamedErrors:
    def test_streamed_encode_failure_has_status(self, client, settings, make_ffmpeg):
        _use_encoder(settings, make_ffmpeg("fail"))
        response = client.get(
            "/clip/abc", params={"start": 1, "end": 3, "intent": "download", "stream": "true"}
        )
        assert response.status_code == 500
        assert response.json()["error"] == "encode_failed"
        assert main.app.state.gate.running == 0
        assert transcoding.active_jobs() == []

    def test_streamed_encode_timeout_has_status(self, client, settings, make_ffmpeg):
        _use_encoder(settings, make_ffmpeg("sleep"))
        settings["preview_timeout_secs"] = 0.5
        cache.save_server_settings(settings)
        response = client.get("/clip/abc", params={"start": 1, "end": 3, "stream": "true"})
        assert response.status_code == 504
        assert main.app.state.gate.running == 0


class TestClientDisconnect:
    def test_disconnect_mid_encode_kills_job(self, client, settings, make_ffmpeg):
        _use_encoder(settings, make_ffmpeg("sleep"))
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/clip/abc",
            "raw_path": b"/clip/abc",
            "query_string": b"start=1&end=3",
            "root_path": "",
            "headers": [(b"host", b"testserver")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        sent = []

        async def scenario():
            loop = asyncio.get_running_loop()
            request_sent = False

            async def receive():
                nonlocal request_sent
                if not request_sent:
                    request_sent = True
                    return {"type": "http.request", "body": b"", "more_body": False}
                # Hang up once ffmpeg is running
                for _ in range(500):
                    if transcoding.active_jobs():
                        break
                    await asyncio.sleep(0.01)
                return {"type": "http.disconnect"}

            async def send(message):
                sent.append(message)

            began = loop.time()
            await main.app(scope, receive, send)
            return loop.time() - began

        elapsed = asyncio.run(scenario())
        assert elapsed < 5
        assert sent[0]["status"] == 499
        assert main.app.state.gate.running == 0
        assert transcoding.active_jobs() == []
        assert list(_clips_dir().iterdir()) == []


class TestSourcePlayback:
    def test_large_source_served_with_ranges(self, client, store):
        main.app.state.sources.large_threshold = 100
        response = client.get("/video/abc", headers={"Range": "bytes=0-9"})
        assert response.status_code == 206
        assert response.content == store.data[:10]
        assert response.headers["content-range"] == f"bytes 0-9/{len(store.data)}"

    def test_small_source_proxied_with_range(self, client):
        body = b"0123456789"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("alt") != "media":
                return httpx.Response(200, json={"size": str(len(body)), "mimeType": "video/mp4"})
            assert request.headers["range"] == "bytes=2-5"
            return httpx.Response(
                206,
                headers={"Content-Range": f"bytes 2-5/{len(body)}", "Content-Length": "4"},
                content=body[2:6],
            )

        main.app.state.store = DriveClient(
            "test-key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        response = client.get("/video/abc", headers={"Range": "bytes=2-5"})
        assert response.status_code == 206
        assert response.content == b"2345"
        assert response.headers["content-range"] == "bytes 2-5/10"


def test_status(client):
    client.get("/clip/abc", params={"start": 1, "end": 3})
    status = client.get("/status").json()
    assert status["gate"] == {"capacity": 1, "running": 0, "waiting": 0}
    assert status["jobs"] == []
    assert status["previews"] == 1
    assert status["encoder"]["available"] is True
