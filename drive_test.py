"""Tests for drive.py."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from drive import DriveClient
from errors import FetchFailed, MetadataUnavailable


def _client(handler) -> DriveClient:
    return DriveClient("test-key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _run(drive: DriveClient, coro_fn):
    async def scenario():
        try:
            return await coro_fn()
        finally:
            await drive.aclose()

    return asyncio.run(scenario())


class TestMetadata:
    def test_returns_metadata(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"size": "1048576", "mimeType": "video/webm", "name": "Talk.webm"}
            )

        drive = _client(handler)
        meta = _run(drive, lambda: drive.get_metadata("file123"))
        assert meta.size_bytes == 1048576
        assert meta.mime_type == "video/webm"
        assert meta.name == "Talk.webm"
        assert seen[0].url.path == "/drive/v3/files/file123"
        assert seen[0].url.params["fields"] == "size,mimeType,name"
        assert seen[0].url.params["key"] == "test-key"

    def test_missing_size_is_unavailable(self):
        drive = _client(lambda request: httpx.Response(200, json={"mimeType": "video/mp4"}))
        with pytest.raises(MetadataUnavailable):
            _run(drive, lambda: drive.get_metadata("folder"))

    def test_private_file_is_unavailable(self):
        drive = _client(
            lambda request: httpx.Response(404, json={"error": {"message": "File not found"}})
        )
        with pytest.raises(MetadataUnavailable) as exc_info:
            _run(drive, lambda: drive.get_metadata("private"))
        assert "404" in exc_info.value.diagnostic

    def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        drive = _client(handler)
        with pytest.raises(MetadataUnavailable):
            _run(drive, lambda: drive.get_metadata("file123"))

    def test_non_json_body_is_unavailable(self):
        drive = _client(lambda request: httpx.Response(200, text="<html>quota</html>"))
        with pytest.raises(MetadataUnavailable):
            _run(drive, lambda: drive.get_metadata("file123"))


class TestContent:
    def test_fetch_content_streams_body(self):
        body = bytes(range(256)) * 10

        def handler(request):
            assert request.url.params["alt"] == "media"
            return httpx.Response(200, content=body)

        drive = _client(handler)

        async def collect():
            return b"".join([chunk async for chunk in drive.fetch_content("file123")])

        assert _run(drive, collect) == body

    def test_fetch_content_error_status(self):
        drive = _client(lambda request: httpx.Response(403))

        async def collect():
            return [chunk async for chunk in drive.fetch_content("file123")]

        with pytest.raises(FetchFailed):
            _run(drive, collect)

    def test_fetch_content_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("stalled")

        drive = _client(handler)

        async def collect():
            return [chunk async for chunk in drive.fetch_content("file123")]

        with pytest.raises(FetchFailed):
            _run(drive, collect)


class TestPassthrough:
    def test_forwards_range(self):
        def handler(request):
            assert request.headers["range"] == "bytes=0-3"
            return httpx.Response(
                206, headers={"Content-Range": "bytes 0-3/10"}, content=b"abcd"
            )

        drive = _client(handler)

        async def relay():
            response = await drive.open_passthrough("file123", "bytes=0-3")
            try:
                return response.status_code, response.headers["content-range"], await response.aread()
            finally:
                await response.aclose()

        assert _run(drive, relay) == (206, "bytes 0-3/10", b"abcd")

    def test_no_range_header_when_absent(self):
        def handler(request):
            assert "range" not in request.headers
            return httpx.Response(200, content=b"whole")

        drive = _client(handler)

        async def relay():
            response = await drive.open_passthrough("file123", None)
            await response.aclose()
            return response.status_code

        assert _run(drive, relay) == 200

    def test_upstream_error(self):
        drive = _client(lambda request: httpx.Response(500))
        with pytest.raises(FetchFailed):
            _run(drive, lambda: drive.open_passthrough("file123", None))
