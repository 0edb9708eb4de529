"""Google Drive client for public video assets."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx

from cache import AssetMetadata
from errors import FetchFailed, MetadataUnavailable


log = logging.getLogger(__name__)

_CHUNK_BYTES = 256 * 1024


class DriveClient:
    """Fetches metadata and content of publicly shared Drive files."""

    BASE_URL = "https://www.googleapis.com/drive/v3/files"

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        # No read timeout on content: large downloads can legitimately stall
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, read=None), follow_redirects=True
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _content_url(self, asset_id: str) -> str:
        return f"{self.BASE_URL}/{asset_id}"

    async def get_metadata(self, asset_id: str) -> AssetMetadata:
        """Return size, mime type and name of the asset.

        Raises:
            MetadataUnavailable: If the file is missing, private, or the API fails
        """
        params = {"fields": "size,mimeType,name", "key": self.api_key}
        try:
            response = await self._client.get(self._content_url(asset_id), params=params)
            meta = response.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Metadata request for %s failed: %s", asset_id, e)
            raise MetadataUnavailable(diagnostic=str(e)) from e

        # Drive omits size for folders and for files we may not read
        if response.status_code != 200 or not meta.get("size"):
            log.warning("No metadata for %s (status %d)", asset_id, response.status_code)
            raise MetadataUnavailable(diagnostic=f"status {response.status_code}")
        return AssetMetadata(
            size_bytes=int(meta["size"]),
            mime_type=meta.get("mimeType") or "video/mp4",
            name=meta.get("name", ""),
        )

    async def fetch_content(self, asset_id: str) -> AsyncIterator[bytes]:
        """Yield the full file body.

        Raises:
            FetchFailed: On a non-success response or transport error
        """
        params = {"alt": "media", "key": self.api_key}
        try:
            async with self._client.stream(
                "GET", self._content_url(asset_id), params=params
            ) as response:
                if response.status_code != 200:
                    raise FetchFailed(diagnostic=f"status {response.status_code}")
                async for chunk in response.aiter_bytes(_CHUNK_BYTES):
                    yield chunk
        except httpx.HTTPError as e:
            log.warning("Download of %s failed: %s", asset_id, e)
            raise FetchFailed(diagnostic=str(e)) from e

    async def open_passthrough(self, asset_id: str, range_header: str | None) -> httpx.Response:
        """Open the file body for proxying, forwarding the client's Range.

        The caller owns the returned response and must close it.
        """
        params = {"alt": "media", "key": self.api_key}
        headers = {"Range": range_header} if range_header else {}
        request = self._client.build_request(
            "GET", self._content_url(asset_id), params=params, headers=headers
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            log.warning("Passthrough of %s failed: %s", asset_id, e)
            raise FetchFailed(diagnostic=str(e)) from e
        if response.status_code not in (200, 206):
            await response.aclose()
            raise FetchFailed(diagnostic=f"status {response.status_code}")
        return response
