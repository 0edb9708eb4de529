"""Error kinds raised by the clip pipeline, each mapped to its own HTTP status."""

from __future__ import annotations


class ClipError(Exception):
    """Base error. ``message`` is safe to show clients, ``diagnostic`` is not."""

    status_code = 500
    code = "error"
    message = "Internal error"

    def __init__(self, message: str | None = None, diagnostic: str = "") -> None:
        if message is not None:
            self.message = message
        self.diagnostic = diagnostic
        super().__init__(self.message)


class InvalidRange(ClipError):
    status_code = 400
    code = "invalid_range"
    message = "Invalid time range"


class Forbidden(ClipError):
    status_code = 403
    code = "forbidden"
    message = "Preview belongs to another session"


class NotFound(ClipError):
    status_code = 404
    code = "not_found"
    message = "Preview not found or expired"


class MetadataUnavailable(ClipError):
    status_code = 424
    code = "metadata_unavailable"
    message = "Cannot access file metadata (make sure file is public)"


class Cancelled(ClipError):
    # nginx convention for "client closed request"
    status_code = 499
    code = "cancelled"
    message = "Request cancelled by client"


class EncodeFailure(ClipError):
    status_code = 500
    code = "encode_failed"
    message = "Transcode failed - check server logs for details"


class FetchFailed(ClipError):
    status_code = 502
    code = "fetch_failed"
    message = "Failed to download file from remote store"


class IntegrityError(ClipError):
    status_code = 503
    code = "integrity_error"
    message = "Downloaded file is incomplete, please retry"


class EncodeTimeout(ClipError):
    status_code = 504
    code = "encode_timeout"
    message = "Transcode took too long"
