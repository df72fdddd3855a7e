"""Error taxonomy shared by the upload, transcode and delivery paths."""

from __future__ import annotations


class MovieDropError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500


class ValidationError(MovieDropError):
    """Bad extension, size or chunk shape. Never retried."""

    status_code = 400


class SessionNotFound(MovieDropError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Upload session not found: {session_id}")
        self.session_id = session_id


class SessionExpired(MovieDropError):
    status_code = 410

    def __init__(self, session_id: str):
        super().__init__(f"Upload session expired: {session_id}")
        self.session_id = session_id


class IncompleteUpload(MovieDropError):
    """Raised by complete when some chunk indices were never accepted."""

    status_code = 400

    def __init__(self, session_id: str, missing: list[int]):
        preview = ", ".join(str(i) for i in missing[:10])
        if len(missing) > 10:
            preview += ", ..."
        super().__init__(f"Missing chunks ({len(missing)}): {preview}. Upload incomplete.")
        self.session_id = session_id
        self.missing = missing


class RangeNotSatisfiable(MovieDropError):
    status_code = 416

    def __init__(self, size: int):
        super().__init__("Range not satisfiable")
        self.size = size


class TransientTransferError(MovieDropError):
    """Rate-limited chunk transfer that exhausted its retries (client side)."""

    status_code = 429


class TranscodeFailure(MovieDropError):
    """External transcoder exited unsuccessfully or produced no output."""
