"""Byte-range file delivery.

Every response opens its own file handle and streams fixed-size blocks, so
any number of overlapping range requests can be served against one artifact
without loading it into memory.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import asyncio
import logging
import pathlib
import re

from fastapi.responses import Response
from starlette.responses import StreamingResponse

from errors import RangeNotSatisfiable


log = logging.getLogger(__name__)

_BLOCK_SIZE = 64 * 1024
_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")

# Cache lifetimes (seconds)
VIDEO_MAX_AGE = 3600
POSTER_MAX_AGE = 86400
PLAYLIST_MAX_AGE = 300
SEGMENT_MAX_AGE = 86400


def parse_range(header: str | None, size: int) -> tuple[int, int] | None:
    """Parse a single `bytes=start-end` range into inclusive offsets.

    Returns None when the whole file should be served (no header, or one we
    do not handle such as multiple ranges). Raises RangeNotSatisfiable when
    the range falls outside the file or start > end.
    """
    if not header:
        return None
    m = _RANGE_RE.match(header.strip())
    if not m:
        return None
    start_s, end_s = m.groups()
    if not start_s:
        if not end_s:
            return None
        # Suffix range: last N bytes
        suffix = int(end_s)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return max(0, size - suffix), size - 1
    start = int(start_s)
    end = int(end_s) if end_s else size - 1
    if start > end or start >= size or end >= size:
        raise RangeNotSatisfiable(size)
    return start, end


async def iter_file_range(
    path: pathlib.Path, start: int, length: int, block_size: int = _BLOCK_SIZE
) -> AsyncIterator[bytes]:
    f = await asyncio.to_thread(open, path, "rb")
    try:
        await asyncio.to_thread(f.seek, start)
        remaining = length
        while remaining > 0:
            data = await asyncio.to_thread(f.read, min(block_size, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data
    finally:
        f.close()


def ranged_file_response(
    path: pathlib.Path,
    range_header: str | None,
    media_type: str,
    max_age: int,
) -> Response:
    """200 with the whole file, 206 with the requested window, or 416."""
    size = path.stat().st_size
    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": f"public, max-age={max_age}",
    }
    try:
        byte_range = parse_range(range_header, size)
    except RangeNotSatisfiable:
        log.debug("416 for %s: %r (size %d)", path.name, range_header, size)
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
        )
    if byte_range is None:
        return StreamingResponse(
            iter_file_range(path, 0, size),
            status_code=200,
            media_type=media_type,
            headers={**headers, "Content-Length": str(size)},
        )
    start, end = byte_range
    length = end - start + 1
    return StreamingResponse(
        iter_file_range(path, start, length),
        status_code=206,
        media_type=media_type,
        headers={
            **headers,
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Content-Length": str(length),
        },
    )


async def full_file_response(path: pathlib.Path, media_type: str, max_age: int) -> Response:
    """Plain full-body response for small files (posters, playlists)."""
    content = await asyncio.to_thread(path.read_bytes)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Cache-Control": f"public, max-age={max_age}"},
    )
