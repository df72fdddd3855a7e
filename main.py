#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]", "python-multipart"]
# ///
"""Movie upload + streaming server.

Usage:
    ./main.py [--host HOST] [--port PORT] [--debug]

Options:
    --host HOST     Interface to bind (default: 0.0.0.0)
    --port PORT     Port to listen on (default: 3000)
    --debug         Enable debug logging and access log
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import pathlib
import shutil
import time
import urllib.parse
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated
from typing import Any

from fastapi import FastAPI
from fastapi import File
from fastapi import Form
from fastapi import HTTPException
from fastapi import Request
from fastapi import UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.responses import Response
from pydantic import BaseModel

import assets
import delivery
import settings
import transcoding
from errors import MovieDropError
from errors import ValidationError
from transcode_queue import TranscodeQueue
from uploads import ARTIFACT_NAME
from uploads import UploadRegistry


log = logging.getLogger()

_settings: dict[str, Any] = {}
_registry: UploadRegistry | None = None
_queue: TranscodeQueue | None = None


# =============================================================================
# Rate limiting
# =============================================================================


@dataclass(slots=True)
class _RateLimiter:
    """Sliding-window request counter per client IP."""

    max_requests: int
    window: float
    hits: dict[str, deque[float]] = field(default_factory=dict)

    def allow(self, ip: str, now: float) -> bool:
        q = self.hits.setdefault(ip, deque())
        while q and now - q[0] >= self.window:
            q.popleft()
        # Periodically clean stale IPs (when dict is large)
        if len(self.hits) > 1000:
            stale = [k for k, v in self.hits.items() if not v or now - v[-1] >= self.window]
            for k in stale[:100]:
                if k != ip:
                    del self.hits[k]
        if len(q) >= self.max_requests:
            return False
        q.append(now)
        return True


# Chunk uploads get their own, much larger pool so one big file's parallel
# chunk transfers are not mistaken for abuse of the general API
_general_limiter: _RateLimiter | None = None
_upload_limiter: _RateLimiter | None = None


# =============================================================================
# App Setup
# =============================================================================


def _build_transcoder(server_settings: dict[str, Any]) -> transcoding.Transcoder:
    settings.detect_transcoder()
    return transcoding.FfmpegTranscoder.from_settings(server_settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, recover sessions and jobs, start workers and sweeper."""
    global _settings, _registry, _queue, _general_limiter, _upload_limiter
    _settings = settings.load_server_settings()
    assets.init(settings.db_path(_settings))
    media_root = settings.media_dir(_settings)
    temp_root = settings.temp_dir(_settings)
    media_root.mkdir(parents=True, exist_ok=True)
    temp_root.mkdir(parents=True, exist_ok=True)

    _general_limiter = _RateLimiter(*_settings["rate_limit_general"])
    _upload_limiter = _RateLimiter(*_settings["rate_limit_upload"])

    _queue = TranscodeQueue.from_settings(_settings, _build_transcoder(_settings))
    _registry = UploadRegistry.from_settings(
        _settings, temp_root, media_root, enqueue=_queue.enqueue
    )
    recovered = await _registry.recover()
    if recovered:
        log.info("Recovered %d upload session(s)", recovered)
    await _queue.start()

    sweeper = asyncio.create_task(_registry.sweep_forever(_settings["sweep_interval_secs"]))
    log.info("Serving media from %s", media_root)

    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await _queue.stop()


app = FastAPI(title="moviedrop", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Range", "Content-Type"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    path = request.url.path
    if path.startswith("/api/") and path != "/api/health":
        limiter = _upload_limiter if path.startswith("/api/upload/") else _general_limiter
        ip = request.client.host if request.client else "unknown"
        if limiter is not None and not limiter.allow(ip, time.monotonic()):
            log.warning("Rate limited %s on %s", ip, path)
            return JSONResponse(
                {"error": "Too many requests, try again later"},
                status_code=429,
                headers={"Retry-After": str(int(limiter.window))},
            )
    return await call_next(request)


@app.exception_handler(MovieDropError)
async def movie_drop_error_handler(request: Request, exc: MovieDropError):
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


def _get_registry() -> UploadRegistry:
    if _registry is None:
        raise HTTPException(503, "Server is starting")
    return _registry


def _get_queue() -> TranscodeQueue:
    if _queue is None:
        raise HTTPException(503, "Server is starting")
    return _queue


# =============================================================================
# Upload API
# =============================================================================


class StartUploadRequest(BaseModel):
    filename: str
    fileSize: int
    chunkSize: int | None = None


class SessionRequest(BaseModel):
    sessionId: str


@app.post("/api/upload/start")
async def upload_start(body: StartUploadRequest):
    """Open an upload session and return the chunk plan."""
    return await _get_registry().start_session(body.filename, body.fileSize, body.chunkSize)


@app.post("/api/upload/chunk")
async def upload_chunk(
    sessionId: Annotated[str, Form()],
    chunkIndex: Annotated[int, Form()],
    chunk: Annotated[UploadFile, File()],
):
    registry = _get_registry()
    limit = registry.max_chunk_size
    payload = await chunk.read(limit + 1)
    if len(payload) > limit:
        raise ValidationError("Chunk too large")
    return await registry.accept_chunk(sessionId, chunkIndex, payload)


@app.post("/api/upload/complete")
async def upload_complete(body: SessionRequest):
    """Assemble the file and queue it for processing."""
    result = await _get_registry().complete_session(body.sessionId)
    return {**result, "message": "Upload completed successfully. Processing started."}


@app.post("/api/upload/cancel")
async def upload_cancel(body: SessionRequest):
    await _get_registry().cancel_session(body.sessionId)
    return {"message": "Upload cancelled"}


@app.get("/api/upload/{session_id}")
async def upload_status(session_id: str):
    """Session snapshot, including accepted chunk indices for resuming."""
    return _get_registry().get_session(session_id)


# =============================================================================
# Movies API
# =============================================================================


def _media_url(movie: dict[str, Any], *parts: str) -> str:
    base = (_settings.get("streaming_url") or "").rstrip("/")
    movie_dir = urllib.parse.quote(pathlib.Path(movie["path"]).name)
    return "/".join([f"{base}/media", movie_dir, *parts])


def _with_urls(movie: dict[str, Any]) -> dict[str, Any]:
    return {
        **movie,
        "posterUrl": _media_url(movie, transcoding.POSTER_NAME) if movie["poster_path"] else None,
        "streamUrl": (
            _media_url(movie, transcoding.HLS_DIR_NAME, transcoding.PLAYLIST_NAME)
            if movie["hls_path"]
            else None
        ),
        "downloadUrl": _media_url(movie, ARTIFACT_NAME),
    }


@app.get("/api/movies")
async def list_movies(status: str | None = None):
    if status and status not in assets.ASSET_STATUSES:
        raise HTTPException(400, f"Unknown status: {status}")
    movies = await asyncio.to_thread(assets.get_all_movies, status)
    return [_with_urls(m) for m in movies]


@app.get("/api/movies/{movie_id}")
async def get_movie(movie_id: int):
    movie = await asyncio.to_thread(assets.get_movie, movie_id)
    if not movie:
        raise HTTPException(404, "Movie not found")
    return _with_urls(movie)


@app.delete("/api/movies/{movie_id}")
async def delete_movie(movie_id: int):
    movie = await asyncio.to_thread(assets.get_movie, movie_id)
    if not movie:
        raise HTTPException(404, "Movie not found")
    movie_path = pathlib.Path(movie["path"])
    media_root = settings.media_dir(_settings).resolve()
    # Only remove directories we created under the media root
    if movie_path.resolve().parent == media_root:
        await asyncio.to_thread(shutil.rmtree, movie_path, True)
    await asyncio.to_thread(assets.delete_movie, movie_id)
    log.info("Movie deleted: %s (ID: %d)", movie["title"], movie_id)
    return {"message": "Movie deleted successfully"}


@app.get("/api/status")
async def server_status():
    counts = await asyncio.to_thread(assets.count_movies_by_status)
    queue = _get_queue()
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "movies": {"total": sum(counts.values()), **counts},
        "activeSessions": _get_registry().active_count(),
        "transcodes": {"active": queue.active_count, "pending": queue.pending_count},
    }


@app.get("/api/health")
async def health():
    return {"status": "healthy", "service": "moviedrop"}


# =============================================================================
# Media delivery (all range-capable, no auth)
# =============================================================================


def _media_file(movie_dir: str, *parts: str) -> pathlib.Path:
    # Prevent path traversal
    for part in (movie_dir, *parts):
        if pathlib.Path(part).name != part or part in ("", ".", ".."):
            raise HTTPException(400, "Invalid path")
    file_path = settings.media_dir(_settings).joinpath(movie_dir, *parts)
    if not file_path.is_file():
        raise HTTPException(404, "File not found")
    return file_path


@app.get("/media/{movie_dir}/movie.mp4")
async def media_video(request: Request, movie_dir: str) -> Response:
    path = _media_file(movie_dir, ARTIFACT_NAME)
    return delivery.ranged_file_response(
        path, request.headers.get("range"), "video/mp4", delivery.VIDEO_MAX_AGE
    )


@app.get("/media/{movie_dir}/poster.jpg")
async def media_poster(movie_dir: str) -> Response:
    path = _media_file(movie_dir, transcoding.POSTER_NAME)
    return await delivery.full_file_response(path, "image/jpeg", delivery.POSTER_MAX_AGE)


@app.get("/media/{movie_dir}/hls/playlist.m3u8")
async def media_playlist(movie_dir: str) -> Response:
    path = _media_file(movie_dir, transcoding.HLS_DIR_NAME, transcoding.PLAYLIST_NAME)
    return await delivery.full_file_response(
        path, "application/vnd.apple.mpegurl", delivery.PLAYLIST_MAX_AGE
    )


@app.get("/media/{movie_dir}/hls/{segment}")
async def media_segment(request: Request, movie_dir: str, segment: str) -> Response:
    if not segment.endswith(".ts"):
        raise HTTPException(400, "Invalid segment file")
    path = _media_file(movie_dir, transcoding.HLS_DIR_NAME, segment)
    return delivery.ranged_file_response(
        path, request.headers.get("range"), "video/mp2t", delivery.SEGMENT_MAX_AGE
    )


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="Movie upload + streaming server")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=3000, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--write-settings",
        action="store_true",
        help="Write server_settings.json with every default filled in, then exit",
    )
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    if args.write_settings:
        log.info("Wrote %s", settings.write_settings_file())
        raise SystemExit(0)

    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        access_log=args.debug,
        log_level=uv_log,
    )
