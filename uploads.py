"""Upload session registry and chunk assembler.

Sessions live in memory (with a mirror row in the asset store for crash
recovery). Chunks are written to a per-session scratch directory as
``chunk_<index>`` and concatenated in index order on completion.

Finalization order is: artifact written and renamed into place, movie + job
rows committed in one transaction, session dropped, job handed to the queue,
scratch deleted. A crash at any point leaves either the chunks or a committed
movie record, never neither.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import asyncio
import logging
import math
import os
import pathlib
import re
import shutil
import threading
import time
import uuid

import assets
from errors import IncompleteUpload
from errors import SessionExpired
from errors import SessionNotFound
from errors import ValidationError
from movie_info import MovieInfo
from movie_info import format_file_size
from movie_info import generate_movie_dir
from movie_info import is_valid_video_file
from movie_info import parse_movie_info


log = logging.getLogger(__name__)

ARTIFACT_NAME = "movie.mp4"
_COPY_BUFSIZE = 1024 * 1024
_CHUNK_FILE_RE = re.compile(r"^chunk_(\d+)$")


@dataclass(slots=True)
class UploadSession:
    id: str
    filename: str
    total_size: int
    chunk_size: int
    total_chunks: int
    temp_dir: pathlib.Path
    created_at: float
    expires_at: float
    movie_info: MovieInfo
    chunk_sizes: dict[int, int] = field(default_factory=dict)  # accepted index -> bytes
    uploaded_bytes: int = 0
    status: str = "active"  # active, completed, cancelled, expired
    generation: int = 0  # bumped on cancel/expire; stale writes compare against it
    finalizing: asyncio.Future[dict[str, Any]] | None = None

    def expected_chunk_size(self, index: int) -> int:
        start = index * self.chunk_size
        return min(self.chunk_size, self.total_size - start)

    def missing(self) -> list[int]:
        return [i for i in range(self.total_chunks) if i not in self.chunk_sizes]

    def progress(self) -> dict[str, Any]:
        return {
            "uploadedBytes": self.uploaded_bytes,
            "totalBytes": self.total_size,
            "progressPercent": round(self.uploaded_bytes / self.total_size * 100, 2),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.id,
            "filename": self.filename,
            "status": self.status,
            "chunkSize": self.chunk_size,
            "totalChunks": self.total_chunks,
            "acceptedChunks": sorted(self.chunk_sizes),
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "movieInfo": self.movie_info.to_dict(),
            **self.progress(),
        }


def _concatenate_chunks(temp_dir: pathlib.Path, total_chunks: int, final_path: pathlib.Path) -> int:
    """Stream chunk files in index order into final_path. Returns bytes written."""
    part_path = final_path.with_name(final_path.name + ".part")
    written = 0
    try:
        with open(part_path, "wb") as dst:
            for i in range(total_chunks):
                with open(temp_dir / f"chunk_{i}", "rb") as src:
                    while block := src.read(_COPY_BUFSIZE):
                        dst.write(block)
                        written += len(block)
            dst.flush()
            os.fsync(dst.fileno())
        os.replace(part_path, final_path)
    except BaseException:
        part_path.unlink(missing_ok=True)
        raise
    return written


def _claim_movie_dir(root: pathlib.Path, info: MovieInfo) -> pathlib.Path:
    """Create and return a fresh directory for the movie under root."""
    root.mkdir(parents=True, exist_ok=True)
    base = generate_movie_dir(info.title, info.year)
    n = 1
    while True:
        candidate = root / (base if n == 1 else f"{base}_{n}")
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            n += 1


def _scan_chunks(session: UploadSession) -> None:
    """Rebuild accepted chunks from files on disk (used after restart)."""
    for path in session.temp_dir.iterdir():
        m = _CHUNK_FILE_RE.match(path.name)
        if not m:
            # Half-written temp files from an interrupted accept
            path.unlink(missing_ok=True)
            continue
        index = int(m.group(1))
        size = path.stat().st_size
        if index < session.total_chunks and size == session.expected_chunk_size(index):
            session.chunk_sizes[index] = size
        else:
            path.unlink(missing_ok=True)
    session.uploaded_bytes = sum(session.chunk_sizes.values())


class UploadRegistry:
    """Authoritative state for in-flight uploads."""

    def __init__(
        self,
        temp_root: pathlib.Path,
        media_root: pathlib.Path,
        *,
        enqueue: Callable[[int], None] | None = None,
        default_chunk_size: int = 1024 * 1024,
        max_chunk_size: int = 16 * 1024 * 1024,
        max_file_size: int = 4 * 1024**3,
        session_ttl: float = 24 * 3600,
        allowed_extensions: list[str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.temp_root = temp_root
        self.media_root = media_root
        self._enqueue = enqueue
        self.default_chunk_size = default_chunk_size
        self.max_chunk_size = max_chunk_size
        self.max_file_size = max_file_size
        self.session_ttl = session_ttl
        self.allowed_extensions = allowed_extensions or [".mp4", ".mkv", ".mov"]
        self._clock = clock
        self._sessions: dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: dict[str, Any],
        temp_root: pathlib.Path,
        media_root: pathlib.Path,
        enqueue: Callable[[int], None] | None = None,
    ) -> UploadRegistry:
        return cls(
            temp_root,
            media_root,
            enqueue=enqueue,
            default_chunk_size=settings["chunk_size"],
            max_chunk_size=settings["max_chunk_size"],
            max_file_size=settings["max_file_size"],
            session_ttl=settings["session_ttl_secs"],
            allowed_extensions=settings["allowed_extensions"],
        )

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_session(self, session_id: str) -> dict[str, Any]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            return session.to_dict()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def start_session(
        self, filename: str, total_size: int, chunk_size: int | None = None
    ) -> dict[str, Any]:
        filename = pathlib.PurePath(filename or "").name
        if not filename:
            raise ValidationError("Filename is required")
        if not is_valid_video_file(filename, self.allowed_extensions):
            raise ValidationError(
                "Invalid file type. Allowed extensions: " + ", ".join(self.allowed_extensions)
            )
        if total_size <= 0:
            raise ValidationError("File size must be positive")
        if total_size > self.max_file_size:
            raise ValidationError(
                f"File too large. Maximum size: {format_file_size(self.max_file_size)}"
            )
        chunk_size = chunk_size or self.default_chunk_size
        if chunk_size <= 0 or chunk_size > self.max_chunk_size:
            raise ValidationError(
                f"Chunk size must be between 1 and {format_file_size(self.max_chunk_size)}"
            )

        session_id = str(uuid.uuid4())
        temp_dir = self.temp_root / session_id
        await asyncio.to_thread(temp_dir.mkdir, parents=True, exist_ok=True)
        now = self._clock()
        session = UploadSession(
            id=session_id,
            filename=filename,
            total_size=total_size,
            chunk_size=chunk_size,
            total_chunks=math.ceil(total_size / chunk_size),
            temp_dir=temp_dir,
            created_at=now,
            expires_at=now + self.session_ttl,
            movie_info=parse_movie_info(filename),
        )
        await asyncio.to_thread(
            assets.create_upload_session,
            session_id,
            filename,
            total_size,
            chunk_size,
            str(temp_dir),
            now,
            session.expires_at,
        )
        with self._lock:
            self._sessions[session_id] = session
        log.info(
            "Upload session started: %s for %s (%s, %d chunks)",
            session_id,
            filename,
            format_file_size(total_size),
            session.total_chunks,
        )
        return {
            "sessionId": session_id,
            "chunkSize": chunk_size,
            "totalChunks": session.total_chunks,
            "movieInfo": session.movie_info.to_dict(),
        }

    async def accept_chunk(self, session_id: str, index: int, payload: bytes) -> dict[str, Any]:
        expired: UploadSession | None = None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if self._clock() > session.expires_at and session.finalizing is None:
                expired = self._drop_locked(session, "expired")
            else:
                if not 0 <= index < session.total_chunks:
                    raise ValidationError(
                        f"Chunk index {index} out of range [0, {session.total_chunks})"
                    )
                expected = session.expected_chunk_size(index)
                if len(payload) != expected:
                    raise ValidationError(
                        f"Chunk {index} has {len(payload)} bytes, expected {expected}"
                    )
                if session.finalizing is not None:
                    # Every index is already accepted; nothing left to write
                    return {"chunkIndex": index, **session.progress()}
                generation = session.generation
        if expired is not None:
            await self._reclaim(expired)
            raise SessionExpired(session_id)

        chunk_path = session.temp_dir / f"chunk_{index}"
        tmp_path = session.temp_dir / f".chunk_{index}.{uuid.uuid4().hex}"
        try:
            await asyncio.to_thread(tmp_path.write_bytes, payload)
        except FileNotFoundError:
            # Scratch reclaimed underneath us (cancel/expire)
            raise SessionNotFound(session_id) from None

        stale = False
        with self._lock:
            if session.generation != generation or self._sessions.get(session_id) is not session:
                stale = True
            else:
                os.replace(tmp_path, chunk_path)
                previous = session.chunk_sizes.get(index, 0)
                session.chunk_sizes[index] = len(payload)
                session.uploaded_bytes += len(payload) - previous
                result = {"chunkIndex": index, **session.progress()}
                uploaded = session.uploaded_bytes
        if stale:
            tmp_path.unlink(missing_ok=True)
            if session.status in ("cancelled", "expired"):
                await asyncio.to_thread(shutil.rmtree, session.temp_dir, True)
            raise SessionNotFound(session_id)

        await asyncio.to_thread(assets.update_upload_session, session_id, uploaded_size=uploaded)
        log.debug(
            "Chunk %d accepted for session %s (%s/%s)",
            index,
            session_id,
            format_file_size(uploaded),
            format_file_size(session.total_size),
        )
        return result

    async def complete_session(self, session_id: str) -> dict[str, Any]:
        """Assemble the artifact and hand it to the transcode queue.

        Concurrent calls for the same session share one finalization.
        """
        expired: UploadSession | None = None
        owner = False
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.finalizing is not None:
                future = session.finalizing
            elif self._clock() > session.expires_at:
                expired = self._drop_locked(session, "expired")
            else:
                missing = session.missing()
                if missing:
                    raise IncompleteUpload(session_id, missing)
                future = asyncio.get_running_loop().create_future()
                session.finalizing = future
                generation = session.generation
                owner = True
        if expired is not None:
            await self._reclaim(expired)
            raise SessionExpired(session_id)
        if not owner:
            return await asyncio.shield(future)

        try:
            result = await self._finalize(session, generation)
        except asyncio.CancelledError:
            future.cancel()
            with self._lock:
                session.finalizing = None
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # waiters get it; no "never retrieved" warning
            with self._lock:
                session.finalizing = None
            raise
        future.set_result(result)
        return result

    async def _finalize(self, session: UploadSession, generation: int) -> dict[str, Any]:
        info = session.movie_info
        movie_dir = await asyncio.to_thread(_claim_movie_dir, self.media_root, info)
        final_path = movie_dir / ARTIFACT_NAME
        try:
            written = await asyncio.to_thread(
                _concatenate_chunks, session.temp_dir, session.total_chunks, final_path
            )
        except OSError:
            await asyncio.to_thread(shutil.rmtree, movie_dir, True)
            with self._lock:
                stale = session.generation != generation
            if stale:
                raise SessionNotFound(session.id) from None
            raise

        with self._lock:
            stale = session.generation != generation
        if stale:
            await asyncio.to_thread(shutil.rmtree, movie_dir, True)
            raise SessionNotFound(session.id)
        if written != session.total_size:
            await asyncio.to_thread(shutil.rmtree, movie_dir, True)
            raise ValidationError(
                f"Assembled {written} bytes, expected {session.total_size}"
            )

        # Commit point: the transaction only claims a session row that is
        # still active, so a cancel that deleted the row first wins
        try:
            movie_id, job_id = await asyncio.to_thread(
                assets.finalize_upload,
                session.id,
                info.title,
                info.year,
                session.filename,
                str(movie_dir),
                session.total_size,
                str(final_path),
            )
        except SessionNotFound:
            await asyncio.to_thread(shutil.rmtree, movie_dir, True)
            raise
        with self._lock:
            session.status = "completed"
            self._sessions.pop(session.id, None)
        if self._enqueue is not None:
            self._enqueue(job_id)
        await asyncio.to_thread(shutil.rmtree, session.temp_dir, True)
        await asyncio.to_thread(assets.delete_upload_session, session.id)
        log.info("Upload completed: %s -> movie %d (job %d)", session.filename, movie_id, job_id)
        return {
            "assetId": movie_id,
            "title": info.title,
            "year": info.year,
            "status": "processing",
        }

    async def cancel_session(self, session_id: str) -> bool:
        """Drop the session and its scratch storage. Safe to call repeatedly.

        Returns False when there was nothing to cancel, including when a
        completion for the session committed first.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                session.generation += 1
                session.status = "cancelled"
        if session is not None:
            temp_dir: pathlib.Path | None = session.temp_dir
        else:
            row = await asyncio.to_thread(assets.get_upload_session, session_id)
            temp_dir = pathlib.Path(row["temp_dir"]) if row else None
        discarded = await asyncio.to_thread(assets.discard_upload_session, session_id)
        if session is not None and not discarded:
            # Completion owns the scratch dir and removes it itself
            log.info("Cancel of %s lost to completion", session_id)
            return False
        if temp_dir is not None:
            await asyncio.to_thread(shutil.rmtree, temp_dir, True)
        if session is not None:
            log.info("Upload session cancelled: %s", session_id)
        return session is not None

    async def sweep_expired(self, now: float | None = None) -> list[str]:
        """Expire sessions past their deadline and reclaim their scratch."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                self._drop_locked(s, "expired")
                for s in list(self._sessions.values())
                if now > s.expires_at and s.finalizing is None
            ]
        for session in expired:
            await self._reclaim(session)
            log.info("Expired upload session %s", session.id)
        return [s.id for s in expired]

    async def sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                log.error("Session sweep failed: %s", e)

    def _drop_locked(self, session: UploadSession, status: str) -> UploadSession:
        self._sessions.pop(session.id, None)
        session.generation += 1
        session.status = status
        return session

    async def _reclaim(self, session: UploadSession) -> None:
        await asyncio.to_thread(shutil.rmtree, session.temp_dir, True)
        await asyncio.to_thread(assets.update_upload_session, session.id, status=session.status)

    # -------------------------------------------------------------------------
    # Startup recovery
    # -------------------------------------------------------------------------

    async def recover(self) -> int:
        """Reload live sessions from the store; reclaim everything else."""
        return await asyncio.to_thread(self._recover_sync)

    def _recover_sync(self) -> int:
        now = self._clock()
        live_dirs: set[pathlib.Path] = set()
        recovered = 0
        for row in assets.get_upload_sessions():
            temp_dir = pathlib.Path(row["temp_dir"])
            if row["status"] == "active" and row["expires_at"] > now and temp_dir.is_dir():
                session = UploadSession(
                    id=row["id"],
                    filename=row["filename"],
                    total_size=row["total_size"],
                    chunk_size=row["chunk_size"],
                    total_chunks=math.ceil(row["total_size"] / row["chunk_size"]),
                    temp_dir=temp_dir,
                    created_at=row["created_at"],
                    expires_at=row["expires_at"],
                    movie_info=parse_movie_info(row["filename"]),
                )
                _scan_chunks(session)
                assets.update_upload_session(session.id, uploaded_size=session.uploaded_bytes)
                with self._lock:
                    self._sessions[session.id] = session
                live_dirs.add(temp_dir)
                recovered += 1
                log.info(
                    "Recovered upload session %s (%d/%d chunks)",
                    session.id,
                    len(session.chunk_sizes),
                    session.total_chunks,
                )
                continue
            shutil.rmtree(temp_dir, ignore_errors=True)
            if row["status"] == "active":
                assets.update_upload_session(row["id"], status="expired")
                log.info("Expired stale upload session %s", row["id"])
            else:
                # completed/cancelled leftovers and previously expired rows
                assets.delete_upload_session(row["id"])
        if self.temp_root.is_dir():
            for d in self.temp_root.iterdir():
                if d.is_dir() and d not in live_dirs:
                    shutil.rmtree(d, ignore_errors=True)
                    log.info("Removed orphaned scratch dir %s", d)
        if self.media_root.is_dir():
            # Artifacts renamed into place by a completion that never committed
            owned = {pathlib.Path(m["path"]) for m in assets.get_all_movies()}
            for d in self.media_root.iterdir():
                if d.is_dir() and d not in owned:
                    shutil.rmtree(d, ignore_errors=True)
                    log.info("Removed unclaimed movie dir %s", d)
        return recovered
