#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["httpx"]
# ///
"""Resumable chunked upload client.

Usage:
    ./upload_client.py FILE --server URL [--state PATH] [--concurrency N] [--debug]

Ctrl-C pauses the upload and keeps its state; running the same command again
resumes with only the chunks the server has not acknowledged.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

import asyncio
import hashlib
import json
import logging
import os
import pathlib
import signal
import threading

import httpx

from errors import IncompleteUpload
from errors import MovieDropError
from errors import SessionExpired
from errors import SessionNotFound
from errors import TransientTransferError
from errors import ValidationError


log = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SEC = 1.0


class TransferCancelled(Exception):
    """A chunk transfer stopped because its token was cancelled (pause/cancel)."""


class CancellationToken:
    """Cooperative cancel flag shared by every transfer of one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransferCancelled


@dataclass(slots=True)
class ClientUploadState:
    session_id: str
    filename: str
    file_size: int
    chunk_size: int
    total_chunks: int
    accepted: set[int] = field(default_factory=set)
    status: str = "uploading"
    asset_id: int | None = None

    def chunk_length(self, index: int) -> int:
        return min(self.chunk_size, self.file_size - index * self.chunk_size)

    def acked_bytes(self) -> int:
        return sum(self.chunk_length(i) for i in self.accepted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "filename": self.filename,
            "fileSize": self.file_size,
            "chunkSize": self.chunk_size,
            "totalChunks": self.total_chunks,
            "acceptedChunkIndices": sorted(self.accepted),
            "status": self.status,
            "assetId": self.asset_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientUploadState:
        return cls(
            session_id=data["sessionId"],
            filename=data["filename"],
            file_size=data["fileSize"],
            chunk_size=data["chunkSize"],
            total_chunks=data["totalChunks"],
            accepted=set(data.get("acceptedChunkIndices", [])),
            status=data.get("status", "paused"),
            asset_id=data.get("assetId"),
        )


class ClientStateStore:
    """Durable {upload_id: ClientUploadState} map kept in one JSON file.

    Safe to call from worker threads; controllers write through asyncio.to_thread.
    """

    def __init__(self, path: pathlib.Path):
        self.path = path
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def load(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                self._data = {}
                return self._data
            try:
                self._data = json.loads(self.path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                log.warning("Ignoring unreadable upload state %s: %s", self.path, e)
                self._data = {}
            return self._data

    def save(self) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write: write to temp file then rename
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._data, indent=2))
            os.replace(tmp, self.path)

    def get(self, upload_id: str) -> ClientUploadState | None:
        with self._lock:
            data = self._data.get(upload_id)
        return ClientUploadState.from_dict(data) if data else None

    def put(self, upload_id: str, state: ClientUploadState) -> None:
        with self._lock:
            self._data[upload_id] = state.to_dict()
            self.save()

    def remove(self, upload_id: str) -> None:
        with self._lock:
            if self._data.pop(upload_id, None) is not None:
                self.save()


def upload_id_for(path: pathlib.Path) -> str:
    """Stable id for a local file so a restarted client finds its state."""
    resolved = path.resolve()
    key = f"{resolved}:{resolved.stat().st_size}"
    return hashlib.sha1(key.encode()).hexdigest()[:16]


def _raise_for_response(response: httpx.Response, session_id: str) -> None:
    if response.is_success:
        return
    try:
        body = response.json()
        message = body.get("error") or body.get("detail") or response.text
    except ValueError:
        message = response.text
    message = str(message) or f"HTTP {response.status_code}"
    if response.status_code == 404:
        raise SessionNotFound(session_id)
    if response.status_code == 410:
        raise SessionExpired(session_id)
    if response.status_code in (400, 413, 422):
        raise ValidationError(message)
    raise MovieDropError(f"HTTP {response.status_code}: {message}")


class UploadController:
    """Drives one file through start -> chunks -> complete.

    Status is one of idle, uploading, paused, completed, cancelled, error.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        source: pathlib.Path,
        store: ClientStateStore,
        *,
        upload_id: str | None = None,
        chunk_size: int | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_SEC,
        on_progress: Callable[[float], None] | None = None,
    ):
        self._client = client
        self.source = source
        self._store = store
        self.upload_id = upload_id or upload_id_for(source)
        self.requested_chunk_size = chunk_size
        self.concurrency = max(1, concurrency)
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._on_progress = on_progress
        self.state: ClientUploadState | None = None
        self.status = "idle"
        self.error: str | None = None
        self.result: dict[str, Any] | None = None
        self._acked_bytes = 0
        self._token: CancellationToken | None = None
        self._run_task: asyncio.Task[dict[str, Any] | None] | None = None
        self._completion: asyncio.Future[dict[str, Any]] | None = None
        self._persist_lock = asyncio.Lock()

    @classmethod
    def restore(
        cls,
        client: httpx.AsyncClient,
        source: pathlib.Path,
        store: ClientStateStore,
        upload_id: str | None = None,
        **kwargs: Any,
    ) -> UploadController | None:
        """Rebuild a paused controller from durable state, or None if there is none."""
        controller = cls(client, source, store, upload_id=upload_id, **kwargs)
        state = store.get(controller.upload_id)
        if state is None:
            return None
        controller.state = state
        controller.status = "paused"
        controller._acked_bytes = state.acked_bytes()
        return controller

    @property
    def progress(self) -> float:
        """Acknowledged bytes as a percentage of the file size."""
        if not self.state or not self.state.file_size:
            return 0.0
        return self._acked_bytes / self.state.file_size * 100

    def pending_chunks(self) -> list[int]:
        assert self.state is not None
        return [i for i in range(self.state.total_chunks) if i not in self.state.accepted]

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def start(self) -> dict[str, Any] | None:
        """Open a session and upload every chunk. Returns the completion result,
        or None if paused/cancelled before finishing."""
        if self.status != "idle":
            raise RuntimeError(f"Cannot start upload in state {self.status}")
        file_size = self.source.stat().st_size
        body: dict[str, Any] = {"filename": self.source.name, "fileSize": file_size}
        if self.requested_chunk_size:
            body["chunkSize"] = self.requested_chunk_size
        response = await self._client.post("/api/upload/start", json=body)
        _raise_for_response(response, "")
        data = response.json()
        self.state = ClientUploadState(
            session_id=data["sessionId"],
            filename=self.source.name,
            file_size=file_size,
            chunk_size=data["chunkSize"],
            total_chunks=data["totalChunks"],
        )
        await self._persist()
        log.info(
            "Upload %s started: session %s, %d chunks",
            self.upload_id,
            self.state.session_id,
            self.state.total_chunks,
        )
        return await self._launch()

    async def resume(self) -> dict[str, Any] | None:
        """Continue a paused (or failed) upload with only the missing chunks."""
        if self.status not in ("paused", "error"):
            raise RuntimeError(f"Cannot resume upload in state {self.status}")
        if self.state is None:
            self.state = self._store.get(self.upload_id)
            if self.state is None:
                raise SessionNotFound(self.upload_id)
        await self._sync_with_server()
        self.error = None
        return await self._launch()

    async def pause(self) -> None:
        if self.status != "uploading":
            return
        self.status = "paused"
        if self._token is not None:
            self._token.cancel()
        await self._wait_run()
        if self.status == "completed":
            return
        if self.state is not None:
            self.state.status = "paused"
        await self._persist()
        log.info("Upload %s paused at %.1f%%", self.upload_id, self.progress)

    async def cancel(self) -> None:
        """Abort transfers, drop the server session and forget local state."""
        self.status = "cancelled"
        if self._token is not None:
            self._token.cancel()
        await self._wait_run()
        if self.state is not None:
            try:
                response = await self._client.post(
                    "/api/upload/cancel", json={"sessionId": self.state.session_id}
                )
                _raise_for_response(response, self.state.session_id)
            except (httpx.HTTPError, MovieDropError) as e:
                log.warning("Server cancel failed for %s: %s", self.state.session_id, e)
        await self._forget()
        self.state = None
        self._acked_bytes = 0
        log.info("Upload %s cancelled", self.upload_id)

    async def complete(self) -> dict[str, Any]:
        """Finish the session; concurrent callers share a single request."""
        if self._completion is None:
            self._completion = asyncio.ensure_future(self._do_complete())
        return await asyncio.shield(self._completion)

    # -------------------------------------------------------------------------
    # Transfer machinery
    # -------------------------------------------------------------------------

    async def _launch(self) -> dict[str, Any] | None:
        self._run_task = asyncio.ensure_future(self._run())
        try:
            return await asyncio.shield(self._run_task)
        except asyncio.CancelledError:
            if self._token is not None:
                self._token.cancel()
            raise

    async def _wait_run(self) -> None:
        task = self._run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.wait({task})

    async def _run(self) -> dict[str, Any] | None:
        assert self.state is not None
        token = CancellationToken()
        self._token = token
        self.status = "uploading"
        self.state.status = "uploading"
        await self._persist()

        pending = deque(self.pending_chunks())

        async def worker() -> None:
            while pending and not token.cancelled:
                await self._send_chunk(pending.popleft(), token)

        workers = [
            asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(pending)))
        ]
        results = await _gather_first_error(workers, token)
        failure = next(
            (r for r in results if isinstance(r, Exception) and not isinstance(r, TransferCancelled)),
            None,
        )
        if failure is not None:
            await self._fail(failure)
            raise failure
        if token.cancelled:
            return None
        try:
            return await self.complete()
        except Exception as e:
            await self._fail(e)
            raise

    async def _send_chunk(self, index: int, token: CancellationToken) -> None:
        assert self.state is not None
        state = self.state
        payload = await asyncio.to_thread(self._read_slice, index)
        attempt = 0
        while True:
            token.raise_if_cancelled()
            response = await _race(
                token,
                self._client.post(
                    "/api/upload/chunk",
                    data={"sessionId": state.session_id, "chunkIndex": str(index)},
                    files={"chunk": (f"chunk_{index}", payload, "application/octet-stream")},
                ),
            )
            if response.status_code != 429:
                break
            # Retry-After is not consulted; backoff is fixed and per chunk
            if attempt >= self.max_retries:
                raise TransientTransferError(
                    f"Chunk {index} still rate limited after {attempt} retries"
                )
            delay = self.backoff_base * 2**attempt
            attempt += 1
            log.info(
                "Rate limited, retrying chunk %d in %.1fs (attempt %d)", index, delay, attempt
            )
            await _race(token, asyncio.sleep(delay))
        _raise_for_response(response, state.session_id)
        await self._mark_accepted(index)

    def _read_slice(self, index: int) -> bytes:
        assert self.state is not None
        with open(self.source, "rb") as f:
            f.seek(index * self.state.chunk_size)
            return f.read(self.state.chunk_length(index))

    async def _mark_accepted(self, index: int) -> None:
        assert self.state is not None
        if index in self.state.accepted:
            return
        self.state.accepted.add(index)
        self._acked_bytes += self.state.chunk_length(index)
        await self._persist()
        if self._on_progress is not None:
            self._on_progress(self.progress)

    async def _do_complete(self) -> dict[str, Any]:
        assert self.state is not None
        missing = self.pending_chunks()
        if missing:
            self._completion = None
            raise IncompleteUpload(self.state.session_id, missing)
        try:
            response = await self._client.post(
                "/api/upload/complete", json={"sessionId": self.state.session_id}
            )
            _raise_for_response(response, self.state.session_id)
        except BaseException:
            self._completion = None
            raise
        self.result = response.json()
        self.state.asset_id = self.result.get("assetId")
        self.state.status = "completed"
        self.status = "completed"
        await self._forget()
        log.info("Upload %s complete -> asset %s", self.upload_id, self.state.asset_id)
        return self.result

    async def _sync_with_server(self) -> None:
        """Adopt the server's view of accepted chunks before resuming."""
        assert self.state is not None
        try:
            response = await self._client.get(f"/api/upload/{self.state.session_id}")
        except httpx.TransportError as e:
            log.warning("Could not reach server to sync %s: %s", self.upload_id, e)
            return
        if response.status_code in (404, 410):
            await self._fail(SessionNotFound(self.state.session_id))
            _raise_for_response(response, self.state.session_id)
        if not response.is_success:
            return
        server_accepted = set(response.json().get("acceptedChunks", []))
        if server_accepted != self.state.accepted:
            log.info(
                "Server has %d/%d chunks (local state had %d)",
                len(server_accepted),
                self.state.total_chunks,
                len(self.state.accepted),
            )
            self.state.accepted = server_accepted
            self._acked_bytes = self.state.acked_bytes()
            await self._persist()

    async def _fail(self, error: BaseException) -> None:
        self.status = "error"
        self.error = str(error) or error.__class__.__name__
        if self.state is not None:
            self.state.status = "error"
            await self._persist()
        log.error("Upload %s failed: %s", self.upload_id, self.error)

    async def _persist(self) -> None:
        if self.state is None or self.status in ("cancelled", "completed"):
            return
        # Snapshot on the loop; the lock keeps file writes in call order
        snapshot = ClientUploadState.from_dict(self.state.to_dict())
        async with self._persist_lock:
            await asyncio.to_thread(self._store.put, self.upload_id, snapshot)

    async def _forget(self) -> None:
        async with self._persist_lock:
            await asyncio.to_thread(self._store.remove, self.upload_id)


async def _race(token: CancellationToken, aw: Awaitable[Any]) -> Any:
    """Await aw unless the token fires first, in which case aw is abandoned."""
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise TransferCancelled


async def _gather_first_error(
    tasks: list[asyncio.Task[None]], token: CancellationToken
) -> list[BaseException | None]:
    """Wait for all tasks; the first real failure cancels the token so the rest stop."""
    for task in tasks:
        task.add_done_callback(
            lambda t: token.cancel()
            if not t.cancelled() and isinstance(t.exception(), Exception)
            and not isinstance(t.exception(), TransferCancelled)
            else None
        )
    return await asyncio.gather(*tasks, return_exceptions=True)


# =============================================================================
# CLI
# =============================================================================


async def _upload(args: Any) -> int:
    source = pathlib.Path(args.file)
    if not source.is_file():
        log.error("No such file: %s", source)
        return 2
    store = ClientStateStore(pathlib.Path(args.state))
    store.load()

    last_logged = [-10.0]

    def on_progress(pct: float) -> None:
        if pct - last_logged[0] >= 10 or pct >= 100:
            last_logged[0] = pct
            log.info("%s: %.1f%%", source.name, pct)

    options = {
        "concurrency": args.concurrency,
        "chunk_size": args.chunk_size,
        "on_progress": on_progress,
    }
    async with httpx.AsyncClient(base_url=args.server, timeout=args.timeout) as client:
        controller = UploadController.restore(client, source, store, **options)
        if controller is not None:
            log.info("Resuming %s at %.1f%%", source.name, controller.progress)
        else:
            controller = UploadController(client, source, store, **options)

        loop = asyncio.get_running_loop()
        with suppress(NotImplementedError):
            loop.add_signal_handler(
                signal.SIGINT, lambda: asyncio.ensure_future(controller.pause())
            )

        try:
            if controller.status == "idle":
                result = await controller.start()
            else:
                result = await controller.resume()
        except (MovieDropError, httpx.HTTPError) as e:
            log.error("Upload failed: %s", e)
            return 1
    if result is None:
        log.info("Paused at %.1f%%; run again to resume", controller.progress)
        return 130
    log.info(
        "Done: asset %s (%s) is %s", result.get("assetId"), result.get("title"), result.get("status")
    )
    return 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Resumable movie upload client")
    parser.add_argument("file", help="Video file to upload")
    parser.add_argument("--server", default="http://localhost:3000", help="Server base URL")
    parser.add_argument(
        "--state",
        default=str(pathlib.Path.home() / ".moviedrop_uploads.json"),
        help="Where resumable upload state is kept",
    )
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY)
    parser.add_argument("--chunk-size", type=int, default=None, help="Bytes per chunk")
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout (seconds)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )
    raise SystemExit(asyncio.run(_upload(args)))
