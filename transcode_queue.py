"""Bounded-concurrency admission queue in front of the external transcoder.

Jobs are durable rows in the asset store; the in-memory FIFO only carries job
ids. K worker tasks each run one transcoder process at a time, so at most K
transcodes run concurrently no matter how many jobs are queued. A failed job
is re-queued after an exponential backoff (without holding a worker slot)
until its attempt budget is spent, then the movie is marked as errored.
"""

from __future__ import annotations

from datetime import UTC
from datetime import datetime
from typing import Any

import asyncio
import logging
import pathlib

import assets
from transcoding import Transcoder


log = logging.getLogger(__name__)


def _write_progress(job_id: int, movie_id: int, pct: int) -> None:
    assets.update_job(job_id, progress=pct)
    assets.update_movie(movie_id, progress=pct)


class TranscodeQueue:
    def __init__(
        self,
        transcoder: Transcoder,
        *,
        workers: int = 2,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._transcoder = transcoder
        self.workers = workers
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._queue: asyncio.Queue[int] | None = None
        self._worker_tasks: list[asyncio.Task[None]] = []
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self._active: set[int] = set()
        self._progress: dict[int, int] = {}
        self.peak_active = 0

    @classmethod
    def from_settings(cls, settings: dict[str, Any], transcoder: Transcoder) -> TranscodeQueue:
        return cls(
            transcoder,
            workers=settings["max_concurrent_jobs"],
            max_attempts=settings["job_attempts"],
            backoff_base=settings["job_backoff_secs"],
        )

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def pending_count(self) -> int:
        queued = self._queue.qsize() if self._queue else 0
        return queued + len(self._retry_tasks)

    async def start(self) -> None:
        """Recover the job log and start the workers."""
        self._queue = asyncio.Queue()
        requeued = await asyncio.to_thread(assets.requeue_active_jobs)
        if requeued:
            log.info("Re-queued %d interrupted transcode job(s)", requeued)
        for job in await asyncio.to_thread(assets.get_jobs, "queued"):
            self._queue.put_nowait(job["id"])
        self._worker_tasks = [
            asyncio.create_task(self._worker(n), name=f"transcode-worker-{n}")
            for n in range(self.workers)
        ]
        log.info(
            "Transcode queue started with %d slot(s), %d job(s) pending",
            self.workers,
            self._queue.qsize(),
        )

    async def stop(self) -> None:
        """Cancel workers (killing running transcodes) and pending retries.

        Interrupted jobs stay 'queued' in the log and resume on next start.
        """
        tasks = [*self._worker_tasks, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker_tasks.clear()
        self._retry_tasks.clear()

    def enqueue(self, job_id: int) -> None:
        """Queue a job whose row is already committed."""
        if self._queue is None:
            raise RuntimeError("TranscodeQueue.start() has not been called")
        self._queue.put_nowait(job_id)
        log.info("Queued transcode job %d (%d waiting)", job_id, self._queue.qsize())

    async def join(self) -> None:
        """Wait until no job is queued, running or waiting to retry."""
        assert self._queue is not None
        while True:
            await self._queue.join()
            if not self._retry_tasks:
                return
            await asyncio.gather(*self._retry_tasks, return_exceptions=True)

    async def _worker(self, n: int) -> None:
        assert self._queue is not None
        while True:
            job_id = await self._queue.get()
            try:
                await self._process(job_id)
            except Exception:
                log.exception("Transcode worker %d crashed on job %d", n, job_id)
            finally:
                self._queue.task_done()

    async def _process(self, job_id: int) -> None:
        job = await asyncio.to_thread(assets.get_job, job_id)
        if job is None or job["state"] != "queued":
            log.info("Skipping transcode job %d (%s)", job_id, job and job["state"])
            return
        movie_id = job["movie_id"]
        attempts = job["attempts"] + 1
        await asyncio.to_thread(
            assets.update_job, job_id, state="active", attempts=attempts, progress=0
        )
        await asyncio.to_thread(
            assets.update_movie, movie_id, status="processing", progress=0, error_message=None
        )
        self._active.add(job_id)
        self.peak_active = max(self.peak_active, len(self._active))
        self._progress[job_id] = 0
        log.info(
            "Transcoding movie %d (job %d, attempt %d/%d)",
            movie_id,
            job_id,
            attempts,
            self.max_attempts,
        )

        flush: asyncio.Task[None] | None = None

        async def flush_progress() -> None:
            # Runs until the recorded percent stops moving
            written = -1
            while (pct := self._progress.get(job_id, written)) > written:
                try:
                    await asyncio.to_thread(_write_progress, job_id, movie_id, pct)
                except Exception as e:
                    log.warning("Progress write failed for job %d: %s", job_id, e)
                written = pct

        def on_progress(percent: float) -> None:
            # Called on the event loop; the database write happens in a thread
            nonlocal flush
            pct = int(percent)
            if pct <= self._progress.get(job_id, -1):
                return
            self._progress[job_id] = pct
            log.debug("Job %d progress: %d%%", job_id, pct)
            if flush is None or flush.done():
                flush = asyncio.create_task(flush_progress())

        try:
            result = await self._transcoder(
                pathlib.Path(job["input_path"]), pathlib.Path(job["output_dir"]), on_progress
            )
        except asyncio.CancelledError:
            try:
                await asyncio.to_thread(assets.update_job, job_id, state="queued")
            finally:
                log.info("Transcode job %d interrupted, left queued", job_id)
            raise
        except Exception as e:
            await self._handle_failure(job_id, movie_id, attempts, e)
            return
        finally:
            self._active.discard(job_id)
            self._progress.pop(job_id, None)
            if flush is not None:
                await flush

        await asyncio.to_thread(assets.update_job, job_id, state="succeeded", progress=100)
        await asyncio.to_thread(
            assets.update_movie,
            movie_id,
            status="ready",
            progress=100,
            poster_path=str(result.poster_path),
            hls_path=str(result.hls_path),
            duration=result.duration,
            error_message=None,
            processed_at=datetime.now(UTC).isoformat(timespec="seconds"),
        )
        log.info("Movie %d ready (job %d, %.0fs)", movie_id, job_id, result.duration)

    async def _handle_failure(
        self, job_id: int, movie_id: int, attempts: int, error: Exception
    ) -> None:
        message = str(error) or error.__class__.__name__
        if attempts < self.max_attempts:
            delay = self.backoff_base * 2 ** (attempts - 1)
            await asyncio.to_thread(assets.update_job, job_id, state="queued", last_error=message)
            log.warning(
                "Transcode job %d failed (attempt %d/%d), retrying in %.1fs: %s",
                job_id,
                attempts,
                self.max_attempts,
                delay,
                message,
            )
            task = asyncio.create_task(self._requeue_later(job_id, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return
        await asyncio.to_thread(assets.update_job, job_id, state="failed", last_error=message)
        await asyncio.to_thread(
            assets.update_movie, movie_id, status="error", error_message=message
        )
        log.error(
            "Transcode job %d failed permanently after %d attempts: %s", job_id, attempts, message
        )

    async def _requeue_later(self, job_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        assert self._queue is not None
        self._queue.put_nowait(job_id)
