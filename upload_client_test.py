"""Tests for upload_client.py (against an in-process fake server)."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import asyncio
import json
import math
import re
import string
import threading

import httpx
import pytest

from errors import IncompleteUpload
from errors import SessionNotFound
from errors import TransientTransferError
from errors import ValidationError
from upload_client import CancellationToken
from upload_client import ClientStateStore
from upload_client import ClientUploadState
from upload_client import TransferCancelled
from upload_client import UploadController
from upload_client import upload_id_for


CHUNK = 100
# Printable payload keeps the fake server's multipart parsing trivial
DATA = (string.ascii_letters * 20).encode()[:1000]

_FIELD_RE = re.compile(
    rb'name="(\w+)"(?:; filename="[^"]*")?\r\n(?:Content-Type: [^\r]*\r\n)?\r\n(.*?)\r\n--',
    re.S,
)


def _parse_form(body: bytes) -> dict[str, bytes]:
    return {m.group(1).decode(): m.group(2) for m in _FIELD_RE.finditer(body)}


class FakeServer:
    """Just enough of the upload API to drive the controller."""

    def __init__(self):
        self.chunks: dict[int, bytes] = {}
        self.chunk_calls: list[int] = []
        self.throttle: dict[int, int] = {}  # index -> 429s left to send
        self.reject: set[int] = set()
        self.gate: asyncio.Event | None = None
        self.gated_from = 0
        self.waiting = 0
        self.active = 0
        self.peak = 0
        self.total_chunks = 0
        self.session_gone = False
        self.complete_calls = 0
        self.cancel_calls = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        path = request.url.path
        if path == "/api/upload/start":
            body = json.loads(request.content)
            chunk_size = body.get("chunkSize") or CHUNK
            self.total_chunks = math.ceil(body["fileSize"] / chunk_size)
            return httpx.Response(
                200,
                json={
                    "sessionId": "s1",
                    "chunkSize": chunk_size,
                    "totalChunks": self.total_chunks,
                    "movieInfo": {"title": "Heat", "year": 1995},
                },
            )
        if path == "/api/upload/chunk":
            return await self._chunk(_parse_form(request.content))
        if path == "/api/upload/complete":
            self.complete_calls += 1
            await asyncio.sleep(0.01)
            missing = [i for i in range(self.total_chunks) if i not in self.chunks]
            if missing:
                return httpx.Response(400, json={"error": "Missing chunks"})
            return httpx.Response(
                200, json={"assetId": 7, "title": "Heat", "year": 1995, "status": "processing"}
            )
        if path == "/api/upload/cancel":
            self.cancel_calls += 1
            return httpx.Response(200, json={"message": "Upload cancelled"})
        if path == "/api/upload/s1":
            if self.session_gone:
                return httpx.Response(404, json={"error": "Upload session not found: s1"})
            return httpx.Response(200, json={"acceptedChunks": sorted(self.chunks)})
        return httpx.Response(404, json={"detail": "Not Found"})

    async def _chunk(self, fields: dict[str, bytes]) -> httpx.Response:
        index = int(fields["chunkIndex"])
        if self.session_gone or fields["sessionId"] != b"s1":
            return httpx.Response(404, json={"error": "Upload session not found"})
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None and index >= self.gated_from:
                self.waiting += 1
                try:
                    await self.gate.wait()
                finally:
                    self.waiting -= 1
            await asyncio.sleep(0.002)
        finally:
            self.active -= 1
        self.chunk_calls.append(index)
        if self.throttle.get(index, 0) > 0:
            self.throttle[index] -= 1
            return httpx.Response(429, json={"error": "Too many requests"})
        if index in self.reject:
            return httpx.Response(400, json={"error": f"Chunk {index} rejected"})
        self.chunks[index] = fields["chunk"]
        return httpx.Response(200, json={"chunkIndex": index})

    def assembled(self) -> bytes:
        return b"".join(self.chunks[i] for i in sorted(self.chunks))


@pytest.fixture
def env(tmp_path: Path):
    source = tmp_path / "Heat.1995.mp4"
    source.write_bytes(DATA)
    server = FakeServer()
    store = ClientStateStore(tmp_path / "state.json")
    store.load()

    return SimpleNamespace(
        source=source,
        server=server,
        store=store,
        state_path=tmp_path / "state.json",
        client=lambda: httpx.AsyncClient(
            transport=httpx.MockTransport(server.handler), base_url="http://test"
        ),
    )


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.002)


class TestCancellationToken:
    def test_cancel(self):
        async def run():
            token = CancellationToken()
            assert not token.cancelled
            token.raise_if_cancelled()
            token.cancel()
            await asyncio.wait_for(token.wait(), 1)
            with pytest.raises(TransferCancelled):
                token.raise_if_cancelled()

        asyncio.run(run())


class TestClientStateStore:
    def test_put_get_remove_survive_reload(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        store = ClientStateStore(path)
        store.load()
        state = ClientUploadState("s1", "a.mp4", 250, 100, 3, accepted={2, 0})
        store.put("u1", state)
        assert not path.with_suffix(".tmp").exists()

        reloaded = ClientStateStore(path)
        reloaded.load()
        got = reloaded.get("u1")
        assert got == state
        assert json.loads(path.read_text())["u1"]["acceptedChunkIndices"] == [0, 2]

        reloaded.remove("u1")
        assert reloaded.get("u1") is None
        assert json.loads(path.read_text()) == {}

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        store = ClientStateStore(path)
        assert store.load() == {}

    def test_chunk_lengths(self):
        state = ClientUploadState("s1", "a.mp4", 250, 100, 3, accepted={0, 2})
        assert state.chunk_length(2) == 50
        assert state.acked_bytes() == 150


class TestUpload:
    def test_full_upload(self, env):
        progress: list[float] = []

        async def run():
            async with env.client() as client:
                ctl = UploadController(
                    client, env.source, env.store, concurrency=3, on_progress=progress.append
                )
                result = await ctl.start()
                return ctl, result

        ctl, result = asyncio.run(run())
        assert result["assetId"] == 7
        assert ctl.status == "completed"
        assert ctl.progress == 100.0
        assert env.server.assembled() == DATA
        assert env.server.complete_calls == 1
        assert 1 < env.server.peak <= 3
        assert progress == sorted(progress)
        assert progress[-1] == 100.0
        # Nothing left to resume
        assert env.store.get(ctl.upload_id) is None

    def test_state_is_written_off_the_event_loop(self, env, monkeypatch):
        loop_thread = threading.get_ident()
        save_threads: list[int] = []
        real_save = ClientStateStore.save

        def spy(self):
            save_threads.append(threading.get_ident())
            real_save(self)

        monkeypatch.setattr(ClientStateStore, "save", spy)

        async def run():
            async with env.client() as client:
                return await UploadController(client, env.source, env.store).start()

        assert asyncio.run(run())["assetId"] == 7
        # start, one per acknowledged chunk, and the final removal
        assert len(save_threads) >= 12
        assert loop_thread not in save_threads
        assert json.loads(env.state_path.read_text()) == {}

    def test_rate_limited_chunk_is_retried(self, env):
        env.server.throttle = {2: 2}

        async def run():
            async with env.client() as client:
                ctl = UploadController(client, env.source, env.store, backoff_base=0.001)
                return await ctl.start()

        assert asyncio.run(run())["assetId"] == 7
        assert env.server.chunk_calls.count(2) == 3
        assert env.server.assembled() == DATA

    def test_rate_limit_exhausted_then_resume(self, env):
        env.server.throttle = {4: 10}

        async def run():
            async with env.client() as client:
                ctl = UploadController(
                    client, env.source, env.store, max_retries=3, backoff_base=0.001
                )
                with pytest.raises(TransientTransferError):
                    await ctl.start()
                assert ctl.status == "error"
                assert "Chunk 4" in ctl.error
                assert env.store.get(ctl.upload_id).status == "error"
                assert env.server.complete_calls == 0

                env.server.throttle = {}
                return await ctl.resume()

        assert asyncio.run(run())["assetId"] == 7
        # 1 try + 3 retries, then the successful resume
        assert env.server.chunk_calls.count(4) == 5
        assert env.server.assembled() == DATA

    def test_other_errors_are_not_retried(self, env):
        env.server.reject = {5}

        async def run():
            async with env.client() as client:
                ctl = UploadController(client, env.source, env.store)
                with pytest.raises(ValidationError, match="Chunk 5 rejected"):
                    await ctl.start()
                return ctl

        ctl = asyncio.run(run())
        assert ctl.status == "error"
        assert env.server.chunk_calls.count(5) == 1
        assert env.server.complete_calls == 0


class TestPauseResume:
    def test_pause_freezes_progress_and_resume_sends_only_missing(self, env):
        env.server.gated_from = 5

        async def run():
            env.server.gate = asyncio.Event()
            async with env.client() as client:
                ctl = UploadController(client, env.source, env.store, concurrency=3)
                task = asyncio.create_task(ctl.start())
                await _wait_until(lambda: len(env.server.chunks) == 5 and env.server.waiting == 3)

                await ctl.pause()
                assert await task is None
                assert ctl.status == "paused"
                assert ctl.progress == 50.0
                saved = env.store.get(ctl.upload_id)
                assert saved.accepted == {0, 1, 2, 3, 4}
                assert saved.status == "paused"
                # Abandoned requests never reached the server
                assert env.server.waiting == 0
                assert sorted(env.server.chunk_calls) == [0, 1, 2, 3, 4]

                env.server.gate.set()
                return await ctl.resume()

        result = asyncio.run(run())
        assert result["assetId"] == 7
        assert sorted(env.server.chunk_calls) == list(range(10))
        assert env.server.assembled() == DATA

    def test_restore_after_restart(self, env):
        # A previous process got chunks 0-2 acknowledged; the server also
        # accepted chunk 3 before that process died
        for i in range(4):
            env.server.chunks[i] = DATA[i * CHUNK : (i + 1) * CHUNK]
        env.server.total_chunks = 10
        upload_id = upload_id_for(env.source)
        env.store.put(
            upload_id,
            ClientUploadState("s1", env.source.name, len(DATA), CHUNK, 10, accepted={0, 1, 2}),
        )

        async def run():
            store = ClientStateStore(env.state_path)
            store.load()
            async with env.client() as client:
                ctl = UploadController.restore(client, env.source, store)
                assert ctl is not None
                assert ctl.status == "paused"
                assert ctl.progress == 30.0
                return await ctl.resume()

        assert asyncio.run(run())["assetId"] == 7
        assert sorted(env.server.chunk_calls) == list(range(4, 10))
        assert env.server.assembled() == DATA

    def test_restore_without_state(self, env):
        async def run():
            async with env.client() as client:
                return UploadController.restore(client, env.source, env.store)

        assert asyncio.run(run()) is None

    def test_resume_after_server_forgot_session(self, env):
        env.server.session_gone = True
        env.store.put(
            upload_id_for(env.source),
            ClientUploadState("s1", env.source.name, len(DATA), CHUNK, 10, accepted={0}),
        )

        async def run():
            async with env.client() as client:
                ctl = UploadController.restore(client, env.source, env.store)
                with pytest.raises(SessionNotFound):
                    await ctl.resume()
                return ctl

        ctl = asyncio.run(run())
        assert ctl.status == "error"
        assert env.server.chunk_calls == []


class TestCancelAndComplete:
    def test_cancel_aborts_and_forgets(self, env):
        env.server.gated_from = 2

        async def run():
            env.server.gate = asyncio.Event()
            async with env.client() as client:
                ctl = UploadController(client, env.source, env.store, concurrency=2)
                task = asyncio.create_task(ctl.start())
                await _wait_until(lambda: env.server.waiting == 2)
                await ctl.cancel()
                assert await task is None
                return ctl

        ctl = asyncio.run(run())
        assert ctl.status == "cancelled"
        assert ctl.state is None
        assert env.server.cancel_calls == 1
        assert env.server.complete_calls == 0
        assert env.store.get(ctl.upload_id) is None
        assert json.loads(env.state_path.read_text()) == {}

    def test_concurrent_complete_sends_one_request(self, env):
        for i in range(10):
            env.server.chunks[i] = DATA[i * CHUNK : (i + 1) * CHUNK]
        env.server.total_chunks = 10
        env.store.put(
            upload_id_for(env.source),
            ClientUploadState("s1", env.source.name, len(DATA), CHUNK, 10, accepted=set(range(10))),
        )

        async def run():
            async with env.client() as client:
                ctl = UploadController.restore(client, env.source, env.store)
                return await asyncio.gather(ctl.complete(), ctl.complete(), ctl.complete())

        results = asyncio.run(run())
        assert results[0] == results[1] == results[2]
        assert env.server.complete_calls == 1

    def test_complete_with_missing_chunks(self, env):
        env.store.put(
            upload_id_for(env.source),
            ClientUploadState("s1", env.source.name, len(DATA), CHUNK, 10, accepted={0, 1}),
        )

        async def run():
            async with env.client() as client:
                ctl = UploadController.restore(client, env.source, env.store)
                with pytest.raises(IncompleteUpload):
                    await ctl.complete()

        asyncio.run(run())
        assert env.server.complete_calls == 0
