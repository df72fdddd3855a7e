"""Tests for main.py (HTTP API through FastAPI's TestClient)."""

from __future__ import annotations

from pathlib import Path

import contextlib
import time

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import assets
import main
import settings
from errors import TranscodeFailure
from transcoding import TranscodeResult


CHUNK = 250

BASE_SETTINGS = {
    "chunk_size": CHUNK,
    "max_chunk_size": 2000,
    "max_file_size": 100_000,
    "allowed_extensions": [".mp4", ".mkv"],
    "max_concurrent_jobs": 1,
    "job_attempts": 1,
    "job_backoff_secs": 0.01,
    "rate_limit_general": [10_000, 900],
    "rate_limit_upload": [10_000, 900],
}


async def fake_transcode(input_path, output_dir, on_progress):
    on_progress(50.0)
    hls = output_dir / "hls"
    hls.mkdir()
    (hls / "playlist.m3u8").write_text("#EXTM3U\n#EXTINF:6.0,\nsegment_00000.ts\n#EXT-X-ENDLIST\n")
    (hls / "segment_00000.ts").write_bytes(b"\x47" * 376)
    (output_dir / "poster.jpg").write_bytes(b"\xff\xd8poster")
    return TranscodeResult(output_dir / "poster.jpg", hls / "playlist.m3u8", 6.0)


async def failing_transcode(input_path, output_dir, on_progress):
    raise TranscodeFailure("No video stream found")


@pytest.fixture
def start_app(tmp_path: Path, monkeypatch):
    """Start the app against a temp data dir; call with settings overrides."""
    monkeypatch.setattr(settings, "DATA_DIR", tmp_path)
    monkeypatch.setattr(settings, "SERVER_SETTINGS_FILE", tmp_path / "server_settings.json")
    original_db = assets._db_path
    stack = contextlib.ExitStack()

    def start(transcoder=fake_transcode, **overrides) -> TestClient:
        monkeypatch.setattr(main, "_build_transcoder", lambda s: transcoder)
        settings.save_server_settings({**BASE_SETTINGS, **overrides})
        return stack.enter_context(TestClient(main.app))

    yield start
    stack.close()
    assets._db_path = original_db


@pytest.fixture
def client(start_app) -> TestClient:
    return start_app()


def _upload(client: TestClient, filename: str, data: bytes, order=None) -> dict:
    started = client.post("/api/upload/start", json={"filename": filename, "fileSize": len(data)})
    assert started.status_code == 200, started.text
    sid = started.json()["sessionId"]
    total = started.json()["totalChunks"]
    for i in order or range(total):
        r = _send_chunk(client, sid, i, data[i * CHUNK : (i + 1) * CHUNK])
        assert r.status_code == 200, r.text
    r = client.post("/api/upload/complete", json={"sessionId": sid})
    assert r.status_code == 200, r.text
    return r.json()


def _send_chunk(client: TestClient, sid: str, index: int, payload: bytes):
    return client.post(
        "/api/upload/chunk",
        data={"sessionId": sid, "chunkIndex": str(index)},
        files={"chunk": ("blob", payload, "application/octet-stream")},
    )


def _wait_for_status(client: TestClient, movie_id: int, status: str) -> dict:
    for _ in range(250):
        movie = client.get(f"/api/movies/{movie_id}").json()
        if movie["status"] == status:
            return movie
        time.sleep(0.02)
    raise AssertionError(f"movie {movie_id} never reached {status}: {movie}")


DATA = bytes(i % 251 for i in range(1000))


class TestUploadFlow:
    def test_upload_transcode_and_stream(self, client, tmp_path):
        result = _upload(client, "The.Matrix.1999.mp4", DATA, order=[3, 1, 2, 0])
        assert result["title"] == "The Matrix"
        assert result["year"] == 1999
        assert result["status"] == "processing"
        assert "Processing started" in result["message"]

        movie = _wait_for_status(client, result["assetId"], "ready")
        assert movie["progress"] == 100
        assert movie["duration"] == 6.0
        assert movie["posterUrl"] == "/media/The%20Matrix.1999/poster.jpg"
        assert movie["streamUrl"] == "/media/The%20Matrix.1999/hls/playlist.m3u8"
        assert movie["downloadUrl"] == "/media/The%20Matrix.1999/movie.mp4"

        r = client.get(movie["downloadUrl"], headers={"Range": "bytes=0-99"})
        assert r.status_code == 206
        assert r.headers["content-length"] == "100"
        assert r.headers["content-range"] == "bytes 0-99/1000"
        assert r.content == DATA[:100]

        r = client.get(movie["downloadUrl"])
        assert r.status_code == 200
        assert r.content == DATA

        r = client.get(movie["downloadUrl"], headers={"Range": "bytes=500-100"})
        assert r.status_code == 416
        assert r.content == b""

        r = client.get(movie["posterUrl"])
        assert r.content == b"\xff\xd8poster"
        assert r.headers["cache-control"] == "public, max-age=86400"

        r = client.get(movie["streamUrl"])
        assert r.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert "segment_00000.ts" in r.text

        r = client.get(
            "/media/The%20Matrix.1999/hls/segment_00000.ts", headers={"Range": "bytes=188-"}
        )
        assert r.status_code == 206
        assert r.content == b"\x47" * 188

    def test_session_snapshot_lists_accepted_chunks(self, client):
        sid = client.post(
            "/api/upload/start", json={"filename": "Heat.mp4", "fileSize": len(DATA)}
        ).json()["sessionId"]
        _send_chunk(client, sid, 2, DATA[500:750])
        snapshot = client.get(f"/api/upload/{sid}").json()
        assert snapshot["acceptedChunks"] == [2]
        assert snapshot["uploadedBytes"] == 250
        assert snapshot["progressPercent"] == 25.0
        assert snapshot["status"] == "active"

    def test_transcode_failure_marks_error(self, start_app):
        client = start_app(transcoder=failing_transcode)
        result = _upload(client, "Broken.mp4", DATA)
        movie = _wait_for_status(client, result["assetId"], "error")
        assert movie["error_message"] == "No video stream found"
        assert movie["streamUrl"] is None
        assert movie["posterUrl"] is None

    def test_streaming_url_prefixes_links(self, start_app):
        client = start_app(streaming_url="http://cdn.example/")
        result = _upload(client, "Heat.1995.mp4", DATA)
        movie = client.get(f"/api/movies/{result['assetId']}").json()
        assert movie["downloadUrl"] == "http://cdn.example/media/Heat.1995/movie.mp4"

    def test_delete_movie(self, client, tmp_path):
        result = _upload(client, "Heat.1995.mp4", DATA)
        _wait_for_status(client, result["assetId"], "ready")
        assert (tmp_path / "movies" / "Heat.1995").is_dir()

        r = client.delete(f"/api/movies/{result['assetId']}")
        assert r.status_code == 200
        assert not (tmp_path / "movies" / "Heat.1995").exists()
        assert client.get(f"/api/movies/{result['assetId']}").status_code == 404
        assert client.delete(f"/api/movies/{result['assetId']}").status_code == 404

    def test_status_and_health(self, client):
        result = _upload(client, "Heat.mp4", DATA)
        _wait_for_status(client, result["assetId"], "ready")
        status = client.get("/api/status").json()
        assert status["movies"]["total"] == 1
        assert status["movies"]["ready"] == 1
        assert status["activeSessions"] == 0
        assert status["transcodes"] == {"active": 0, "pending": 0}
        assert client.get("/api/health").json()["status"] == "healthy"


class TestUploadErrors:
    def test_invalid_extension(self, client):
        r = client.post("/api/upload/start", json={"filename": "notes.txt", "fileSize": 10})
        assert r.status_code == 400
        assert "Invalid file type" in r.json()["error"]

    def test_unknown_session(self, client):
        r = _send_chunk(client, "nope", 0, b"x")
        assert r.status_code == 404
        assert r.json()["error"] == "Upload session not found: nope"
        assert client.get("/api/upload/nope").status_code == 404
        assert client.post("/api/upload/complete", json={"sessionId": "nope"}).status_code == 404

    def test_incomplete_upload(self, client):
        sid = client.post(
            "/api/upload/start", json={"filename": "Heat.mp4", "fileSize": len(DATA)}
        ).json()["sessionId"]
        _send_chunk(client, sid, 0, DATA[:CHUNK])
        r = client.post("/api/upload/complete", json={"sessionId": sid})
        assert r.status_code == 400
        assert r.json()["error"].startswith("Missing chunks (3): 1, 2, 3")

    def test_wrong_chunk_length(self, client):
        sid = client.post(
            "/api/upload/start", json={"filename": "Heat.mp4", "fileSize": len(DATA)}
        ).json()["sessionId"]
        assert _send_chunk(client, sid, 0, DATA[:10]).status_code == 400
        assert _send_chunk(client, sid, 9, DATA[:CHUNK]).status_code == 400

    def test_oversized_chunk_body(self, client):
        sid = client.post(
            "/api/upload/start", json={"filename": "Heat.mp4", "fileSize": len(DATA)}
        ).json()["sessionId"]
        r = _send_chunk(client, sid, 0, b"x" * 2001)
        assert r.status_code == 400
        assert r.json()["error"] == "Chunk too large"

    def test_expired_session(self, start_app):
        client = start_app(session_ttl_secs=-1)
        sid = client.post(
            "/api/upload/start", json={"filename": "Heat.mp4", "fileSize": len(DATA)}
        ).json()["sessionId"]
        r = _send_chunk(client, sid, 0, DATA[:CHUNK])
        assert r.status_code == 410
        # Gone after expiry
        assert _send_chunk(client, sid, 0, DATA[:CHUNK]).status_code == 404

    def test_cancel_is_always_ok(self, client, tmp_path):
        sid = client.post(
            "/api/upload/start", json={"filename": "Heat.mp4", "fileSize": len(DATA)}
        ).json()["sessionId"]
        assert client.post("/api/upload/cancel", json={"sessionId": sid}).status_code == 200
        assert client.post("/api/upload/cancel", json={"sessionId": sid}).status_code == 200
        assert client.post("/api/upload/cancel", json={"sessionId": "nope"}).status_code == 200
        assert not (tmp_path / "uploads" / sid).exists()
        assert _send_chunk(client, sid, 0, DATA[:CHUNK]).status_code == 404


class TestMoviesApi:
    def test_unknown_status_filter(self, client):
        assert client.get("/api/movies?status=bogus").status_code == 400
        assert client.get("/api/movies?status=ready").json() == []

    def test_missing_media(self, client):
        assert client.get("/media/Nope/movie.mp4").status_code == 404
        assert client.get("/media/Nope/hls/segment_0.m4s").status_code == 400

    @pytest.mark.parametrize(
        "parts", [("..", "movie.mp4"), ("Heat", ".."), ("a/b", "movie.mp4"), ("", "movie.mp4")]
    )
    def test_media_file_rejects_traversal(self, client, parts):
        with pytest.raises(HTTPException) as exc_info:
            main._media_file(*parts)
        assert exc_info.value.status_code == 400


class TestRateLimit:
    def test_general_pool(self, start_app):
        client = start_app(rate_limit_general=[3, 900])
        for _ in range(3):
            assert client.get("/api/movies").status_code == 200
        r = client.get("/api/movies")
        assert r.status_code == 429
        assert r.headers["retry-after"] == "900"
        # Health checks and the upload pool are unaffected
        assert client.get("/api/health").status_code == 200
        r = client.post("/api/upload/start", json={"filename": "Heat.mp4", "fileSize": 10})
        assert r.status_code == 200

    def test_upload_pool(self, start_app):
        client = start_app(rate_limit_upload=[2, 900])
        for _ in range(2):
            client.post("/api/upload/cancel", json={"sessionId": "x"})
        assert client.post("/api/upload/cancel", json={"sessionId": "x"}).status_code == 429
        assert client.get("/api/movies").status_code == 200
