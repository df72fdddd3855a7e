"""Asset store: SQLite records for movies, upload sessions and transcode jobs."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import logging
import pathlib
import sqlite3
import threading

from errors import SessionNotFound


log = logging.getLogger(__name__)

_db_path: pathlib.Path | None = None
_init_lock = threading.Lock()

ASSET_STATUSES = ("uploading", "processing", "ready", "error")
JOB_STATES = ("queued", "active", "succeeded", "failed")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS movies (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    title         TEXT NOT NULL,
    year          INTEGER,
    filename      TEXT NOT NULL,
    path          TEXT NOT NULL UNIQUE,
    poster_path   TEXT,
    hls_path      TEXT,
    file_size     INTEGER,
    duration      REAL,
    status        TEXT DEFAULT 'uploading'
                  CHECK (status IN ('uploading', 'processing', 'ready', 'error')),
    progress      REAL DEFAULT 0,
    error_message TEXT,
    uploaded_at   DATETIME DEFAULT CURRENT_TIMESTAMP,
    processed_at  DATETIME,
    updated_at    DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_movies_status ON movies(status);
CREATE INDEX IF NOT EXISTS idx_movies_uploaded_at ON movies(uploaded_at DESC);

CREATE TABLE IF NOT EXISTS upload_sessions (
    id            TEXT PRIMARY KEY,
    filename      TEXT NOT NULL,
    total_size    INTEGER NOT NULL,
    uploaded_size INTEGER DEFAULT 0,
    chunk_size    INTEGER NOT NULL,
    status        TEXT DEFAULT 'active'
                  CHECK (status IN ('active', 'completed', 'cancelled', 'expired')),
    movie_id      INTEGER,
    temp_dir      TEXT NOT NULL,
    created_at    REAL NOT NULL,
    expires_at    REAL NOT NULL,
    FOREIGN KEY (movie_id) REFERENCES movies(id)
);
CREATE INDEX IF NOT EXISTS idx_upload_sessions_status ON upload_sessions(status);

CREATE TABLE IF NOT EXISTS transcode_jobs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    movie_id    INTEGER NOT NULL,
    input_path  TEXT NOT NULL,
    output_dir  TEXT NOT NULL,
    progress    REAL DEFAULT 0,
    attempts    INTEGER DEFAULT 0,
    state       TEXT DEFAULT 'queued'
                CHECK (state IN ('queued', 'active', 'succeeded', 'failed')),
    last_error  TEXT,
    created_at  DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at  DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (movie_id) REFERENCES movies(id)
);
CREATE INDEX IF NOT EXISTS idx_transcode_jobs_state ON transcode_jobs(state);
"""

# Columns callers may update; everything else is managed here
_MOVIE_FIELDS = {
    "title",
    "year",
    "poster_path",
    "hls_path",
    "file_size",
    "duration",
    "status",
    "progress",
    "error_message",
    "processed_at",
}
_SESSION_FIELDS = {"uploaded_size", "status", "movie_id"}
_JOB_FIELDS = {"progress", "attempts", "state", "last_error"}


def init(db_path: pathlib.Path) -> None:
    """Open (or create) the database at db_path and apply the schema."""
    global _db_path
    with _init_lock:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _db_path = db_path
        with _connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
    log.info("Asset store ready at %s", db_path)


@contextmanager
def _connect() -> Iterator[sqlite3.Connection]:
    if _db_path is None:
        raise RuntimeError("assets.init() has not been called")
    conn = sqlite3.connect(_db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def _set_clause(updates: dict[str, Any], allowed: set[str]) -> tuple[str, list[Any]]:
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    fields = list(updates)
    return ", ".join(f"{f} = ?" for f in fields), [updates[f] for f in fields]


# =============================================================================
# Movies
# =============================================================================


def _insert_movie(
    conn: sqlite3.Connection,
    title: str,
    year: int | None,
    filename: str,
    path: str,
    file_size: int,
    status: str,
) -> int:
    cur = conn.execute(
        "INSERT INTO movies (title, year, filename, path, file_size, status)"
        " VALUES (?, ?, ?, ?, ?, ?)",
        (title, year, filename, path, file_size, status),
    )
    return int(cur.lastrowid)


def create_movie(
    title: str,
    year: int | None,
    filename: str,
    path: str,
    file_size: int,
    status: str = "uploading",
) -> int:
    with _connect() as conn:
        return _insert_movie(conn, title, year, filename, path, file_size, status)


def update_movie(movie_id: int, **updates: Any) -> int:
    if not updates:
        return 0
    clause, values = _set_clause(updates, _MOVIE_FIELDS)
    with _connect() as conn:
        cur = conn.execute(
            f"UPDATE movies SET {clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [*values, movie_id],
        )
        return cur.rowcount


def get_movie(movie_id: int) -> dict[str, Any] | None:
    with _connect() as conn:
        row = conn.execute("SELECT * FROM movies WHERE id = ?", (movie_id,)).fetchone()
    return dict(row) if row else None


def get_all_movies(status: str | None = None) -> list[dict[str, Any]]:
    sql = "SELECT * FROM movies"
    params: list[Any] = []
    if status:
        sql += " WHERE status = ?"
        params.append(status)
    sql += " ORDER BY uploaded_at DESC, id DESC"
    with _connect() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def count_movies_by_status() -> dict[str, int]:
    counts = dict.fromkeys(ASSET_STATUSES, 0)
    with _connect() as conn:
        for row in conn.execute("SELECT status, COUNT(*) AS n FROM movies GROUP BY status"):
            counts[row["status"]] = row["n"]
    return counts


def delete_movie(movie_id: int) -> int:
    with _connect() as conn:
        conn.execute("DELETE FROM transcode_jobs WHERE movie_id = ?", (movie_id,))
        conn.execute("UPDATE upload_sessions SET movie_id = NULL WHERE movie_id = ?", (movie_id,))
        return conn.execute("DELETE FROM movies WHERE id = ?", (movie_id,)).rowcount


# =============================================================================
# Upload sessions
# =============================================================================


def create_upload_session(
    session_id: str,
    filename: str,
    total_size: int,
    chunk_size: int,
    temp_dir: str,
    created_at: float,
    expires_at: float,
) -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT INTO upload_sessions"
            " (id, filename, total_size, chunk_size, temp_dir, created_at, expires_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (session_id, filename, total_size, chunk_size, temp_dir, created_at, expires_at),
        )


def update_upload_session(session_id: str, **updates: Any) -> int:
    if not updates:
        return 0
    clause, values = _set_clause(updates, _SESSION_FIELDS)
    with _connect() as conn:
        cur = conn.execute(
            f"UPDATE upload_sessions SET {clause} WHERE id = ?", [*values, session_id]
        )
        return cur.rowcount


def get_upload_session(session_id: str) -> dict[str, Any] | None:
    with _connect() as conn:
        row = conn.execute(
            "SELECT * FROM upload_sessions WHERE id = ?", (session_id,)
        ).fetchone()
    return dict(row) if row else None


def get_upload_sessions(status: str | None = None) -> list[dict[str, Any]]:
    sql = "SELECT * FROM upload_sessions"
    params: list[Any] = []
    if status:
        sql += " WHERE status = ?"
        params.append(status)
    with _connect() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def delete_upload_session(session_id: str) -> int:
    with _connect() as conn:
        return conn.execute("DELETE FROM upload_sessions WHERE id = ?", (session_id,)).rowcount


def discard_upload_session(session_id: str) -> bool:
    """Delete the session row unless a completion already committed it."""
    with _connect() as conn:
        cur = conn.execute(
            "DELETE FROM upload_sessions WHERE id = ? AND status != 'completed'", (session_id,)
        )
        return cur.rowcount > 0


def finalize_upload(
    session_id: str,
    title: str,
    year: int | None,
    filename: str,
    path: str,
    file_size: int,
    input_path: str,
) -> tuple[int, int]:
    """Commit the movie, its transcode job and the session outcome atomically.

    The session row is claimed first; if it is no longer 'active' (cancelled,
    expired or already completed) nothing is written and SessionNotFound is
    raised. Returns (movie_id, job_id).
    """
    with _connect() as conn:
        claimed = conn.execute(
            "UPDATE upload_sessions SET status = 'completed', uploaded_size = ?"
            " WHERE id = ? AND status = 'active'",
            (file_size, session_id),
        ).rowcount
        if not claimed:
            raise SessionNotFound(session_id)
        movie_id = _insert_movie(conn, title, year, filename, path, file_size, "processing")
        job_id = _insert_job(conn, movie_id, input_path, path)
        conn.execute(
            "UPDATE upload_sessions SET movie_id = ? WHERE id = ?", (movie_id, session_id)
        )
    return movie_id, job_id


# =============================================================================
# Transcode jobs (write-ahead log for the admission queue)
# =============================================================================


def _insert_job(conn: sqlite3.Connection, movie_id: int, input_path: str, output_dir: str) -> int:
    cur = conn.execute(
        "INSERT INTO transcode_jobs (movie_id, input_path, output_dir) VALUES (?, ?, ?)",
        (movie_id, input_path, output_dir),
    )
    return int(cur.lastrowid)


def create_job(movie_id: int, input_path: str, output_dir: str) -> int:
    with _connect() as conn:
        return _insert_job(conn, movie_id, input_path, output_dir)


def get_job(job_id: int) -> dict[str, Any] | None:
    with _connect() as conn:
        row = conn.execute("SELECT * FROM transcode_jobs WHERE id = ?", (job_id,)).fetchone()
    return dict(row) if row else None


def get_jobs(state: str | None = None) -> list[dict[str, Any]]:
    sql = "SELECT * FROM transcode_jobs"
    params: list[Any] = []
    if state:
        sql += " WHERE state = ?"
        params.append(state)
    sql += " ORDER BY id"
    with _connect() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def update_job(job_id: int, **updates: Any) -> int:
    if not updates:
        return 0
    clause, values = _set_clause(updates, _JOB_FIELDS)
    with _connect() as conn:
        cur = conn.execute(
            f"UPDATE transcode_jobs SET {clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [*values, job_id],
        )
        return cur.rowcount


def requeue_active_jobs() -> int:
    """Return jobs left 'active' by a crash to the queue."""
    with _connect() as conn:
        return conn.execute(
            "UPDATE transcode_jobs SET state = 'queued', updated_at = CURRENT_TIMESTAMP"
            " WHERE state = 'active'"
        ).rowcount
