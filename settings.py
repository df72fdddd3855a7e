"""Data directories and server settings."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib
import subprocess


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
DATA_DIR = pathlib.Path(os.environ.get("MOVIEDROP_DATA_DIR", APP_DIR / ".data"))
SERVER_SETTINGS_FILE = DATA_DIR / "server_settings.json"

MB = 1024 * 1024
GB = 1024 * MB


def load_server_settings() -> dict[str, Any]:
    """Load server-wide settings, filling in defaults."""
    if SERVER_SETTINGS_FILE.exists():
        data: dict[str, Any] = json.loads(SERVER_SETTINGS_FILE.read_text())
    else:
        data = {}
    # Upload
    data.setdefault("chunk_size", MB)
    data.setdefault("max_chunk_size", 16 * MB)
    data.setdefault("max_file_size", 4 * GB)
    data.setdefault("session_ttl_secs", 24 * 3600)
    data.setdefault("sweep_interval_secs", 5 * 60)
    data.setdefault(
        "allowed_extensions", [".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm"]
    )
    # Storage; empty = under DATA_DIR
    data.setdefault("media_dir", "")
    data.setdefault("temp_dir", "")
    data.setdefault("db_path", "")
    # Processing
    data.setdefault("max_concurrent_jobs", 2)
    data.setdefault("job_attempts", 3)
    data.setdefault("job_backoff_secs", 2.0)
    data.setdefault("poster_time_offset", "00:01:30")
    data.setdefault("hls_segment_time", 6)
    data.setdefault("video_codec", "libx264")
    data.setdefault("audio_codec", "aac")
    # Rate limits: (max requests, window seconds)
    data.setdefault("rate_limit_general", [100, 15 * 60])
    data.setdefault("rate_limit_upload", [10_000, 15 * 60])
    # Base URL for delivery links; empty = relative to this server
    data.setdefault("streaming_url", "")
    return data


def save_server_settings(settings: dict[str, Any]) -> None:
    SERVER_SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVER_SETTINGS_FILE.write_text(json.dumps(settings, indent=2))


def write_settings_file() -> pathlib.Path:
    """Write the effective settings (file values plus defaults) for editing."""
    save_server_settings(load_server_settings())
    return SERVER_SETTINGS_FILE


def media_dir(settings: dict[str, Any]) -> pathlib.Path:
    return pathlib.Path(settings["media_dir"] or DATA_DIR / "movies")


def temp_dir(settings: dict[str, Any]) -> pathlib.Path:
    return pathlib.Path(settings["temp_dir"] or DATA_DIR / "uploads")


def db_path(settings: dict[str, Any]) -> pathlib.Path:
    return pathlib.Path(settings["db_path"] or DATA_DIR / "media.db")


def _test_tool(cmd: list[str], timeout: int = 5) -> tuple[bool, str]:
    """Run a tool once. Returns (success, error_message)."""
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout)
        if result.returncode == 0:
            return True, ""
        stderr = result.stderr.decode(errors="replace").strip()
        for line in stderr.split("\n"):
            if line and not line.startswith("["):
                return False, line
        return False, stderr if stderr else "unknown error"
    except subprocess.TimeoutExpired:
        return False, "timeout"
    except FileNotFoundError:
        return False, f"{cmd[0]} not found"
    except Exception as e:
        return False, str(e)


def detect_transcoder() -> dict[str, bool]:
    """Check that ffmpeg and ffprobe are runnable."""
    tools = {}
    for name in ("ffmpeg", "ffprobe"):
        ok, err = _test_tool([name, "-hide_banner", "-version"])
        tools[name] = ok
        if ok:
            log.info("  %s: available", name)
        else:
            log.warning("  %s: unavailable - %s", name, err)
    return tools
