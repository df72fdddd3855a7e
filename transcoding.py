"""Poster + HLS generation with ffmpeg.

The transcoder is an external process; this module only builds command lines,
runs them without blocking the event loop, and turns their output into progress
updates and a result (or a TranscodeFailure).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import asyncio
import json
import logging
import pathlib
import re

from errors import TranscodeFailure


log = logging.getLogger(__name__)

POSTER_NAME = "poster.jpg"
HLS_DIR_NAME = "hls"
PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%05d.ts"

_PROBE_TIMEOUT_SEC = 60
_STDERR_TAIL_LINES = 20

# Overall progress split: probe, poster, then HLS from 30% to 90%
_PROGRESS_PROBED = 10.0
_PROGRESS_POSTER = 30.0
_PROGRESS_HLS_SPAN = 60.0
_PROGRESS_DONE = 95.0

ProgressCallback = Callable[[float], None]
Transcoder = Callable[[pathlib.Path, pathlib.Path, ProgressCallback], Awaitable["TranscodeResult"]]


@dataclass(slots=True)
class MediaInfo:
    video_codec: str
    audio_codec: str
    pix_fmt: str
    audio_channels: int = 0
    audio_sample_rate: int = 0
    duration: float = 0.0
    width: int = 0
    height: int = 0


@dataclass(slots=True)
class TranscodeResult:
    poster_path: pathlib.Path
    hls_path: pathlib.Path
    duration: float


def parse_probe_output(data: dict[str, Any]) -> MediaInfo:
    """Build MediaInfo from `ffprobe -print_format json` output."""
    video_codec = audio_codec = pix_fmt = ""
    audio_channels = audio_sample_rate = width = height = 0
    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and not video_codec:
            video_codec = stream.get("codec_name", "")
            pix_fmt = stream.get("pix_fmt", "")
            width = stream.get("width", 0) or 0
            height = stream.get("height", 0) or 0
        elif codec_type == "audio" and not audio_codec:
            audio_codec = stream.get("codec_name", "")
            audio_channels = stream.get("channels", 0) or 0
            audio_sample_rate = int(stream.get("sample_rate", 0) or 0)
    try:
        duration = float(data.get("format", {}).get("duration", 0) or 0)
    except (TypeError, ValueError):
        duration = 0.0
    return MediaInfo(
        video_codec=video_codec,
        audio_codec=audio_codec,
        pix_fmt=pix_fmt,
        audio_channels=audio_channels,
        audio_sample_rate=audio_sample_rate,
        duration=duration,
        width=width,
        height=height,
    )


def parse_timestamp(value: str) -> float:
    """'00:01:30' / '90' / '1:30.5' -> seconds."""
    seconds = 0.0
    for part in value.strip().split(":"):
        seconds = seconds * 60 + float(part)
    return seconds


_OUT_TIME_RE = re.compile(r"^out_time_(?:us|ms)=(\d+)$")


def parse_progress_line(line: str, duration: float) -> float | None:
    """Fraction (0-100) from an ffmpeg `-progress` line, or None."""
    if duration <= 0:
        return None
    m = _OUT_TIME_RE.match(line.strip())
    if not m:
        return None
    # Both out_time_us and (despite its name) out_time_ms are microseconds
    seconds = int(m.group(1)) / 1_000_000
    return max(0.0, min(100.0, seconds / duration * 100))


def build_probe_cmd(input_path: pathlib.Path) -> list[str]:
    return [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(input_path),
    ]


def build_poster_cmd(
    input_path: pathlib.Path, output_path: pathlib.Path, offset_sec: float
) -> list[str]:
    return [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-ss",
        f"{offset_sec:.3f}",
        "-i",
        str(input_path),
        "-frames:v",
        "1",
        "-vf",
        "scale=1280:720:force_original_aspect_ratio=decrease",
        "-q:v",
        "3",
        str(output_path),
    ]


def build_hls_ffmpeg_cmd(
    input_path: pathlib.Path,
    output_dir: pathlib.Path,
    media_info: MediaInfo | None = None,
    segment_time: int = 6,
    video_codec: str = "libx264",
    audio_codec: str = "aac",
) -> list[str]:
    # Stream copy when the source is already browser-friendly
    copy_video = bool(
        media_info and media_info.video_codec == "h264" and media_info.pix_fmt == "yuv420p"
    )
    copy_audio = bool(
        media_info
        and media_info.audio_codec == "aac"
        and media_info.audio_channels <= 2
        and media_info.audio_sample_rate in (44100, 48000)
    )

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:1",
        "-y",
        "-i",
        str(input_path),
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
    ]
    if copy_video:
        cmd.extend(["-c:v", "copy"])
    else:
        cmd.extend(["-c:v", video_codec, "-preset", "veryfast", "-pix_fmt", "yuv420p"])
        # Keyframes on segment boundaries so segments start cleanly
        cmd.extend(["-force_key_frames", f"expr:gte(t,n_forced*{segment_time})"])
    if copy_audio:
        cmd.extend(["-c:a", "copy"])
    else:
        cmd.extend(["-c:a", audio_codec, "-ac", "2", "-b:a", "160k"])
    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(segment_time),
            "-hls_list_size",
            "0",
            "-hls_playlist_type",
            "vod",
            "-start_number",
            "0",
            "-hls_segment_filename",
            str(output_dir / SEGMENT_PATTERN),
            str(output_dir / PLAYLIST_NAME),
        ]
    )
    return cmd


def _kill_process(proc: Any) -> bool:
    """Kill process, return True if killed."""
    try:
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


async def _monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    tag: str,
    stderr_lines: list[str],
) -> None:
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        stderr_lines.append(text)
        del stderr_lines[:-_STDERR_TAIL_LINES]
        is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", tag, text)


async def _run(
    cmd: list[str],
    tag: str,
    on_stdout_line: Callable[[str], None] | None = None,
    timeout: float | None = None,
) -> str:
    """Run cmd to completion. Returns stdout (unless streamed). Raises TranscodeFailure."""
    log.debug("Running %s: %s", tag, " ".join(cmd))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise TranscodeFailure(f"{cmd[0]} not found") from e

    stderr_lines: list[str] = []
    stdout_parts: list[str] = []

    async def read_stdout() -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            text = line.decode(errors="replace")
            if on_stdout_line is not None:
                on_stdout_line(text)
            else:
                stdout_parts.append(text)

    try:
        await asyncio.wait_for(
            asyncio.gather(
                read_stdout(),
                _monitor_ffmpeg_stderr(process, tag, stderr_lines),
                process.wait(),
            ),
            timeout,
        )
    except asyncio.TimeoutError:
        _kill_process(process)
        await process.wait()
        raise TranscodeFailure(f"{tag} timed out after {timeout:.0f}s") from None
    except BaseException:
        # Cancellation (shutdown) must not leave the process running
        if process.returncode is None and _kill_process(process):
            log.info("Killed ffmpeg (%s)", tag)
        raise

    if process.returncode != 0:
        detail = stderr_lines[-1] if stderr_lines else "no output"
        raise TranscodeFailure(f"{tag} failed (exit {process.returncode}): {detail}")
    return "".join(stdout_parts)


async def probe_media(input_path: pathlib.Path) -> MediaInfo:
    out = await _run(build_probe_cmd(input_path), "ffprobe", timeout=_PROBE_TIMEOUT_SEC)
    try:
        data = json.loads(out)
    except json.JSONDecodeError as e:
        raise TranscodeFailure(f"ffprobe returned invalid JSON: {e}") from e
    info = parse_probe_output(data)
    if not info.video_codec:
        raise TranscodeFailure("No video stream found")
    return info


class FfmpegTranscoder:
    """Produces poster.jpg and hls/playlist.m3u8 (+ segments) in output_dir."""

    def __init__(
        self,
        poster_offset: str = "00:01:30",
        segment_time: int = 6,
        video_codec: str = "libx264",
        audio_codec: str = "aac",
    ):
        self.poster_offset = parse_timestamp(poster_offset)
        self.segment_time = segment_time
        self.video_codec = video_codec
        self.audio_codec = audio_codec

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> FfmpegTranscoder:
        return cls(
            poster_offset=settings["poster_time_offset"],
            segment_time=settings["hls_segment_time"],
            video_codec=settings["video_codec"],
            audio_codec=settings["audio_codec"],
        )

    async def __call__(
        self,
        input_path: pathlib.Path,
        output_dir: pathlib.Path,
        on_progress: ProgressCallback,
    ) -> TranscodeResult:
        tag = output_dir.name
        on_progress(0.0)
        media_info = await probe_media(input_path)
        log.info(
            "Probe %s: video=%s/%s/%dx%d audio=%s/%dch duration=%.0fs",
            tag,
            media_info.video_codec,
            media_info.pix_fmt,
            media_info.width,
            media_info.height,
            media_info.audio_codec,
            media_info.audio_channels,
            media_info.duration,
        )
        on_progress(_PROGRESS_PROBED)

        # Short clips: take the still from 10% in instead of past the end
        offset = self.poster_offset
        if media_info.duration and offset >= media_info.duration:
            offset = media_info.duration * 0.1
        poster_path = output_dir / POSTER_NAME
        await _run(build_poster_cmd(input_path, poster_path, offset), f"poster:{tag}")
        on_progress(_PROGRESS_POSTER)

        hls_dir = output_dir / HLS_DIR_NAME
        await asyncio.to_thread(hls_dir.mkdir, parents=True, exist_ok=True)

        def on_line(line: str) -> None:
            pct = parse_progress_line(line, media_info.duration)
            if pct is not None:
                on_progress(_PROGRESS_POSTER + pct * _PROGRESS_HLS_SPAN / 100)

        cmd = build_hls_ffmpeg_cmd(
            input_path,
            hls_dir,
            media_info,
            self.segment_time,
            self.video_codec,
            self.audio_codec,
        )
        log.info("Starting HLS transcode for %s: %s", tag, " ".join(cmd))
        await _run(cmd, f"hls:{tag}", on_stdout_line=on_line)

        playlist = hls_dir / PLAYLIST_NAME
        if not playlist.exists():
            raise TranscodeFailure("ffmpeg finished without writing a playlist")
        on_progress(_PROGRESS_DONE)
        return TranscodeResult(
            poster_path=poster_path, hls_path=playlist, duration=media_info.duration
        )
