"""Filename heuristics: title/year parsing, directory naming, validation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import pathlib
import re


_YEAR_PATTERNS = (
    # Movie.Title.2023.1080p / Movie.Title.(2023)
    re.compile(r"^(.+?)[.\s]+\(?(\d{4})\)?"),
    # Movie Title (2023)
    re.compile(r"^(.+?)\s*\((\d{4})\)"),
)


@dataclass(slots=True)
class MovieInfo:
    title: str
    year: int | None
    original_filename: str

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "year": self.year,
            "originalFilename": self.original_filename,
        }


def parse_movie_info(filename: str) -> MovieInfo:
    """Guess title and year from a release-style filename."""
    stem = pathlib.PurePath(filename).stem
    title, year = stem, None
    for pattern in _YEAR_PATTERNS:
        m = pattern.match(stem)
        if m:
            title, year = m.group(1), int(m.group(2))
            break

    title = re.sub(r"[._\-]", " ", title)
    title = re.sub(r"\s+", " ", title).strip()
    title = " ".join(w[:1].upper() + w[1:].lower() for w in title.split(" ")) or stem

    if year is not None and not 1900 <= year <= datetime.now().year + 2:
        year = None
    return MovieInfo(title=title, year=year, original_filename=filename)


def generate_movie_dir(title: str, year: int | None) -> str:
    """Directory name for a movie, e.g. 'The Matrix.1999'."""
    name = re.sub(r"[^a-zA-Z0-9\s\-.]", "", title).strip().strip(".") or "movie"
    return f"{name}.{year}" if year else name


def is_valid_video_file(filename: str, allowed_extensions: list[str]) -> bool:
    return pathlib.PurePath(filename).suffix.lower() in allowed_extensions


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = 0
    value = float(size)
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[i]}"
