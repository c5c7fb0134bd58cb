import os
import re

from qobuz.metadata import TrackMetadata

MAX_NAME_LENGTH = 200

_ILLEGAL_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def sanitize_filename(name: str | None) -> str:
    """Make one path component safe: strip illegal chars, collapse whitespace, cap length."""
    if not name:
        return "Unknown"
    # tabs and newlines become spaces before the control range is stripped
    cleaned = _ILLEGAL_RE.sub("", re.sub(r"\s+", " ", str(name)))
    cleaned = re.sub(r"\s+", " ", cleaned).strip().strip(". ")
    return cleaned[:MAX_NAME_LENGTH].rstrip(". ") or "Unknown"


def _fill(template: str, values: dict[str, str]) -> str:
    # single pass, so braces inside a value are never expanded
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def build_folder_path(template: str, meta: TrackMetadata, quality_name: str) -> str:
    """Relative folder for a track, e.g. "{artist}/{album}" -> "Artist/Album"."""
    artist = sanitize_filename(meta.album_artist or meta.artist)
    values = {
        "album_artist": artist,
        "artist": artist,
        "album": sanitize_filename(meta.album),
        "year": sanitize_filename(meta.year) if meta.year else "Unknown",
        "quality": sanitize_filename(quality_name.replace("/", "-")),
        "title": sanitize_filename(meta.title),
        "track_number": f"{meta.track_number:02d}",
    }
    parts = [_fill(part, values) for part in re.split(r"[\\/]", template) if part]
    return os.path.join(*parts) if parts else ""


def build_filename(template: str, meta: TrackMetadata, extension: str) -> str:
    """File name for a track, e.g. "{track_number}. {title}" -> "01. Title.flac"."""
    number = f"{meta.track_number:02d}"
    values = {
        "track_number": number,
        "trackNumber": number,
        "title": sanitize_filename(meta.title),
        "artist": sanitize_filename(meta.artist),
        "album": sanitize_filename(meta.album),
        "year": sanitize_filename(meta.year) if meta.year else "Unknown",
    }
    stem = sanitize_filename(_fill(template, values))
    return f"{stem}.{extension}"
