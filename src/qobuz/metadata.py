import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from qobuz.genres import translate_genre
from qobuz.lyrics import Lyrics

logger = logging.getLogger(__name__)


class Role(Enum):
    MAIN = "main"
    FEATURED = "featured"
    COMPOSER = "composer"
    PRODUCER = "producer"
    WRITER = "writer"
    ENGINEER = "engineer"
    MIXER = "mixer"
    CONDUCTOR = "conductor"
    ORCHESTRA = "orchestra"
    CHOIR = "choir"


def _contains(*needles: str):
    return lambda role, subroles: any(n in role for n in needles)


def _is_main(role: str, subroles: list[str]) -> bool:
    return (
        "main artist" in role
        or "mainartist" in role
        or role == "performer"
        or any(s in ("vocal", "vocals", "rap", "rapper") for s in subroles)
    )


# Cumulative: every matching entry applies.
ROLE_PATTERNS = [
    (Role.COMPOSER, _contains("composer")),
    (Role.PRODUCER, _contains("producer")),
    (Role.WRITER, _contains("writer", "lyricist", "author")),
    (Role.ENGINEER, _contains("engineer", "mastering", "recording")),
    (Role.MIXER, _contains("mixer")),
    (Role.FEATURED, _contains("featured artist", "featuredartist", "featuring")),
    (Role.MAIN, _is_main),
]

# Exclusive: first match wins.
ENSEMBLE_PATTERNS = [
    (Role.CONDUCTOR, _contains("conductor")),
    (Role.ORCHESTRA, _contains("orchestra")),
    (Role.CHOIR, _contains("choir")),
]

# Album-level credit role substring -> TrackMetadata field
CREDIT_FIELDS = {
    "Producer": "producer",
    "Mixer": "mixer",
    "Mixed By": "mixer",
    "Remixer": "remixer",
    "Lyricist": "lyricist",
    "Songwriter": "writer",
    "Writer": "writer",
    "Arranger": "arranger",
    "Engineer": "engineer",
    "Mastering": "engineer",
    "Recording": "engineer",
}


@dataclass
class Performers:
    main: list[str] = field(default_factory=list)
    featured: list[str] = field(default_factory=list)
    composers: list[str] = field(default_factory=list)
    producers: list[str] = field(default_factory=list)
    writers: list[str] = field(default_factory=list)
    engineers: list[str] = field(default_factory=list)
    mixers: list[str] = field(default_factory=list)
    conductor: str = ""
    orchestra: str = ""
    choir: str = ""


_BUCKETS = {
    Role.MAIN: "main",
    Role.FEATURED: "featured",
    Role.COMPOSER: "composers",
    Role.PRODUCER: "producers",
    Role.WRITER: "writers",
    Role.ENGINEER: "engineers",
    Role.MIXER: "mixers",
}


@dataclass
class TrackMetadata:
    title: str = ""
    artist: str = ""
    album_artist: str = ""
    album: str = ""
    year: str = ""
    track_number: int = 1
    total_tracks: int = 1
    disc_number: int = 1
    total_discs: int = 1
    genre: str = ""
    composer: str = ""
    conductor: str = ""
    producer: str = ""
    mixer: str = ""
    remixer: str = ""
    lyricist: str = ""
    writer: str = ""
    arranger: str = ""
    engineer: str = ""
    label: str = ""
    copyright: str = ""
    isrc: str = ""
    upc: str = ""
    catalog_number: str = ""
    release_date: str = ""
    release_type: str = "album"
    version: str = ""
    duration: int = 0
    bit_depth: int = 16
    sample_rate: float = 44.1
    cover_url: str = ""
    comment: str = ""
    track_id: str = ""
    album_id: str = ""


def normalize_name(name: str | None) -> str:
    """Accent-, case- and hyphen-insensitive form used for deduplication."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", stripped.replace("-", " ")).strip().lower()


def join_with_and(names: list[str]) -> str:
    """["A", "B", "C"] -> "A, B & C"."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    return f"{', '.join(names[:-1])} & {names[-1]}"


def parse_credits(raw: str | None) -> list[tuple[str, str]]:
    """Split "Name, Role, Role - Name, Role" into (name, raw_role) tokens."""
    tokens = []
    for chunk in (raw or "").split(" - "):
        name, _, role = chunk.partition(", ")
        name, role = name.strip(), role.strip()
        if name and role:
            tokens.append((name, role))
    return tokens


def classify_role(raw_role: str) -> set[Role]:
    role = raw_role.lower()
    subroles = [s.strip() for s in role.split(",")]
    roles = {r for r, match in ROLE_PATTERNS if match(role, subroles)}
    for r, match in ENSEMBLE_PATTERNS:
        if match(role, subroles):
            roles.add(r)
            break
    return roles


def _add_unique(bucket: list[str], name: str) -> None:
    key = normalize_name(name)
    if all(normalize_name(existing) != key for existing in bucket):
        bucket.append(name)


def extract_performers(raw: str | None) -> Performers:
    performers = Performers()
    for name, raw_role in parse_credits(raw):
        for role in classify_role(raw_role):
            if role in _BUCKETS:
                _add_unique(getattr(performers, _BUCKETS[role]), name)
            else:
                setattr(performers, role.value, name)
    return performers


def extract_credits(album: dict) -> dict[str, str]:
    """Discrete album-level credit fields, "; "-joined when repeated."""
    buckets: dict[str, list[str]] = {}
    for credit in album.get("credits") or []:
        if not isinstance(credit, dict):
            continue
        role, name = credit.get("role") or "", credit.get("name") or ""
        if not name:
            continue
        for needle, key in CREDIT_FIELDS.items():
            if needle in role:
                _add_unique(buckets.setdefault(key, []), name)
    return {key: "; ".join(names) for key, names in buckets.items()}


def _name_of(obj) -> str:
    return obj.get("name", "") if isinstance(obj, dict) else ""


def _format_date(timestamp) -> str:
    if not timestamp:
        return ""
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).strftime("%Y-%m-%d")
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def _int_or(value, default: int) -> int:
    try:
        return int(value) or default
    except (TypeError, ValueError):
        return default


def extract_metadata(track: dict, album: dict | None = None,
                     file_info: dict | None = None) -> TrackMetadata:
    """Build the flat tag record for one track. Pure, never raises on missing fields."""
    track = track or {}
    album = album or track.get("album") or {}
    file_info = file_info or {}
    performer_name = _name_of(track.get("performer")) or _name_of(track.get("artist"))

    performers = extract_performers(track.get("performers"))
    credits = extract_credits(album)

    names: list[str] = []
    for name in performers.main or [performer_name or "Unknown"]:
        _add_unique(names, name)
    for name in performers.featured:
        _add_unique(names, name)

    release_date = _format_date(album.get("released_at")) or album.get("release_date_original") or ""

    def merged(bucket: list[str], fallback: str = "") -> str:
        return ("; ".join(bucket) or fallback or "").strip()

    album_id = str(album.get("id") or "")
    image = album.get("image") or {}
    return TrackMetadata(
        title=track.get("title") or "",
        artist=join_with_and(names),
        album_artist=_name_of(album.get("artist")) or performer_name,
        album=album.get("title") or "",
        year=release_date[:4],
        track_number=_int_or(track.get("track_number"), 1),
        total_tracks=_int_or(album.get("tracks_count"), 1),
        disc_number=_int_or(track.get("media_number"), 1),
        total_discs=_int_or(album.get("media_count"), 1),
        genre=translate_genre(album.get("genres_list") or _name_of(album.get("genre"))),
        composer=merged(performers.composers, _name_of(track.get("composer"))),
        conductor=performers.conductor,
        producer=merged(performers.producers, credits.get("producer")),
        mixer=merged(performers.mixers, credits.get("mixer")),
        remixer=credits.get("remixer", ""),
        lyricist=credits.get("lyricist", ""),
        writer=merged(performers.writers, credits.get("writer")),
        arranger=credits.get("arranger", ""),
        engineer=merged(performers.engineers, credits.get("engineer")),
        label=_name_of(album.get("label")),
        copyright=album.get("copyright") or track.get("copyright") or "",
        isrc=track.get("isrc") or "",
        upc=album.get("upc") or "",
        catalog_number=album.get("catalog_number") or "",
        release_date=release_date,
        release_type=album.get("release_type") or "album",
        version=track.get("version") or "",
        duration=_int_or(track.get("duration"), 0),
        bit_depth=file_info.get("bit_depth") or track.get("maximum_bit_depth") or 16,
        sample_rate=file_info.get("sample_rate") or track.get("maximum_sampling_rate") or 44.1,
        cover_url=image.get("large") or image.get("small") or "",
        comment=f"https://open.qobuz.com/album/{album_id}" if album_id else "",
        track_id=str(track.get("id") or ""),
        album_id=album_id,
    )


def build_flac_tags(meta: TrackMetadata, lyrics: Lyrics | None = None) -> list[tuple[str, str]]:
    """Ordered Vorbis comment pairs; empty values are dropped."""
    tags = [
        ("TITLE", meta.title),
        ("ARTIST", meta.artist),
        ("ALBUM", meta.album),
        ("ALBUMARTIST", meta.album_artist),
        ("DATE", meta.release_date),
        ("YEAR", meta.year),
        ("TRACKNUMBER", str(meta.track_number)),
        ("TRACKTOTAL", str(meta.total_tracks)),
        ("DISCNUMBER", str(meta.disc_number)),
        ("DISCTOTAL", str(meta.total_discs)),
        ("GENRE", meta.genre),
        ("COMPOSER", meta.composer),
        ("CONDUCTOR", meta.conductor),
        ("PRODUCER", meta.producer),
        ("MIXER", meta.mixer),
        ("REMIXER", meta.remixer),
        ("ARRANGER", meta.arranger),
        ("ENGINEER", meta.engineer),
        ("LYRICIST", meta.lyricist),
        ("WRITER", meta.writer),
        ("LABEL", meta.label),
        ("PUBLISHER", meta.label),
        ("COPYRIGHT", meta.copyright),
        ("ISRC", meta.isrc),
        ("BARCODE", meta.upc),
        ("UPC", meta.upc),
        ("CATALOGNUMBER", meta.catalog_number),
        ("RELEASEDATE", meta.release_date),
        ("RELEASETYPE", meta.release_type),
        ("VERSION", meta.version),
        ("MEDIA", "Digital Media"),
        ("COMMENT", meta.comment),
    ]
    if lyrics:
        # LYRICS holds LRC when available so players detect timestamps
        tags.append(("LYRICS", lyrics.synced or lyrics.plain or ""))
        tags.append(("SYNCEDLYRICS", lyrics.synced or ""))
        tags.append(("UNSYNCEDLYRICS", lyrics.plain or ""))
        tags.append(("LYRICS_SOURCE", lyrics.source or ""))
    return [(key, value) for key, value in tags if value and value.strip()]
