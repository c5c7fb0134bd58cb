"""Shared fixtures: synthetic FLAC files and in-memory stand-ins for the network."""

import asyncio

import aiohttp
import pytest

from qobuz.client import QobuzError
from qobuz.history import History
from qobuz.lyrics import Lyrics
from qobuz.tagger import TagWriteQueue

COVER = b"\xff\xd8\xff\xe0" + b"cover-bytes" * 20
AUDIO = b"\xff\xf8\xc9\x18" + bytes(range(256)) * 40


def streaminfo(sample_rate: int = 44100, channels: int = 2, bits: int = 16,
               total_samples: int = 441000) -> bytes:
    packed = (sample_rate << 44) | ((channels - 1) << 41) | ((bits - 1) << 36) | total_samples
    return (
        (4096).to_bytes(2, "big") * 2
        + (0).to_bytes(3, "big") * 2
        + packed.to_bytes(8, "big")
        + b"\x00" * 16
    )


def block(block_type: int, data: bytes, last: bool = False) -> bytes:
    return bytes([(0x80 if last else 0) | block_type]) + len(data).to_bytes(3, "big") + data


def flac_bytes(audio: bytes = AUDIO, padding: int = 0) -> bytes:
    """A minimal valid FLAC stream: STREAMINFO (+ optional PADDING) and audio bytes."""
    if padding:
        return b"fLaC" + block(0, streaminfo()) + block(1, b"\x00" * padding, last=True) + audio
    return b"fLaC" + block(0, streaminfo(), last=True) + audio


@pytest.fixture
def flac_file(tmp_path):
    path = tmp_path / "track.flac"
    path.write_bytes(flac_bytes(padding=64))
    return path


class FakeContent:
    def __init__(self, body: bytes, chunk: int, delay: float, fail_after: int | None):
        self.body = body
        self.chunk = chunk
        self.delay = delay
        self.fail_after = fail_after

    async def iter_chunked(self, n):
        size = self.chunk or n
        for i, start in enumerate(range(0, len(self.body), size)):
            if self.fail_after is not None and i >= self.fail_after:
                raise aiohttp.ClientPayloadError("connection reset")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield self.body[start:start + size]


class FakeResponse:
    def __init__(self, session: "FakeSession", url: str, body: bytes | None):
        self.session = session
        self.url = url
        self.status = 200 if body is not None else 404
        body = body or b""
        self.headers = {"Content-Length": str(len(body))}
        self.content = FakeContent(body, session.chunk, session.delay, session.fail_after)

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientError(f"HTTP {self.status}")

    async def __aenter__(self):
        self.session.active += 1
        self.session.max_active = max(self.session.max_active, self.session.active)
        self.session.log.append(("open", self.url))
        return self

    async def __aexit__(self, *exc):
        self.session.active -= 1
        self.session.log.append(("close", self.url))
        return False


class FakeSession:
    """Serves stream URLs from a dict and records how many are open at once."""

    def __init__(self, files: dict[str, bytes] | None = None, default: bytes | None = None,
                 chunk: int = 4096, delay: float = 0, fail_after: int | None = None):
        self.files = files or {}
        self.default = default
        self.chunk = chunk
        self.delay = delay
        self.fail_after = fail_after
        self.requests: list[str] = []
        self.active = 0
        self.max_active = 0
        self.log: list[tuple[str, str]] = []

    def get(self, url, **kwargs):
        self.requests.append(url)
        return FakeResponse(self, url, self.files.get(url, self.default))


def make_album(album_id: str = "alb1", count: int = 3, title: str = "Album") -> dict:
    album = {
        "id": album_id,
        "title": title,
        "artist": {"name": "Artist"},
        "tracks_count": count,
        "media_count": 1,
        "released_at": 1577836800,
        "genres_list": ["Pop/Rock", "Pop/Rock→Rock"],
        "label": {"name": "Label"},
        "upc": "0123456789012",
        "copyright": "2020 Label",
        "image": {"large": "https://static.qobuz.com/images/covers/ab/cd/alb1_600.jpg"},
    }
    album["tracks"] = {
        "items": [make_track(f"{album_id}-{n}", n, album_id=album_id, album_title=title)
                  for n in range(1, count + 1)],
        "total": count,
    }
    return album


def make_track(track_id: str, number: int = 1, album_id: str = "alb1",
               album_title: str = "Album") -> dict:
    return {
        "id": track_id,
        "title": f"Song {track_id}",
        "track_number": number,
        "media_number": 1,
        "duration": 200,
        "isrc": "USABC2000001",
        "performer": {"name": "Artist"},
        "performers": "Artist, MainArtist - Guest, FeaturedArtist - Writer Person, Composer",
        "album": {"id": album_id, "title": album_title, "artist": {"name": "Artist"}},
    }


class FakeClient:
    """Catalog stand-in. ``unavailable`` maps track id -> format ids that fail."""

    def __init__(self, albums: list[dict] = (), unavailable: dict[str, set[int]] | None = None,
                 playlists: dict[str, dict] | None = None, artists: dict[str, dict] | None = None):
        self.albums = {a["id"]: a for a in albums}
        self.tracks = {t["id"]: t for a in albums for t in a["tracks"]["items"]}
        self.unavailable = unavailable or {}
        self.playlists = playlists or {}
        self.artists = artists or {}
        self.file_url_calls: list[tuple[str, int]] = []

    async def get_track(self, track_id):
        if track_id not in self.tracks:
            raise QobuzError(f"HTTP 404 from track/get: unknown track {track_id}")
        return self.tracks[track_id]

    async def get_album(self, album_id):
        if album_id not in self.albums:
            raise QobuzError(f"HTTP 404 from album/get: unknown album {album_id}")
        return self.albums[album_id]

    async def get_playlist(self, playlist_id):
        if playlist_id not in self.playlists:
            raise QobuzError("HTTP 404 from playlist/get")
        return self.playlists[playlist_id]

    async def get_artist(self, artist_id):
        if artist_id not in self.artists:
            raise QobuzError("HTTP 404 from artist/get")
        return self.artists[artist_id]

    async def get_file_url(self, track_id, format_id):
        self.file_url_calls.append((track_id, format_id))
        if format_id in self.unavailable.get(track_id, ()):
            raise QobuzError(f"No stream URL for track {track_id} at format {format_id}")
        return {
            "url": f"https://streams.test/{track_id}/{format_id}",
            "format_id": format_id,
            "bit_depth": 24 if format_id in (7, 27) else 16,
            "sampling_rate": 96 if format_id == 7 else 192 if format_id == 27 else 44.1,
            "duration": 200,
        }


class FakeLyrics:
    def __init__(self, lyrics: Lyrics | None = None):
        self.lyrics = lyrics
        self.calls = 0

    async def get_lyrics(self, title, artist, album="", duration=0):
        self.calls += 1
        return self.lyrics


async def fake_cover(url):
    return COVER


@pytest.fixture
def history(tmp_path):
    return History(str(tmp_path / "history.json"))


@pytest.fixture
def make_downloader(tmp_path, history):
    """Factory for a Downloader wired to fakes. Must be called inside a running loop."""
    from qobuz.downloader import Downloader

    def factory(client, session=None, lyrics=None, **kwargs):
        options = {
            "output_dir": str(tmp_path / "music"),
            "concurrency": 4,
            "track_timeout": 30,
            "cover_fetcher": fake_cover,
        }
        options.update(kwargs)
        return Downloader(
            client,
            lyrics or FakeLyrics(Lyrics(synced="[00:01.00]Hello", plain="Hello")),
            history,
            TagWriteQueue(),
            session=session or FakeSession(default=flac_bytes()),
            **options,
        )
    return factory
