import logging
import re
from dataclasses import dataclass

import aiohttp

from qobuz.client import LRCLIB_URL, _get_lrclib_sem, _get_session

logger = logging.getLogger(__name__)

LYRICS_TIMEOUT = aiohttp.ClientTimeout(total=10)
_LRC_TIME_RE = re.compile(r"\[(\d{2}):(\d{2})\.(\d{2,3})\]")
_HEADERS = {"User-Agent": "qobuz-dl v2.0.0"}


@dataclass
class Lyrics:
    synced: str | None = None
    plain: str | None = None
    source: str = "LRCLIB"

    def sylt(self) -> list[tuple[str, int]]:
        """Line-level (text, milliseconds) pairs, empty when there is no timing data."""
        return parse_lrc(self.synced)


def parse_lrc(lrc: str | None) -> list[tuple[str, int]]:
    if not lrc:
        return []
    lines = []
    for line in lrc.splitlines():
        m = _LRC_TIME_RE.search(line)
        if not m:
            continue
        text = _LRC_TIME_RE.sub("", line).strip()
        if not text:
            continue
        minutes, seconds, frac = m.groups()
        ms = (int(minutes) * 60 + int(seconds)) * 1000 + int(frac.ljust(3, "0"))
        lines.append((text, ms))
    return lines


def _from_payload(data) -> Lyrics | None:
    if not data or not isinstance(data, dict) or data.get("instrumental"):
        return None
    synced = data.get("syncedLyrics") or None
    plain = data.get("plainLyrics") or None
    if not synced and not plain:
        return None
    return Lyrics(synced=synced, plain=plain)


class LyricsProvider:
    """LRCLIB lookup: exact match first, then a free-text search."""

    def __init__(self, session: aiohttp.ClientSession | None = None):
        self._session = session

    async def _get(self, path: str, params: dict):
        session = self._session or await _get_session()
        async with _get_lrclib_sem():
            async with session.get(f"{LRCLIB_URL}/{path}", params=params, headers=_HEADERS,
                                   timeout=LYRICS_TIMEOUT) as resp:
                if resp.status != 200:
                    return None
                return await resp.json(content_type=None)

    async def get_lyrics(self, title: str, artist: str, album: str = "",
                         duration: int | float = 0) -> Lyrics | None:
        """Return lyrics or None. Never raises."""
        try:
            exact = await self._get("get", {
                "track_name": title,
                "artist_name": artist,
                "album_name": album,
                "duration": str(round(duration or 0)),
            })
            lyrics = _from_payload(exact)
            if lyrics:
                return lyrics
            found = await self._get("search", {"q": f"{title} {artist}"})
            if isinstance(found, list) and found:
                return _from_payload(found[0])
        except Exception as e:
            logger.debug("Lyrics fetch failed for '%s': %s", title, e)
        return None
