import asyncio
import hashlib
import logging
import re
import time

import aiohttp

from config import QOBUZ_APP_ID, QOBUZ_APP_SECRET, QOBUZ_USER_AUTH_TOKEN

logger = logging.getLogger(__name__)

QOBUZ_API_URL = "https://www.qobuz.com/api.json/0.2"
LRCLIB_URL = "https://lrclib.net/api"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

API_TIMEOUT = aiohttp.ClientTimeout(connect=5, total=30)
COVER_TIMEOUT = aiohttp.ClientTimeout(total=30)

_session: aiohttp.ClientSession | None = None
_lrclib_sem: asyncio.Semaphore | None = None  # created lazily in async context


class QobuzError(RuntimeError):
    """Catalog lookup, signing or HTTP failure."""


def _get_lrclib_sem() -> asyncio.Semaphore:
    global _lrclib_sem
    if _lrclib_sem is None:
        _lrclib_sem = asyncio.Semaphore(10)
    return _lrclib_sem


async def _get_session() -> aiohttp.ClientSession:
    global _session
    if _session is None or _session.closed:
        _session = aiohttp.ClientSession(trust_env=True, headers={"User-Agent": USER_AGENT})
    return _session


async def close():
    global _session
    if _session and not _session.closed:
        await _session.close()
        _session = None


def _sign_file_url(track_id: str, format_id: int, secret: str,
                   timestamp: int | None = None, intent: str = "stream") -> tuple[int, str]:
    """Return (timestamp, md5 signature) for track/getFileUrl."""
    ts = int(time.time()) if timestamp is None else timestamp
    raw = f"trackgetFileUrlformat_id{format_id}intent{intent}track_id{track_id}{ts}{secret}"
    return ts, hashlib.md5(raw.encode("utf-8")).hexdigest()


class QobuzClient:
    """Thin async wrapper over the Qobuz JSON API."""

    def __init__(self, app_id: str = QOBUZ_APP_ID, app_secret: str = QOBUZ_APP_SECRET,
                 token: str = QOBUZ_USER_AUTH_TOKEN,
                 session: aiohttp.ClientSession | None = None):
        self.app_id = app_id
        self.app_secret = app_secret
        self.token = token
        self._session = session

    async def _api_get(self, endpoint: str, params: dict) -> dict:
        session = self._session or await _get_session()
        query = {"app_id": self.app_id, **params}
        headers = {"X-App-Id": self.app_id}
        if self.token:
            headers["X-User-Auth-Token"] = self.token
            query["user_auth_token"] = self.token
        url = f"{QOBUZ_API_URL}/{endpoint}"
        try:
            async with session.get(url, params=query, headers=headers, timeout=API_TIMEOUT) as resp:
                if resp.status in (401, 403):
                    raise QobuzError(f"Authentication failed for {endpoint} (HTTP {resp.status})")
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    # error pages from the CDN are HTML
                    body = None
                if resp.status != 200:
                    message = body.get("message") if isinstance(body, dict) else None
                    raise QobuzError(f"HTTP {resp.status} from {endpoint}: {message or 'no details'}")
                if not isinstance(body, dict):
                    raise QobuzError(f"Invalid JSON from {endpoint}")
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise QobuzError(f"{endpoint} request failed: {e}") from e

    async def get_track(self, track_id: str) -> dict:
        return await self._api_get("track/get", {"track_id": track_id})

    async def get_album(self, album_id: str) -> dict:
        return await self._api_get("album/get", {"album_id": album_id, "extra": "albumsFromSameArtist"})

    async def get_playlist(self, playlist_id: str, limit: int = 500) -> dict:
        """Fetch a playlist with all of its tracks, following pagination."""
        data = await self._api_get("playlist/get", {
            "playlist_id": playlist_id, "extra": "tracks", "limit": limit, "offset": 0,
        })
        tracks = data.setdefault("tracks", {"items": [], "total": 0})
        items = tracks.setdefault("items", [])
        total = tracks.get("total", len(items))
        while len(items) < total:
            page = await self._api_get("playlist/get", {
                "playlist_id": playlist_id, "extra": "tracks", "limit": limit, "offset": len(items),
            })
            more = page.get("tracks", {}).get("items", [])
            if not more:
                break
            items.extend(more)
        return data

    async def get_artist(self, artist_id: str, limit: int = 100) -> dict:
        return await self._api_get("artist/get", {
            "artist_id": artist_id, "extra": "albums", "limit": limit, "offset": 0,
        })

    async def get_file_url(self, track_id: str, format_id: int) -> dict:
        """Resolve a signed, time-boxed stream URL for one quality tier."""
        ts, sig = _sign_file_url(str(track_id), format_id, self.app_secret)
        data = await self._api_get("track/getFileUrl", {
            "track_id": track_id,
            "format_id": format_id,
            "intent": "stream",
            "request_ts": ts,
            "request_sig": sig,
        })
        if not data.get("url"):
            restrictions = ", ".join(r.get("code", "") for r in data.get("restrictions", []))
            raise QobuzError(f"No stream URL for track {track_id} at format {format_id}"
                             + (f" ({restrictions})" if restrictions else ""))
        return data


async def fetch_cover(url: str, session: aiohttp.ClientSession | None = None) -> bytes | None:
    """Download cover art bytes, preferring the max-size rendition. Never raises."""
    if not url:
        return None
    session = session or await _get_session()
    high_res = re.sub(r"_\d+\.jpg$", "_max.jpg", url).replace("/600/", "/1200/")
    for candidate in dict.fromkeys((high_res, url)):
        try:
            async with session.get(candidate, timeout=COVER_TIMEOUT) as resp:
                if resp.status == 200:
                    return await resp.read()
                logger.debug("Cover %s returned HTTP %d", candidate, resp.status)
        except Exception as e:
            logger.debug("Cover fetch failed for %s: %s", candidate, e)
    logger.warning("Failed to download cover art from %s", url)
    return None
