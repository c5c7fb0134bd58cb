import hashlib

import pytest

from qobuz.client import QobuzClient, QobuzError, _sign_file_url, fetch_cover
from qobuz.lyrics import LyricsProvider, parse_lrc


class JSONResponse:
    def __init__(self, status, payload=None, body=b""):
        self.status = status
        self.payload = payload
        self.body = body

    async def json(self, content_type=None):
        return self.payload

    async def read(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class HTMLResponse(JSONResponse):
    async def json(self, content_type=None):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


class RoutedSession:
    """Answers GETs from a list of (url substring, response) routes."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, **kwargs):
        self.calls.append((url, params or {}))
        for needle, response in self.routes:
            if needle in url:
                return response(params or {}) if callable(response) else response
        return JSONResponse(404, {"message": "not found"})


def test_sign_file_url():
    ts, sig = _sign_file_url("42", 27, "secret", timestamp=1700000000)
    raw = "trackgetFileUrlformat_id27intentstreamtrack_id421700000000secret"
    assert ts == 1700000000
    assert sig == hashlib.md5(raw.encode()).hexdigest()


class TestQobuzClient:
    @pytest.mark.asyncio
    async def test_get_file_url_sends_signature(self):
        session = RoutedSession([("track/getFileUrl", JSONResponse(200, {"url": "https://s/1", "format_id": 7}))])
        client = QobuzClient("app", "secret", "token", session=session)

        data = await client.get_file_url("1", 7)

        assert data["url"] == "https://s/1"
        params = session.calls[0][1]
        assert params["app_id"] == "app"
        assert params["format_id"] == 7
        assert params["request_sig"] == _sign_file_url("1", 7, "secret", params["request_ts"])[1]

    @pytest.mark.asyncio
    async def test_missing_url_raises(self):
        session = RoutedSession([("track/getFileUrl", JSONResponse(200, {
            "restrictions": [{"code": "FormatRestrictedByFormatAvailability"}],
        }))])
        client = QobuzClient("app", "secret", "token", session=session)
        with pytest.raises(QobuzError, match="FormatRestricted"):
            await client.get_file_url("1", 27)

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        session = RoutedSession([("track/get", JSONResponse(401, {"message": "bad token"}))])
        client = QobuzClient("app", "secret", "bad", session=session)
        with pytest.raises(QobuzError, match="Authentication failed"):
            await client.get_track("1")

    @pytest.mark.asyncio
    async def test_http_error_message(self):
        client = QobuzClient("app", "secret", "token", session=RoutedSession([]))
        with pytest.raises(QobuzError, match="not found"):
            await client.get_album("x")

    @pytest.mark.asyncio
    async def test_html_error_page_raises_qobuz_error(self):
        session = RoutedSession([("album/get", HTMLResponse(502, body=b"<html>Bad Gateway</html>"))])
        client = QobuzClient("app", "secret", "token", session=session)
        with pytest.raises(QobuzError, match="HTTP 502"):
            await client.get_album("x")

    @pytest.mark.asyncio
    async def test_non_json_success_raises_qobuz_error(self):
        session = RoutedSession([("track/get", HTMLResponse(200))])
        client = QobuzClient("app", "secret", "token", session=session)
        with pytest.raises(QobuzError, match="Invalid JSON"):
            await client.get_track("1")

    @pytest.mark.asyncio
    async def test_playlist_pagination(self):
        def page(params):
            offset = params["offset"]
            items = [{"id": str(i)} for i in range(offset, min(offset + 2, 5))]
            return JSONResponse(200, {"name": "P", "tracks": {"items": items, "total": 5}})

        session = RoutedSession([("playlist/get", page)])
        client = QobuzClient("app", "secret", "token", session=session)

        data = await client.get_playlist("p", limit=2)

        assert [t["id"] for t in data["tracks"]["items"]] == ["0", "1", "2", "3", "4"]
        assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_fetch_cover_prefers_max_size():
    session = RoutedSession([("_max.jpg", JSONResponse(200, body=b"big"))])
    assert await fetch_cover("https://static.qobuz.com/a/b/x_600.jpg", session) == b"big"
    assert session.calls[0][0] == "https://static.qobuz.com/a/b/x_max.jpg"


@pytest.mark.asyncio
async def test_fetch_cover_falls_back_then_gives_up():
    session = RoutedSession([("_600.jpg", JSONResponse(200, body=b"small"))])
    assert await fetch_cover("https://static.qobuz.com/a/b/x_600.jpg", session) == b"small"
    assert await fetch_cover("https://static.qobuz.com/a/b/y_300.png", RoutedSession([])) is None


def test_parse_lrc():
    lrc = "[ar:Someone]\n[00:12.34]First line\n[01:00.500]Second\n[02:00.00]\n"
    assert parse_lrc(lrc) == [("First line", 12340), ("Second", 60500)]


class TestLyricsProvider:
    @pytest.mark.asyncio
    async def test_exact_match(self):
        session = RoutedSession([("/get", JSONResponse(200, {
            "syncedLyrics": "[00:01.00]Hi", "plainLyrics": "Hi",
        }))])
        lyrics = await LyricsProvider(session).get_lyrics("Song", "Artist", "Album", 200)
        assert lyrics.synced == "[00:01.00]Hi"
        assert lyrics.plain == "Hi"
        assert session.calls[0][1]["duration"] == "200"

    @pytest.mark.asyncio
    async def test_falls_back_to_search(self):
        session = RoutedSession([
            ("/get", JSONResponse(404, {})),
            ("/search", JSONResponse(200, [{"plainLyrics": "Found"}])),
        ])
        lyrics = await LyricsProvider(session).get_lyrics("Song", "Artist")
        assert lyrics.plain == "Found"
        assert lyrics.synced is None

    @pytest.mark.asyncio
    async def test_instrumental_is_none(self):
        session = RoutedSession([
            ("/get", JSONResponse(200, {"instrumental": True})),
            ("/search", JSONResponse(200, [])),
        ])
        assert await LyricsProvider(session).get_lyrics("Song", "Artist") is None

    @pytest.mark.asyncio
    async def test_errors_are_swallowed(self):
        class Broken:
            def get(self, *args, **kwargs):
                raise OSError("dns failure")

        assert await LyricsProvider(Broken()).get_lyrics("Song", "Artist") is None
