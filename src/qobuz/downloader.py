import asyncio
import inspect
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import aiohttp

from config import (
    CONCURRENCY, DOWNLOAD_DIR, EMBED_COVER, EMBED_LYRICS, FILE_TEMPLATE, FOLDER_TEMPLATE,
    HISTORY_FILE, QUALITY, SAVE_COVER_FILE, SKIP_EXISTING, TRACK_TIMEOUT, WRITE_TAGS,
)
from qobuz.client import QobuzClient, QobuzError, _get_session, fetch_cover
from qobuz.files import build_filename, build_folder_path
from qobuz.flac import write_flac_tags
from qobuz.history import History
from qobuz.lyrics import Lyrics, LyricsProvider
from qobuz.metadata import TrackMetadata, build_flac_tags, extract_metadata
from qobuz.progress import Phase, ProgressCallback, ProgressEvent, emit
from qobuz.tagger import TagWriteQueue, build_id3_tags, get_tag_queue, write_id3_tags

logger = logging.getLogger(__name__)

QUALITY_FORMATS = {
    5: {"name": "MP3 320", "extension": "mp3"},
    6: {"name": "FLAC 16-bit/44.1kHz", "extension": "flac"},
    7: {"name": "FLAC 24-bit/96kHz", "extension": "flac"},
    27: {"name": "FLAC 24-bit/192kHz", "extension": "flac"},
}
# No automatic fallback to MP3: a lossless request never silently becomes lossy.
FALLBACK_CHAIN = (27, 7, 6)
PREVIEW_MAX_SECONDS = 30
CHUNK_SIZE = 1024 * 64
STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=60)


class QualityUnavailableError(QobuzError):
    """No tier of the fallback chain produced a stream URL."""


class DownloadCancelled(Exception):
    pass


@dataclass
class DownloadResult:
    success: bool = False
    track_id: str = ""
    quality: int | None = None
    file_path: str = ""
    metadata: TrackMetadata | None = None
    lyrics: Lyrics | None = None
    error: str | None = None
    skipped: bool = False


@dataclass
class BatchResult:
    title: str = ""
    artist: str = ""
    tracks: list[DownloadResult] = field(default_factory=list)
    albums: list["BatchResult"] = field(default_factory=list)
    error: str | None = None

    @property
    def total_tracks(self) -> int:
        return len(self.tracks)

    @property
    def completed_tracks(self) -> int:
        return sum(1 for t in self.tracks if t.success)

    @property
    def skipped_tracks(self) -> int:
        return sum(1 for t in self.tracks if t.skipped)

    @property
    def failed_tracks(self) -> int:
        return sum(1 for t in self.tracks if not t.success and not t.skipped)

    @property
    def success(self) -> bool:
        return (
            self.error is None
            and self.total_tracks > 0
            and all(t.success or t.skipped for t in self.tracks)
            and all(a.success for a in self.albums)
        )


def fallback_chain(quality: int) -> tuple[int, ...]:
    """Tiers to try for a requested quality, best first."""
    if quality in FALLBACK_CHAIN:
        return FALLBACK_CHAIN[FALLBACK_CHAIN.index(quality):]
    return (quality,)


def _select(items: list, indices: list[int] | None) -> list:
    if indices is None:
        return list(items)
    wanted = set(indices)
    return [item for i, item in enumerate(items) if i in wanted]


async def _notify(callback: Callable | None, *args) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug("Callback %r failed: %s", callback, e)


def _remove_partial(path: str) -> None:
    try:
        os.remove(path)
        logger.info("Removed partial file %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove partial file %s: %s", path, e)


class Downloader:
    """Downloads tracks, albums, playlists and discographies into a tagged library."""

    def __init__(
        self,
        client: QobuzClient | None = None,
        lyrics_provider: LyricsProvider | None = None,
        history: History | None = None,
        tag_queue: TagWriteQueue | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        cover_fetcher: Callable[[str], Any] = fetch_cover,
        output_dir: str = DOWNLOAD_DIR,
        folder_template: str = FOLDER_TEMPLATE,
        file_template: str = FILE_TEMPLATE,
        concurrency: int = CONCURRENCY,
        track_timeout: float = TRACK_TIMEOUT,
        embed_lyrics: bool = EMBED_LYRICS,
        embed_cover: bool = EMBED_COVER,
        save_cover_file: bool = SAVE_COVER_FILE,
        write_tags: bool = WRITE_TAGS,
    ):
        self.client = client or QobuzClient()
        self.lyrics_provider = lyrics_provider or LyricsProvider()
        self.history = history if history is not None else History(HISTORY_FILE)
        self.tag_queue = tag_queue
        self.session = session
        self.cover_fetcher = cover_fetcher
        self.output_dir = output_dir
        self.folder_template = folder_template
        self.file_template = file_template
        self.concurrency = max(1, concurrency)
        self.track_timeout = track_timeout
        self.embed_lyrics = embed_lyrics
        self.embed_cover = embed_cover
        self.save_cover_file = save_cover_file
        self.write_tags = write_tags
        self._cancelled: set[str] = set()
        self._active: set[str] = set()

    def cancel(self, track_id) -> bool:
        """Stop a running or queued track before its next phase.

        The running phase is left to finish. Ids that are not running or queued
        are ignored, so a stale cancel never hits a later request.
        """
        track_id = str(track_id)
        if track_id not in self._active:
            logger.debug("Cancel ignored, track %s is not downloading", track_id)
            return False
        self._cancelled.add(track_id)
        return True

    def _check_cancelled(self, track_id: str) -> None:
        if track_id in self._cancelled:
            raise DownloadCancelled(f"Track {track_id} cancelled")

    async def _resolve_file_url(self, track_id: str, quality: int) -> dict:
        chain = fallback_chain(quality)
        last_error: Exception | None = None
        for fmt in chain:
            try:
                data = await self.client.get_file_url(track_id, fmt)
            except Exception as e:
                last_error = e
                logger.info("Quality %d unavailable for track %s: %s", fmt, track_id, e)
                continue
            if not data or not data.get("url"):
                logger.info("Quality %d returned no URL for track %s", fmt, track_id)
                continue
            data.setdefault("format_id", fmt)
            duration = data.get("duration") or 0
            if data.get("sample") or 0 < duration <= PREVIEW_MAX_SECONDS:
                logger.warning("Track %s only has a preview stream (%ss)", track_id, duration)
            return data
        raise QualityUnavailableError(
            f"No stream for track {track_id} at qualities {'/'.join(map(str, chain))}"
            + (f": {last_error}" if last_error else "")
        )

    async def _stream(self, url: str, path: str, track_id: str,
                      on_progress: ProgressCallback | None, state: dict) -> tuple[int, float]:
        """Stream the audio body to <path>.part, then move it onto path. Returns (bytes, seconds)."""
        session = self.session or await _get_session()
        part_path = path + ".part"
        t0 = time.monotonic()
        loaded = 0
        async with session.get(url, timeout=STREAM_TIMEOUT) as resp:
            resp.raise_for_status()
            total = int(resp.headers.get("Content-Length") or 0) or None
            state["part"] = part_path
            with open(part_path, "wb") as f:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
                    loaded += len(chunk)
                    elapsed = time.monotonic() - t0
                    speed = loaded / elapsed if elapsed > 0 else None
                    await emit(on_progress, track_id,
                               ProgressEvent(Phase.DOWNLOAD, loaded, total, speed))
        if total and loaded < total:
            raise QobuzError(f"Incomplete download: {loaded}/{total} bytes")
        os.replace(part_path, path)
        state["path"] = path
        return loaded, time.monotonic() - t0

    async def _fetch_lyrics(self, track: dict, meta: TrackMetadata) -> Lyrics | None:
        try:
            return await self.lyrics_provider.get_lyrics(
                track.get("title") or meta.title, meta.artist, meta.album, meta.duration,
            )
        except Exception as e:
            logger.warning("Lyrics lookup failed for %s: %s", meta.title, e)
            return None

    async def _fetch_cover(self, url: str) -> bytes | None:
        if not url:
            return None
        try:
            return await self.cover_fetcher(url)
        except Exception as e:
            logger.warning("Cover download failed for %s: %s", url, e)
            return None

    async def _save_cover_file(self, folder: str, cover: bytes) -> None:
        cover_path = os.path.join(folder, "cover.jpg")
        if os.path.exists(cover_path):
            return

        def _write():
            with open(cover_path, "wb") as f:
                f.write(cover)
        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.warning("Could not save %s: %s", cover_path, e)

    async def _fetch(self, track_id, quality, result, state, *, track, album, output_dir,
                     skip_existing, on_progress, on_metadata, on_quality) -> dict | None:
        """Everything up to tagging. Returns tagging inputs, or None when skipped."""
        self._check_cancelled(track_id)
        if skip_existing:
            entry = self.history.get(track_id)
            if entry and os.path.isfile(entry.get("filename", "")):
                result.skipped = True
                result.file_path = entry["filename"]
                result.quality = entry.get("quality", quality)
                logger.info("Track %s already downloaded: %s", track_id, result.file_path)
                return None

        if track is None:
            track = await self.client.get_track(track_id)
        album_data = album or track.get("album") or {}
        if album is None and album_data.get("id"):
            try:
                album_data = await self.client.get_album(album_data["id"])
            except QobuzError as e:
                logger.warning("Album lookup failed for track %s, using embedded album: %s",
                               track_id, e)

        file_url = await self._resolve_file_url(track_id, quality)
        actual = int(file_url.get("format_id") or quality)
        result.quality = actual
        await _notify(on_quality, actual)

        meta = extract_metadata(track, album_data, {
            "bit_depth": file_url.get("bit_depth"),
            "sample_rate": file_url.get("sampling_rate"),
        })
        result.metadata = meta
        await _notify(on_metadata, meta)

        fmt = QUALITY_FORMATS.get(actual, QUALITY_FORMATS[6])
        folder = os.path.join(output_dir or self.output_dir,
                              build_folder_path(self.folder_template, meta, fmt["name"]))
        path = os.path.join(folder, build_filename(self.file_template, meta, fmt["extension"]))
        result.file_path = path
        if skip_existing and os.path.exists(path):
            result.skipped = True
            logger.info("Track already exists: %s — %s", meta.artist, meta.title)
            return None

        await asyncio.to_thread(os.makedirs, folder, exist_ok=True)
        self._check_cancelled(track_id)
        await emit(on_progress, track_id, ProgressEvent(Phase.DOWNLOAD_START))
        size, elapsed = await self._stream(file_url["url"], path, track_id, on_progress, state)

        lyrics = None
        if self.embed_lyrics:
            self._check_cancelled(track_id)
            await emit(on_progress, track_id, ProgressEvent(Phase.LYRICS))
            lyrics = await self._fetch_lyrics(track, meta)
        result.lyrics = lyrics

        cover = None
        if self.embed_cover or self.save_cover_file:
            self._check_cancelled(track_id)
            await emit(on_progress, track_id, ProgressEvent(Phase.COVER))
            cover = await self._fetch_cover(meta.cover_url)
            if cover and self.save_cover_file:
                await self._save_cover_file(folder, cover)

        mb = size / (1024 * 1024)
        logger.info("Track: %s — %s | %.1fMB in %.1fs (%.1f MB/s) [%s%s]",
                    meta.artist, meta.title, mb, elapsed, mb / elapsed if elapsed > 0 else 0,
                    fmt["name"], " lyrics" if lyrics else " no lyrics")
        return {
            "path": path,
            "extension": fmt["extension"],
            "metadata": meta,
            "cover": cover if self.embed_cover else None,
            "lyrics": lyrics,
        }

    async def _tag(self, path: str, extension: str, meta: TrackMetadata,
                   cover: bytes | None, lyrics: Lyrics | None) -> None:
        queue = self.tag_queue or get_tag_queue()
        if extension == "flac":
            await queue.submit(write_flac_tags, path, build_flac_tags(meta, lyrics), cover)
        elif extension == "mp3":
            await queue.submit(write_id3_tags, path, build_id3_tags(meta, cover, lyrics))
        else:
            logger.warning("No tag writer for .%s files, leaving %s untagged", extension, path)

    async def download_track(
        self,
        track_id,
        quality: int = QUALITY,
        *,
        output_dir: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_metadata: Callable[[TrackMetadata], Any] | None = None,
        on_quality: Callable[[int], Any] | None = None,
        skip_existing: bool = SKIP_EXISTING,
        track: dict | None = None,
        album: dict | None = None,
    ) -> DownloadResult:
        """Download, tag and record one track. Never raises for expected failures."""
        track_id = str(track_id)
        result = DownloadResult(track_id=track_id, quality=quality)
        # "part" is the in-flight stream, "path" the final file once the stream completed
        state: dict = {"part": None, "path": None}
        self._active.add(track_id)
        try:
            prepared = await asyncio.wait_for(
                self._fetch(track_id, quality, result, state, track=track, album=album,
                            output_dir=output_dir, skip_existing=skip_existing,
                            on_progress=on_progress, on_metadata=on_metadata,
                            on_quality=on_quality),
                timeout=self.track_timeout,
            )
            if prepared is None:
                return result

            self._check_cancelled(track_id)
            if self.write_tags:
                await emit(on_progress, track_id, ProgressEvent(Phase.TAGGING))
                await self._tag(prepared["path"], prepared["extension"], prepared["metadata"],
                                prepared["cover"], prepared["lyrics"])

            meta = prepared["metadata"]
            self.history.add(track_id, {
                "filename": os.path.abspath(prepared["path"]),
                "quality": result.quality,
                "title": meta.title,
                "artist": meta.artist,
                "album_artist": meta.album_artist,
                "album": meta.album,
            })
            result.success = True
        except DownloadCancelled:
            result.error = "Cancelled"
        except asyncio.TimeoutError:
            result.error = f"Timed out after {self.track_timeout:g}s"
            logger.warning("Track %s timed out", track_id)
        except Exception as e:
            result.error = str(e) or e.__class__.__name__
            logger.warning("Track %s failed: %s", track_id, result.error)
        finally:
            self._cancelled.discard(track_id)
            self._active.discard(track_id)
            # also runs when the task itself is cancelled
            if not result.success:
                for leftover in (state["part"], state["path"]):
                    if leftover:
                        _remove_partial(leftover)
        return result

    async def _download_many(self, tracks: list[dict], quality: int, *, album: dict | None,
                             on_track_complete: Callable | None, **options) -> list[DownloadResult]:
        sem = asyncio.Semaphore(self.concurrency)
        # queued tracks accept cancel() before their turn comes
        queued = {str(t.get("id")) for t in tracks}
        self._active.update(queued)

        async def run(item: dict) -> DownloadResult:
            async with sem:
                res = await self.download_track(item.get("id"), quality, album=album, **options)
            await _notify(on_track_complete, res)
            return res

        try:
            return list(await asyncio.gather(*(run(t) for t in tracks)))
        finally:
            self._active.difference_update(queued)
            self._cancelled.difference_update(queued)

    def _log_batch(self, kind: str, batch: BatchResult, t0: float) -> None:
        logger.info("%s done: %s — %s | %d downloaded, %d skipped, %d failed in %.0fs",
                    kind, batch.artist or "?", batch.title, batch.completed_tracks,
                    batch.skipped_tracks, batch.failed_tracks, time.monotonic() - t0)

    async def download_album(
        self,
        album_id,
        quality: int = QUALITY,
        *,
        track_indices: list[int] | None = None,
        on_track_complete: Callable[[DownloadResult], Any] | None = None,
        **options,
    ) -> BatchResult:
        """Download an album's tracks under the concurrency limit."""
        try:
            album = await self.client.get_album(album_id)
        except Exception as e:
            logger.warning("Album %s lookup failed: %s", album_id, e)
            return BatchResult(error=str(e))

        items = (album.get("tracks") or {}).get("items") or []
        tracks = _select(items, track_indices)
        batch = BatchResult(
            title=album.get("title") or "Unknown Album",
            artist=(album.get("artist") or {}).get("name") or "Unknown Artist",
        )
        logger.info("Album: %s — %s (%d tracks)", batch.artist, batch.title, len(tracks))
        t0 = time.monotonic()
        batch.tracks = await self._download_many(tracks, quality, album=album,
                                                 on_track_complete=on_track_complete, **options)
        self._log_batch("Album", batch, t0)
        return batch

    async def download_playlist(
        self,
        playlist_id,
        quality: int = QUALITY,
        *,
        track_indices: list[int] | None = None,
        on_track_complete: Callable[[DownloadResult], Any] | None = None,
        **options,
    ) -> BatchResult:
        """Download a playlist's tracks under the concurrency limit."""
        try:
            playlist = await self.client.get_playlist(playlist_id)
        except Exception as e:
            logger.warning("Playlist %s lookup failed: %s", playlist_id, e)
            return BatchResult(error=str(e))

        items = (playlist.get("tracks") or {}).get("items") or []
        tracks = _select(items, track_indices)
        batch = BatchResult(
            title=playlist.get("name") or "Unknown Playlist",
            artist=(playlist.get("owner") or {}).get("name") or "",
        )
        logger.info("Playlist: %s (%d tracks)", batch.title, len(tracks))
        t0 = time.monotonic()
        batch.tracks = await self._download_many(tracks, quality, album=None,
                                                 on_track_complete=on_track_complete, **options)
        self._log_batch("Playlist", batch, t0)
        return batch

    async def download_artist(
        self,
        artist_id,
        quality: int = QUALITY,
        *,
        on_album: Callable[[dict], Any] | None = None,
        on_track_complete: Callable[[DownloadResult], Any] | None = None,
        **options,
    ) -> BatchResult:
        """Download a discography one album at a time."""
        try:
            artist = await self.client.get_artist(artist_id)
        except Exception as e:
            logger.warning("Artist %s lookup failed: %s", artist_id, e)
            return BatchResult(error=str(e))

        albums = (artist.get("albums") or {}).get("items") or []
        name = artist.get("name") or "Unknown Artist"
        logger.info("Discography: %s (%d albums)", name, len(albums))
        batch = BatchResult(title=name, artist=name)
        for album in albums:
            await _notify(on_album, album)
            res = await self.download_album(album.get("id"), quality,
                                            on_track_complete=on_track_complete, **options)
            if res.error:
                res.title = res.title or album.get("title") or str(album.get("id"))
            batch.albums.append(res)
            batch.tracks.extend(res.tracks)
        return batch
