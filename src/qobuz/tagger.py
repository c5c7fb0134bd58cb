import asyncio
import logging
import os
import shutil
from typing import Any, Callable

from mutagen.id3 import (
    APIC, COMM, ID3, SYLT, TALB, TCOM, TCON, TCOP, TDRC, TIT2, TPE1, TPE2, TPE3,
    TPOS, TPUB, TRCK, TSRC, TXXX, USLT, Encoding, ID3NoHeaderError,
)

from qobuz.lyrics import Lyrics
from qobuz.metadata import TrackMetadata

logger = logging.getLogger(__name__)


class TagWriteError(RuntimeError):
    """Writing tags to an audio file failed."""


def build_id3_tags(meta: TrackMetadata, cover: bytes | None = None,
                   lyrics: Lyrics | None = None) -> ID3:
    """Build an ID3v2 tag object from a metadata record. Empty fields are omitted."""
    tags = ID3()
    text_frames = [
        (TIT2, meta.title),
        (TPE1, meta.artist),
        (TPE2, meta.album_artist),
        (TALB, meta.album),
        (TDRC, meta.year),
        (TRCK, f"{meta.track_number}/{meta.total_tracks}"),
        (TPOS, f"{meta.disc_number}/{meta.total_discs}"),
        (TCON, meta.genre),
        (TCOM, meta.composer),
        (TPE3, meta.conductor),
        (TPUB, meta.label),
        (TCOP, meta.copyright),
        (TSRC, meta.isrc),
    ]
    for frame, value in text_frames:
        if value:
            tags.add(frame(encoding=Encoding.UTF8, text=value))

    if meta.comment:
        tags.add(COMM(encoding=Encoding.UTF8, lang="eng", desc="", text=meta.comment))

    for desc, value in (
        ("BARCODE", meta.upc),
        ("CATALOGNUMBER", meta.catalog_number),
        ("LABEL", meta.label),
        ("RELEASETYPE", meta.release_type),
    ):
        if value:
            tags.add(TXXX(encoding=Encoding.UTF8, desc=desc, text=value))

    if cover:
        tags.add(APIC(encoding=Encoding.UTF8, mime="image/jpeg", type=3, desc="Cover", data=cover))

    if lyrics:
        text = lyrics.synced or lyrics.plain
        if text:
            tags.add(USLT(encoding=Encoding.UTF8, lang="eng", desc="", text=text))
        timed = lyrics.sylt()
        if timed:
            # format 2 = milliseconds, type 1 = lyrics
            tags.add(SYLT(encoding=Encoding.UTF8, lang="eng", format=2, type=1, desc="", text=timed))
    return tags


def write_id3_tags(path: str, tags: ID3) -> None:
    """Merge frames over the file's existing ID3 tag via a temp copy, then rename."""
    tmp_path = path + ".tagtmp"
    try:
        shutil.copyfile(path, tmp_path)
        try:
            existing = ID3(tmp_path)
        except ID3NoHeaderError:
            existing = ID3()
        for frame in tags.values():
            existing.delall(frame.HashKey)
            existing.add(frame)
        existing.save(tmp_path, v2_version=4)
        os.replace(tmp_path, path)
    except Exception as e:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise TagWriteError(f"Failed to write ID3 tags to {path}: {e}") from e


class TagWriteQueue:
    """Runs tag writes one at a time on a single worker task.

    Blocking writes go through ``asyncio.to_thread``. A failed job raises in
    its submitter only; the worker logs it and moves on.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="tag-writer")

    async def _run(self) -> None:
        while True:
            func, args, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = await asyncio.to_thread(func, *args)
                except Exception as e:
                    logger.warning("Tag write %s failed: %s", getattr(func, "__name__", func), e)
                    if not future.cancelled():
                        future.set_exception(e)
                else:
                    if not future.cancelled():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def submit(self, func: Callable[..., Any], *args) -> Any:
        """Queue func(*args) and wait for its result."""
        self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((func, args, future))
        return await future

    async def join(self) -> None:
        await self._queue.join()

    async def close(self) -> None:
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


_tag_queue: TagWriteQueue | None = None  # process-wide, created lazily in async context


def get_tag_queue() -> TagWriteQueue:
    global _tag_queue
    if _tag_queue is None:
        _tag_queue = TagWriteQueue()
    return _tag_queue


async def close_tag_queue() -> None:
    global _tag_queue
    if _tag_queue is not None:
        await _tag_queue.close()
        _tag_queue = None
