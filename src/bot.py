import asyncio
import functools
import logging
import re

from telegram import Update
from telegram.error import BadRequest, NetworkError, RetryAfter
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    filters,
    ContextTypes,
)
from telegram.request import HTTPXRequest

from config import TG_TOKEN, ALLOWED_USERS, HISTORY_FILE, QUALITY
from qobuz import client as qobuz_client
from qobuz.downloader import QUALITY_FORMATS, BatchResult, Downloader, DownloadResult
from qobuz.history import History
from qobuz.metadata import TrackMetadata
from qobuz.progress import ProgressEvent, ProgressHub, Throttle, format_progress
from qobuz.tagger import close_tag_queue

logging.basicConfig(
    format="%(asctime)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("telegram").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

LINK_RE = re.compile(
    r"(?:open|play|www)\.qobuz\.com/(?:[a-z]{2}-[a-z]{2}/)?"
    r"(track|album|playlist|artist|interpreter)/(?:[^/\s?]+/)?([A-Za-z0-9]+)"
)
KIND_ALIASES = {"interpreter": "artist"}

_history = History(HISTORY_FILE)
_downloader: Downloader | None = None
# one request at a time; the engine parallelizes tracks inside it
_download_semaphore = asyncio.Semaphore(1)


def parse_link(text: str) -> tuple[str, str] | None:
    """Find the first Qobuz link in text. Returns (kind, id) or None."""
    match = LINK_RE.search(text or "")
    if not match:
        return None
    kind = match.group(1)
    return KIND_ALIASES.get(kind, kind), match.group(2)


def _get_downloader() -> Downloader:
    global _downloader
    if _downloader is None:
        _downloader = Downloader(history=_history)
    return _downloader


def authorized(func):
    @functools.wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        user_id = update.effective_user.id if update.effective_user else None
        if user_id not in ALLOWED_USERS:
            return
        return await func(update, context)
    return wrapper


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user_id = update.effective_user.id if update.effective_user else None
    if user_id not in ALLOWED_USERS:
        await update.message.reply_text(
            "This is a private Qobuz download bot.\n\n"
            f"Your user ID: <code>{user_id}</code>\n\n"
            "If you run this bot, add this ID to <b>ALLOWED_USERS</b> "
            "in your bot configuration.",
            parse_mode="HTML",
        )
        logger.info("Unauthorized /start from user %s", user_id)
        return
    await update.message.reply_text(
        "<b>Commands:</b>\n"
        "/help: show all features\n"
        "/history: downloaded track count\n\n"
        "Send a Qobuz track, album, playlist or artist link to download.",
        parse_mode="HTML",
    )


@authorized
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE):
    quality = QUALITY_FORMATS.get(QUALITY, {}).get("name", str(QUALITY))
    await update.message.reply_text(
        "<b>Download</b>\n"
        "Send an open.qobuz.com, play.qobuz.com or qobuz.com link.\n"
        "Tracks, albums, playlists and artist discographies are supported.\n\n"
        f"<b>Quality</b>\n{quality}, falling back to lower FLAC tiers when unavailable.\n\n"
        "<b>Commands</b>\n"
        "/history: downloaded track count\n"
        "/forget &lt;track id&gt;: allow a track to be downloaded again",
        parse_mode="HTML",
    )


@authorized
async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(f"{_history.count()} tracks in download history.")


@authorized
async def cmd_forget(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Usage: /forget <track id>")
        return
    track_id = context.args[0]
    if _history.remove(track_id):
        await update.message.reply_text(f"Track {track_id} removed from history.")
    else:
        await update.message.reply_text(f"Track {track_id} is not in history.")


@authorized
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    link = parse_link(update.message.text or "")
    if link:
        await _download(update, *link)


def _seconds(retry_after) -> float:
    # int on older python-telegram-bot releases, timedelta on newer ones
    if hasattr(retry_after, "total_seconds"):
        return retry_after.total_seconds()
    return float(retry_after)


class _StatusMessage:
    """Edits one chat message with the latest throttled progress line."""

    def __init__(self, message, header: str):
        self.message = message
        self.header = header
        self.titles: dict[str, str] = {}
        self._last_text = ""

    async def edit(self, text: str, final: bool = False):
        if text == self._last_text:
            return
        self._last_text = text
        try:
            await self.message.edit_text(text)
        except RetryAfter as e:
            if not final:
                # the next progress tick carries newer text anyway
                logger.debug("Status edit rate limited for %ss", e.retry_after)
                self._last_text = ""
                return
            await asyncio.sleep(_seconds(e.retry_after))
            try:
                await self.message.edit_text(text)
            except (BadRequest, RetryAfter) as err:
                logger.warning("Final status edit failed: %s", err)
        except BadRequest as e:
            logger.debug("Status edit skipped: %s", e)

    def on_metadata(self, meta: TrackMetadata):
        self.titles[meta.track_id] = f"{meta.artist} — {meta.title}"

    async def on_progress(self, track_id: str, event: ProgressEvent):
        title = self.titles.get(track_id, f"Track {track_id}")
        await self.edit(f"{self.header}\n{format_progress(title, event)}")


def _summary(kind: str, result: BatchResult) -> str:
    if result.error:
        return f"Download failed: {result.error}"
    name = f"{result.artist} — {result.title}" if kind == "album" else result.title
    if result.completed_tracks == 0 and result.failed_tracks == 0:
        return f"Already in library: {name}"
    parts = []
    if result.completed_tracks:
        parts.append(f"{result.completed_tracks} saved")
    if result.skipped_tracks:
        parts.append(f"{result.skipped_tracks} skipped")
    if result.failed_tracks:
        parts.append(f"{result.failed_tracks} failed")
    return f"Done! {name}\n" + ", ".join(parts) + "."


def _track_summary(result: DownloadResult) -> str:
    meta = result.metadata
    name = f"{meta.artist} — {meta.title}" if meta else f"Track {result.track_id}"
    if result.skipped:
        return f"Already in library: {name}"
    if not result.success:
        return f"Download failed: {result.error}"
    quality = QUALITY_FORMATS.get(result.quality, {}).get("name", "")
    return f"Done! {name}\n{quality}"


async def _download(update: Update, kind: str, item_id: str):
    if _download_semaphore.locked():
        status_msg = await update.message.reply_text("Queued, waiting for current download...")
    else:
        status_msg = await update.message.reply_text(f"Fetching {kind} info...")

    async with _download_semaphore:
        status = _StatusMessage(status_msg, f"Downloading {kind} {item_id}")
        hub = ProgressHub()
        # one edit per interval for the whole message, not per track
        hub.subscribe(Throttle(status.on_progress, key=lambda track_id: "message"))
        options = {"on_progress": hub, "on_metadata": status.on_metadata}
        downloader = _get_downloader()
        try:
            if kind == "track":
                result = await downloader.download_track(item_id, QUALITY, **options)
                text = _track_summary(result)
            else:
                run = {
                    "album": downloader.download_album,
                    "playlist": downloader.download_playlist,
                    "artist": downloader.download_artist,
                }[kind]
                text = _summary(kind, await run(item_id, QUALITY, **options))
            await status.edit(text, final=True)
        except Exception as e:
            logger.exception("%s download failed", kind.capitalize())
            await status.edit(f"Download failed: {e}", final=True)


async def _error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    if isinstance(context.error, NetworkError):
        logger.warning("Network error (will retry): %s", context.error)
        return
    logger.exception("Unhandled exception", exc_info=context.error)


async def _shutdown(app: Application) -> None:
    await close_tag_queue()
    await qobuz_client.close()


def main():
    app = (
        Application.builder()
        .token(TG_TOKEN)
        .get_updates_request(HTTPXRequest(pool_timeout=5.0))
        .post_shutdown(_shutdown)
        .build()
    )

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("history", cmd_history))
    app.add_handler(CommandHandler("forget", cmd_forget))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    app.add_error_handler(_error_handler)

    logger.info("Bot starting...")
    app.run_polling(allowed_updates=Update.ALL_TYPES, bootstrap_retries=-1)


if __name__ == "__main__":
    main()
