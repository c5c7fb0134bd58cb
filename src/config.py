import os
from dotenv import load_dotenv

# Read the mounted .env directly so Docker does not interpolate $
_config_file = os.getenv("CONFIG_FILE", "/data/bot.env")
if os.path.isfile(_config_file):
    load_dotenv(_config_file, interpolate=False, override=True)
else:
    load_dotenv(interpolate=False)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


QOBUZ_APP_ID = os.getenv("QOBUZ_APP_ID", "")
QOBUZ_APP_SECRET = os.getenv("QOBUZ_APP_SECRET", "")
QOBUZ_USER_AUTH_TOKEN = os.getenv("QOBUZ_USER_AUTH_TOKEN", os.getenv("QOBUZ_TOKEN", ""))

TG_TOKEN = os.getenv("TG_TOKEN", "")
ALLOWED_USERS = [
    int(uid) for uid in os.getenv("ALLOWED_USERS", "").split(",") if uid.strip()
]

DOWNLOAD_DIR = os.getenv("DOWNLOAD_DIR", "./downloads")
FOLDER_TEMPLATE = os.getenv("FOLDER_TEMPLATE", "{artist}/{album}")
FILE_TEMPLATE = os.getenv("FILE_TEMPLATE", "{track_number}. {title}")
QUALITY = int(os.getenv("QUALITY", "27"))
CONCURRENCY = max(1, int(os.getenv("CONCURRENCY", "4")))
TRACK_TIMEOUT = float(os.getenv("TRACK_TIMEOUT", "600"))

EMBED_LYRICS = _env_bool("EMBED_LYRICS", True)
EMBED_COVER = _env_bool("EMBED_COVER", True)
SAVE_COVER_FILE = _env_bool("SAVE_COVER_FILE", False)
WRITE_TAGS = _env_bool("WRITE_TAGS", True)
SKIP_EXISTING = _env_bool("SKIP_EXISTING", True)
HISTORY_FILE = os.getenv("HISTORY_FILE", "history.json")
