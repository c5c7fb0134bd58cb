import json
import logging
import os
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

HISTORY_VERSION = 1


class History:
    """Downloaded-track ledger persisted as JSON, keyed by track id."""

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._entries: dict[str, dict] = {}
        self._load()

    def _load(self):
        if not os.path.isfile(self.path):
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            entries = data.get("entries") if isinstance(data, dict) else None
            if isinstance(entries, dict):
                self._entries = entries
        except (OSError, ValueError) as e:
            logger.warning("Could not read history file %s, starting empty: %s", self.path, e)

    def _save(self):
        tmp_path = self.path + ".tmp"
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"version": HISTORY_VERSION, "entries": self._entries},
                          f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Failed to save history file %s: %s", self.path, e)

    def add(self, track_id, entry: dict) -> dict:
        """Record a download, replacing any previous entry for the track."""
        record = {**entry, "downloaded_at": datetime.now(timezone.utc).isoformat()}
        self._entries[str(track_id)] = record
        self._save()
        return record

    def get(self, track_id) -> dict | None:
        return self._entries.get(str(track_id))

    def has(self, track_id) -> bool:
        return str(track_id) in self._entries

    def remove(self, track_id) -> bool:
        if self._entries.pop(str(track_id), None) is None:
            return False
        self._save()
        return True

    def get_all(self) -> dict[str, dict]:
        return dict(self._entries)

    def clear_all(self):
        self._entries.clear()
        self._save()

    def count(self) -> int:
        return len(self._entries)
