"""Last successful sync time per game and save location"""

import json
import os
import threading
from typing import Dict

from gamesync.util.log import logger
from gamesync.util.system import write_file_atomically


def get_scope_key(app_id: str, location_name: str) -> str:
    return "%s_%s" % (app_id, location_name)


class SyncTimestampStore:
    """Flat JSON map of "{app_id}_{location_name}" to epoch seconds.

    The file is read once when the store is created and rewritten in full on
    every update. Timestamps only move forward.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._timestamps: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            logger.debug("No sync timestamps found at %s", self.path)
            return
        try:
            with open(self.path, encoding="utf-8") as timestamps_file:
                data = json.load(timestamps_file)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as ex:
            logger.warning("Failed to load sync timestamps: %s", ex)
            return
        if not isinstance(data, dict):
            logger.warning("Sync timestamps in %s are not a mapping, ignoring them", self.path)
            return
        self._timestamps = {str(key): str(value) for key, value in data.items()}
        logger.info("Loaded %d sync timestamps", len(self._timestamps))

    def _save(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            write_file_atomically(self.path, json.dumps(self._timestamps))
        except OSError as ex:
            logger.error("Failed to save sync timestamps: %s", ex)

    def get_sync_timestamp(self, app_id: str, location_name: str) -> int:
        """Return the last sync time, 0 if never synced or unreadable"""
        value = self._timestamps.get(get_scope_key(app_id, location_name), "0")
        try:
            return int(float(value))
        except ValueError:
            logger.warning("Invalid sync timestamp for %s: %s", get_scope_key(app_id, location_name), value)
            return 0

    def set_sync_timestamp(self, app_id: str, location_name: str, timestamp: int) -> bool:
        """Store a new sync time. Returns False if it would move the
        timestamp backwards, in which case nothing is written."""
        key = get_scope_key(app_id, location_name)
        with self._lock:
            if int(timestamp) < self.get_sync_timestamp(app_id, location_name):
                logger.warning("Refusing to move sync timestamp of %s backwards", key)
                return False
            self._timestamps[key] = str(int(timestamp))
            self._save()
        logger.debug("Stored sync timestamp for %s: %s", key, timestamp)
        return True

    def __len__(self) -> int:
        return len(self._timestamps)

    def items(self):
        return dict(self._timestamps).items()
