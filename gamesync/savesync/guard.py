import threading
from contextlib import contextmanager
from typing import Set

from gamesync.exceptions import SyncInProgressError


class ActiveSyncGuard:
    """Game ids with a cloud sync in flight. A game can only sync once at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Set[str] = set()

    def start_sync(self, game_id: str) -> bool:
        """Mark a game as syncing. Returns False if it already is."""
        with self._lock:
            if game_id in self._active:
                return False
            self._active.add(game_id)
            return True

    def end_sync(self, game_id: str) -> None:
        with self._lock:
            self._active.discard(game_id)

    def is_syncing(self, game_id: str) -> bool:
        with self._lock:
            return game_id in self._active

    @contextmanager
    def hold(self, game_id: str):
        """Context manager around start_sync/end_sync, raising
        SyncInProgressError if the game is already syncing"""
        if not self.start_sync(game_id):
            raise SyncInProgressError(game_id)
        try:
            yield
        finally:
            self.end_sync(game_id)
