"""Exception handling module"""

from gettext import gettext as _


class GameSyncError(Exception):
    """Base exception for gamesync related errors"""

    def __init__(self, message, *args, **kwarg):
        super().__init__(message, *args, **kwarg)
        self.message = message


class MisconfigurationError(GameSyncError):
    """Raised for incorrect configuration, like missing settings or a game
    that more than one cloud save platform claims."""


class AuthenticationError(GameSyncError):
    """Raised when authentication to a service fails"""


class SyncInProgressError(GameSyncError):
    """Raised when a cloud sync is requested for a game that is already syncing."""

    def __init__(self, game_id, *args, **kwarg):
        super().__init__(_("A cloud sync is already running for {}").format(game_id), *args, **kwarg)
        self.game_id = game_id


class CloudStorageError(GameSyncError):
    """Raised when the remote save storage can't be listed or answers garbage"""
