"""Internal settings."""

import os

from gamesync import __version__
from gamesync.util.log import CACHE_DIR as LOG_CACHE_DIR
from gamesync.util.settings import SettingsIO

PROJECT = "gamesync"
VERSION = __version__


def _xdg_dir(env_name, fallback):
    return os.path.join(os.environ.get(env_name) or os.path.expanduser(fallback), "gamesync")


# Paths
CONFIG_DIR = _xdg_dir("XDG_CONFIG_HOME", "~/.config")
DATA_DIR = _xdg_dir("XDG_DATA_HOME", "~/.local/share")
CONFIG_FILE = os.path.join(CONFIG_DIR, "gamesync.conf")
sio = SettingsIO(CONFIG_FILE)

CACHE_DIR = sio.read_setting("cache_dir") or LOG_CACHE_DIR
GAME_CONFIG_DIR = os.path.join(CONFIG_DIR, "games")
GAMES_DIR = sio.read_setting("games_dir") or os.path.join(DATA_DIR, "games")

SYNC_TIMESTAMPS_PATH = os.path.join(CACHE_DIR, "cloud_sync_timestamps.json")

DEFAULT_HTTP_TIMEOUT = sio.read_int_setting("default_http_timeout", default=30)
SYNC_MAX_WORKERS = sio.read_int_setting("sync_max_workers", default=4)
PROGRESS_PERSIST_INTERVAL_MS = sio.read_int_setting("progress_persist_interval_ms", default=0)

DEFAULT_USER_AGENT = "%s/%s" % (PROJECT, VERSION)
