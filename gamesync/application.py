"""Application wide objects: settings directories, the sync engine, the
cloud save platforms and the downloads in flight."""

import json
import os
from datetime import datetime
from typing import List, Optional

from gamesync import settings
from gamesync.container import Container, load_container
from gamesync.credentials import TokenFileProvider
from gamesync.download_info import DownloadRegistry, load_persisted_bytes
from gamesync.game_launcher import LaunchSync
from gamesync.savesync.engine import PREFER_UPLOAD, SaveSyncEngine, SyncResult
from gamesync.savesync.guard import ActiveSyncGuard
from gamesync.savesync.watermarks import SyncTimestampStore
from gamesync.services import get_cloud_sync_platform, upload_cloud_saves
from gamesync.services.base import CloudSavePlatform, SyncEngineCloudSavePlatform
from gamesync.services.egs import EGSCloudSavePlatform
from gamesync.services.gog import GOGCloudSavePlatform
from gamesync.services.gog_cloud import RemoteConfigCache
from gamesync.services.steam import SteamCloudClient, SteamCloudSavePlatform
from gamesync.util.log import logger
from gamesync.util.strings import human_size
from gamesync.util.system import create_folder


def check_config() -> None:
    """Create the directories gamesync writes to"""
    for directory in (settings.CONFIG_DIR, settings.GAME_CONFIG_DIR, settings.DATA_DIR, settings.CACHE_DIR):
        create_folder(directory)


class Application:
    """Owns the objects shared by every launch. Tests and front ends build
    one and pass it around instead of relying on module globals."""

    def __init__(
        self,
        steam_client: Optional[SteamCloudClient] = None,
        credentials: Optional[TokenFileProvider] = None,
        timestamps_path: Optional[str] = None,
    ) -> None:
        check_config()
        self.timestamps = SyncTimestampStore(timestamps_path or settings.SYNC_TIMESTAMPS_PATH)
        self.sync_guard = ActiveSyncGuard()
        self.engine = SaveSyncEngine(self.timestamps, self.sync_guard)
        self.credentials = credentials or TokenFileProvider()
        self.remote_config = RemoteConfigCache()
        self.downloads = DownloadRegistry()
        self.platforms: List[CloudSavePlatform] = [
            SteamCloudSavePlatform(steam_client),
            GOGCloudSavePlatform(self.engine, self.credentials, remote_config=self.remote_config),
            EGSCloudSavePlatform(self.engine, self.credentials),
        ]

    def create_launch(self, container_id: str, is_offline: bool = False, use_temporary_override: bool = False):
        container = load_container(container_id)
        return LaunchSync(
            container,
            self.platforms,
            download_registry=self.downloads,
            is_offline=is_offline,
            use_temporary_override=use_temporary_override,
        )

    def upload(self, container_id: str, is_offline: bool = False) -> None:
        upload_cloud_saves(load_container(container_id), is_offline, self.platforms)

    def force_upload(self, container_id: str) -> List[SyncResult]:
        """Upload every local save of a game, whatever the cloud has"""
        container = load_container(container_id)
        platform = get_cloud_sync_platform(container, self.platforms)
        if not isinstance(platform, SyncEngineCloudSavePlatform):
            logger.warning("%s has no cloud save storage gamesync can upload to", container)
            return []
        return platform.sync_saves(container, PREFER_UPLOAD)

    def get_status(self, container: Container) -> dict:
        platform = get_cloud_sync_platform(container, self.platforms)
        timestamps = {
            key[len(container.id) + 1:]: datetime.fromtimestamp(int(value)).isoformat()
            for key, value in self.timestamps.items()
            if key.startswith(container.id + "_")
        }
        tracker = self.downloads.get(container.id)
        return {
            "id": container.id,
            "name": container.name,
            "platform": platform.id if platform else None,
            "syncing": self.sync_guard.is_syncing(container.id),
            "last_sync": timestamps,
            "downloading": self.downloads.is_downloading(container.id),
            "progress": tracker.get_progress() if tracker else None,
            "resumable_bytes": load_persisted_bytes(container.install_path)
            if os.path.isdir(container.install_path)
            else 0,
        }

    def print_status(self, container_id: str, as_json: bool = False) -> None:
        status = self.get_status(load_container(container_id))
        if as_json:
            print(json.dumps(status, indent=2))
            return
        print("{:<20} | {:<40} | {:<8}".format(status["id"], status["name"][:40], status["platform"] or "-"))
        for location, date in sorted(status["last_sync"].items()):
            print("    last sync of %s: %s" % (location or "-", date))
        if status["resumable_bytes"]:
            print("    partial download: %s" % human_size(status["resumable_bytes"]))

    def shutdown(self, timeout: float = 5.0) -> None:
        self.downloads.shutdown(timeout)
