"""Cloud save synchronization pipeline shared by the GOG and Epic services.

A sync for one save location goes through these steps:
    1. Scan the local directory and list the remote container, concurrently
    2. Handle the trivial cases (one side or both sides empty)
    3. Honor a forced direction picked by the user
    4. Classify the changes since the last sync and plan the transfers
    5. Run the transfers concurrently
    6. Store the new sync timestamp, only once every transfer succeeded
"""

import concurrent.futures
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Tuple

from gamesync import settings
from gamesync.exceptions import CloudStorageError
from gamesync.savesync.catalog import SaveFile, scan_local
from gamesync.savesync.classifier import SyncAction, SyncClassifier
from gamesync.savesync.guard import ActiveSyncGuard
from gamesync.savesync.resolver import TransferPlan, plan_transfers
from gamesync.savesync.watermarks import SyncTimestampStore
from gamesync.util.http import HTTPError
from gamesync.util.log import logger

PREFER_DOWNLOAD = "download"
PREFER_UPLOAD = "upload"


class CloudStorageClient(Protocol):
    """What the engine needs from a service's remote save store"""

    def list_files(self, dir_name: str) -> List[SaveFile]: ...

    def upload_file(self, save_file: SaveFile, dir_name: str) -> bool: ...

    def download_file(self, save_file: SaveFile, dir_name: str) -> bool: ...


@dataclass
class SyncResult:
    """Result of a cloud sync operation.

    Attributes:
        action: The sync action that was performed.
        uploaded: Relative paths that were uploaded.
        downloaded: Relative paths that were downloaded.
        failed: Relative paths whose transfer failed.
        timestamp: New sync timestamp, 0 if it was not advanced.
    """

    action: SyncAction = SyncAction.NONE
    uploaded: List[str] = field(default_factory=list)
    downloaded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    timestamp: int = 0

    @property
    def completed(self) -> bool:
        return not self.failed


class SaveSyncEngine:
    """Synchronizes save locations against a cloud storage client"""

    def __init__(
        self,
        timestamps: SyncTimestampStore,
        guard: Optional[ActiveSyncGuard] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.timestamps = timestamps
        self.guard = guard or ActiveSyncGuard()
        self.max_workers = max_workers or settings.SYNC_MAX_WORKERS

    def sync_game(
        self,
        game_id: str,
        locations: Iterable[Tuple[str, str]],
        storage_client: CloudStorageClient,
        preferred_action: Optional[str] = None,
        stop_request: Optional[threading.Event] = None,
    ) -> List[SyncResult]:
        """Sync every (location_name, save_path) of a game while holding the
        game's sync guard. Raises SyncInProgressError if the game is already
        syncing."""
        with self.guard.hold(game_id):
            return [
                self.sync_location(
                    game_id,
                    save_path,
                    location_name,
                    storage_client,
                    preferred_action=preferred_action,
                    stop_request=stop_request,
                )
                for location_name, save_path in locations
            ]

    def sync_location(
        self,
        app_id: str,
        save_path: str,
        location_name: str,
        storage_client: CloudStorageClient,
        preferred_action: Optional[str] = None,
        stop_request: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Synchronize saves for one save location of a game.

        Args:
            app_id: Identifier of the game, used for the sync timestamp.
            save_path: The resolved local save directory.
            location_name: The cloud save directory name.
            storage_client: Client for the service's cloud storage.
            preferred_action: 'download' or 'upload' to transfer everything
                in that direction, None to let the classifier decide.
            stop_request: Event that cancels transfers not yet started.

        Raises:
            CloudStorageError: if the remote listing can't be fetched.
        """
        logger.info("Syncing %s location '%s' with %s", app_id, location_name, save_path)
        if not os.path.exists(save_path):
            logger.info("Save path does not exist, creating: %s", save_path)
            os.makedirs(save_path, exist_ok=True)

        local_files, cloud_files = self._scan(save_path, location_name, storage_client)
        for cloud_file in cloud_files:
            cloud_file.absolute_path = os.path.join(save_path, cloud_file.relative_path.replace("/", os.sep))
        downloadable_cloud = [f for f in cloud_files if not f.is_deleted]
        logger.info(
            "Local files: %d, cloud files: %d (%d downloadable)",
            len(local_files),
            len(cloud_files),
            len(downloadable_cloud),
        )

        if local_files and not cloud_files:
            logger.info("No files in cloud, uploading all local files")
            plan, action = TransferPlan(to_upload=local_files), SyncAction.UPLOAD
        elif not local_files and downloadable_cloud:
            logger.info("No local files, downloading all cloud files")
            plan, action = TransferPlan(to_download=downloadable_cloud), SyncAction.DOWNLOAD
        elif not local_files:
            logger.info("No files locally or in cloud, nothing to sync")
            plan, action = TransferPlan(), SyncAction.NONE
        elif preferred_action == PREFER_DOWNLOAD and downloadable_cloud:
            logger.warning("Forcing download of %d file(s)", len(downloadable_cloud))
            plan, action = TransferPlan(to_download=downloadable_cloud), SyncAction.DOWNLOAD
        elif preferred_action == PREFER_UPLOAD:
            logger.warning("Forcing upload of %d file(s)", len(local_files))
            plan, action = TransferPlan(to_upload=local_files), SyncAction.UPLOAD
        else:
            timestamp = self.timestamps.get_sync_timestamp(app_id, location_name)
            classifier = SyncClassifier.classify(local_files, cloud_files, timestamp)
            action = classifier.action
            logger.info("Sync action for %s/%s: %s", app_id, location_name, action.name)
            plan = plan_transfers(classifier)

        result = self.run_transfers(plan, location_name, storage_client, stop_request=stop_request)
        result.action = action

        if stop_request and stop_request.is_set():
            logger.warning("Sync of %s/%s was cancelled, keeping previous timestamp", app_id, location_name)
            return result
        if not result.completed:
            logger.error(
                "%d transfer(s) failed for %s/%s, keeping previous timestamp",
                len(result.failed),
                app_id,
                location_name,
            )
            return result
        result.timestamp = int(time.time())
        self.timestamps.set_sync_timestamp(app_id, location_name, result.timestamp)
        return result

    def _scan(
        self, save_path: str, location_name: str, storage_client: CloudStorageClient
    ) -> Tuple[List[SaveFile], List[SaveFile]]:
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            local_future = executor.submit(scan_local, save_path, self.max_workers)
            cloud_future = executor.submit(storage_client.list_files, location_name)
            try:
                cloud_files = cloud_future.result()
            except HTTPError as ex:
                raise CloudStorageError("Failed to list cloud saves for '%s': %s" % (location_name, ex)) from ex
            return local_future.result(), cloud_files

    def run_transfers(
        self,
        plan: TransferPlan,
        location_name: str,
        storage_client: CloudStorageClient,
        stop_request: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Upload and download the files of a plan on a thread pool.
        A failing transfer is logged and does not stop the others."""
        result = SyncResult()
        if not plan:
            return result

        def transfer(method, save_file: SaveFile) -> bool:
            if stop_request and stop_request.is_set():
                return False
            return method(save_file, location_name)

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_transfers = {}
            for save_file in plan.to_upload:
                future = executor.submit(transfer, storage_client.upload_file, save_file)
                future_transfers[future] = (save_file, result.uploaded)
            for save_file in plan.to_download:
                future = executor.submit(transfer, storage_client.download_file, save_file)
                future_transfers[future] = (save_file, result.downloaded)
            for future in concurrent.futures.as_completed(future_transfers):
                save_file, done = future_transfers[future]
                try:
                    success = future.result()
                except (HTTPError, OSError) as ex:
                    logger.error("Transfer of %s failed: %s", save_file.relative_path, ex)
                    success = False
                if success:
                    done.append(save_file.relative_path)
                else:
                    result.failed.append(save_file.relative_path)
        logger.info(
            "Uploaded %d, downloaded %d, failed %d file(s)",
            len(result.uploaded),
            len(result.downloaded),
            len(result.failed),
        )
        return result
