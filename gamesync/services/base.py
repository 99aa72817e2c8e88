"""Cloud save platforms: the per service step that runs before a game
launches and after it exits."""

import threading
from dataclasses import dataclass
from enum import Enum
from gettext import gettext as _
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from gamesync.container import Container, GameSource, load_container
from gamesync.exceptions import SyncInProgressError
from gamesync.savesync.engine import PREFER_DOWNLOAD, PREFER_UPLOAD, SaveSyncEngine, SyncResult
from gamesync.util.log import logger

if TYPE_CHECKING:
    from gamesync.credentials import TokenFileProvider
    from gamesync.savesync.engine import CloudStorageClient

LOADING_PROGRESS_UNKNOWN = -1.0


class DialogType(Enum):
    SYNC_CONFLICT = "sync_conflict"
    SYNC_IN_PROGRESS = "sync_in_progress"
    SYNC_FAIL = "sync_fail"
    DOWNLOAD_IN_PROGRESS = "download_in_progress"
    PENDING_UPLOAD_IN_PROGRESS = "pending_upload_in_progress"
    PENDING_UPLOAD = "pending_upload"
    APP_SESSION_ACTIVE = "app_session_active"
    APP_SESSION_SUSPENDED = "app_session_suspended"
    PENDING_OPERATION_NONE = "pending_operation_none"
    MULTIPLE_PENDING_OPERATIONS = "multiple_pending_operations"


@dataclass(frozen=True)
class MessageDialogState:
    """What the UI needs to show a message to the user. An empty
    confirm_button means the dialog only has the dismiss button."""

    type: DialogType
    title: str
    message: str
    dismiss_button: str = _("OK")
    confirm_button: str = ""


class CloudSyncOutcome:
    """What the launcher should do once a cloud sync returned"""


@dataclass(frozen=True)
class Proceed(CloudSyncOutcome):
    """Sync succeeded or was skipped, the launch can continue"""


@dataclass(frozen=True)
class ShowDialog(CloudSyncOutcome):
    """The launch waits for the user to answer this dialog"""

    state: MessageDialogState


@dataclass(frozen=True)
class Retry(CloudSyncOutcome):
    """The launch flow should run again with an incremented retry count"""


class SaveLocation(Enum):
    """Which copy of the saves the user wants to keep"""

    NONE = "none"
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class CloudSyncParams:
    app_id: str
    game_id: str
    ignore_pending_operations: bool = False
    preferred_save: SaveLocation = SaveLocation.NONE
    use_temporary_override: bool = False
    retry_count: int = 0
    is_offline: bool = False


class CloudSaveCallbacks:
    """Progress reporting from a running sync. Does nothing by default."""

    def set_loading_message(self, message: str) -> None:
        pass

    def set_loading_progress(self, progress: float) -> None:
        pass


def get_sync_failed_dialog(reason: str) -> ShowDialog:
    return ShowDialog(
        MessageDialogState(
            type=DialogType.SYNC_FAIL,
            title=_("Cloud sync error"),
            message=_("Unable to synchronize your cloud saves: %s") % reason,
        )
    )


def get_sync_in_progress_dialog() -> ShowDialog:
    return ShowDialog(
        MessageDialogState(
            type=DialogType.SYNC_IN_PROGRESS,
            title=_("Cloud sync error"),
            message=_("A cloud sync is already running for this game. You can launch it anyway or wait."),
            confirm_button=_("Launch anyway"),
            dismiss_button=_("Wait"),
        )
    )


class CloudSavePlatform:
    """A service's cloud save step. At most one platform applies to a given
    container."""

    id = ""
    name = ""
    source: Optional[GameSource] = None

    def applies_to(self, container: Container) -> bool:
        return container.source == self.source

    def get_loading_message(self, container: Container) -> str:
        return _("Syncing cloud saves for %s") % container.name

    def sync(
        self,
        container: Container,
        params: CloudSyncParams,
        callbacks: CloudSaveCallbacks,
        stop_request: Optional[threading.Event] = None,
    ) -> CloudSyncOutcome:
        """Run the pre-launch step. Setting stop_request asks a running sync
        to stop before its remaining transfers."""
        raise NotImplementedError

    def upload(self, app_id: str, game_id: str, is_offline: bool, callbacks: CloudSaveCallbacks) -> None:
        """Upload saves after the game exited. Platforms without a post exit
        step keep this no-op."""


class SyncEngineCloudSavePlatform(CloudSavePlatform):
    """Platform whose saves live in a plain object store and are reconciled
    by the sync engine.

    Subclasses provide the storage client and the save locations of a
    container through get_cloud_storage().
    """

    credential_scope = ""

    def __init__(
        self,
        engine: SaveSyncEngine,
        credentials: "TokenFileProvider",
        container_loader: Callable[[str], Container] = load_container,
    ) -> None:
        self.engine = engine
        self.credentials = credentials
        self.container_loader = container_loader

    def get_cloud_storage(self, container: Container) -> Tuple["CloudStorageClient", List[Tuple[str, str]]]:
        """Return the storage client and the (location_name, save_path) pairs
        of a container"""
        raise NotImplementedError

    def sync_saves(
        self,
        container: Container,
        preferred_action: Optional[str] = None,
        stop_request: Optional[threading.Event] = None,
    ) -> List[SyncResult]:
        storage_client, locations = self.get_cloud_storage(container)
        if not locations:
            logger.info("No cloud save locations for %s", container)
            return []
        return self.engine.sync_game(
            container.id, locations, storage_client, preferred_action=preferred_action, stop_request=stop_request
        )

    def sync(
        self,
        container: Container,
        params: CloudSyncParams,
        callbacks: CloudSaveCallbacks,
        stop_request: Optional[threading.Event] = None,
    ) -> CloudSyncOutcome:
        if params.is_offline:
            logger.info("Offline launch of %s, skipping %s cloud sync", container, self.name)
            return Proceed()
        callbacks.set_loading_message(self.get_loading_message(container))
        callbacks.set_loading_progress(LOADING_PROGRESS_UNKNOWN)
        preferred_action = {
            SaveLocation.LOCAL: PREFER_UPLOAD,
            SaveLocation.REMOTE: PREFER_DOWNLOAD,
        }.get(params.preferred_save)
        logger.info("%s game detected for %s, syncing cloud saves before launch", self.name, params.app_id)
        try:
            results = self.sync_saves(container, preferred_action, stop_request)
        except SyncInProgressError as ex:
            logger.warning(ex.message)
            return get_sync_in_progress_dialog()
        except Exception as ex:  # pylint: disable=broad-except
            logger.exception("%s cloud sync failed for %s: %s", self.name, params.app_id, ex)
            return get_sync_failed_dialog(str(ex))
        if stop_request and stop_request.is_set():
            logger.info("%s cloud sync of %s was cancelled", self.name, container)
            return Proceed()
        failed = [path for result in results for path in result.failed]
        if failed:
            logger.warning("Launching %s with %d save file(s) not synced: %s", container, len(failed), failed)
        return Proceed()

    def upload(self, app_id: str, game_id: str, is_offline: bool, callbacks: CloudSaveCallbacks) -> None:
        if is_offline:
            logger.info("Skipping %s cloud save upload for %s, running offline", self.name, app_id)
            return
        logger.info("%s game detected for %s, uploading cloud saves after close", self.name, app_id)
        try:
            container = self.container_loader(app_id)
            callbacks.set_loading_message(_("Uploading cloud saves for %s") % container.name)
            self.sync_saves(container, PREFER_UPLOAD)
        except Exception as ex:  # pylint: disable=broad-except
            logger.exception("%s cloud save upload failed for %s: %s", self.name, app_id, ex)
