"""Steam cloud saves.

Steam runs its own bidirectional sync; this platform only turns the result
reported by the Steam client into what the launcher should do next.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from gettext import gettext as _
from typing import Callable, List, Optional, Protocol

from gamesync.container import Container, GameSource
from gamesync.services.base import (
    LOADING_PROGRESS_UNKNOWN,
    CloudSaveCallbacks,
    CloudSavePlatform,
    CloudSyncOutcome,
    CloudSyncParams,
    DialogType,
    MessageDialogState,
    Proceed,
    Retry,
    SaveLocation,
    ShowDialog,
    get_sync_failed_dialog,
    get_sync_in_progress_dialog,
)
from gamesync.util.log import logger

MAX_IN_PROGRESS_RETRIES = 5
IN_PROGRESS_RETRY_DELAY = 2.0


class SteamSyncResult(Enum):
    UP_TO_DATE = "UpToDate"
    SUCCESS = "Success"
    CONFLICT = "Conflict"
    IN_PROGRESS = "InProgress"
    PENDING_OPERATIONS = "PendingOperations"
    DOWNLOAD_FAIL = "DownloadFail"
    UPDATE_FAIL = "UpdateFail"
    UNKNOWN_FAIL = "UnknownFail"


class PendingOperation(Enum):
    NONE = 0
    UPLOAD_IN_PROGRESS = 1
    UPLOAD_PENDING = 2
    APP_SESSION_ACTIVE = 3
    APP_SESSION_SUSPENDED = 4


@dataclass(frozen=True)
class PendingRemoteOperation:
    """An operation another machine has on the game's Steam cloud"""

    machine_name: str
    time_last_updated: int
    operation: PendingOperation

    @property
    def date(self) -> str:
        return datetime.fromtimestamp(self.time_last_updated).strftime("%c")


@dataclass
class PostSyncInfo:
    sync_result: SteamSyncResult
    local_timestamp: float = 0.0
    remote_timestamp: float = 0.0
    pending_remote_operations: List[PendingRemoteOperation] = field(default_factory=list)


ProgressCallback = Callable[[str, float], None]


class SteamCloudClient(Protocol):
    """The Steam client session the launcher is logged in with"""

    def begin_launch_app(
        self,
        game_id: str,
        ignore_pending_operations: bool,
        preferred_save: SaveLocation,
        is_offline: bool,
        on_progress: ProgressCallback,
    ) -> PostSyncInfo: ...

    def close_app(self, game_id: str, is_offline: bool, on_progress: ProgressCallback) -> None: ...


class SteamCloudSavePlatform(CloudSavePlatform):
    id = "steam"
    name = "Steam"
    source = GameSource.STEAM

    def __init__(
        self,
        steam_client: Optional[SteamCloudClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.steam_client = steam_client
        self.sleep = sleep

    @staticmethod
    def _progress_reporter(callbacks: CloudSaveCallbacks) -> ProgressCallback:
        def on_progress(message: str, progress: float) -> None:
            callbacks.set_loading_message(message)
            callbacks.set_loading_progress(LOADING_PROGRESS_UNKNOWN if progress < 0 else progress)

        return on_progress

    def sync(
        self,
        container: Container,
        params: CloudSyncParams,
        callbacks: CloudSaveCallbacks,
        stop_request: Optional[threading.Event] = None,
    ) -> CloudSyncOutcome:
        if not self.steam_client:
            logger.warning("No Steam client session, skipping Steam cloud sync for %s", container)
            return Proceed()
        if stop_request and stop_request.is_set():
            return Proceed()
        callbacks.set_loading_message(self.get_loading_message(container))
        callbacks.set_loading_progress(LOADING_PROGRESS_UNKNOWN)
        try:
            post_sync_info = self.steam_client.begin_launch_app(
                params.game_id,
                ignore_pending_operations=params.ignore_pending_operations,
                preferred_save=params.preferred_save,
                is_offline=params.is_offline,
                on_progress=self._progress_reporter(callbacks),
            )
        except Exception as ex:  # pylint: disable=broad-except
            logger.exception("Steam cloud sync failed for %s: %s", params.app_id, ex)
            return get_sync_failed_dialog(str(ex))
        return self.resolve_result(post_sync_info, container, params.use_temporary_override, params.retry_count)

    def resolve_result(
        self,
        post_sync_info: PostSyncInfo,
        container: Container,
        use_temporary_override: bool,
        retry_count: int,
    ) -> CloudSyncOutcome:
        sync_result = post_sync_info.sync_result
        if sync_result in (SteamSyncResult.UP_TO_DATE, SteamSyncResult.SUCCESS):
            return Proceed()

        if sync_result == SteamSyncResult.CONFLICT:
            return ShowDialog(
                MessageDialogState(
                    type=DialogType.SYNC_CONFLICT,
                    title=_("Save conflict"),
                    message=_("Your local saves (%s) and the cloud saves (%s) both changed. Which do you keep?")
                    % (
                        datetime.fromtimestamp(post_sync_info.local_timestamp).strftime("%c"),
                        datetime.fromtimestamp(post_sync_info.remote_timestamp).strftime("%c"),
                    ),
                    dismiss_button=_("Keep local"),
                    confirm_button=_("Keep remote"),
                )
            )

        if sync_result == SteamSyncResult.IN_PROGRESS:
            if use_temporary_override and retry_count < MAX_IN_PROGRESS_RETRIES:
                logger.info(
                    "Sync in progress for intent launch, retrying in %s seconds (attempt %d/%d)",
                    IN_PROGRESS_RETRY_DELAY,
                    retry_count + 1,
                    MAX_IN_PROGRESS_RETRIES,
                )
                self.sleep(IN_PROGRESS_RETRY_DELAY)
                return Retry()
            return get_sync_in_progress_dialog()

        if sync_result == SteamSyncResult.PENDING_OPERATIONS:
            return ShowDialog(self.get_pending_operations_dialog(post_sync_info.pending_remote_operations, container))

        return get_sync_failed_dialog(sync_result.value)

    def get_pending_operations_dialog(
        self, operations: List[PendingRemoteOperation], container: Container
    ) -> MessageDialogState:
        for pending in operations:
            logger.info(
                "Pending remote operation: machine %s, updated %s, operation %s",
                pending.machine_name,
                pending.date,
                pending.operation.name,
            )
        if len(operations) != 1:
            return MessageDialogState(
                type=DialogType.MULTIPLE_PENDING_OPERATIONS,
                title=_("Cloud sync error"),
                message=_("There are multiple pending operations on your Steam cloud saves."),
            )

        pending = operations[0]
        if pending.operation == PendingOperation.UPLOAD_IN_PROGRESS:
            return MessageDialogState(
                type=DialogType.PENDING_UPLOAD_IN_PROGRESS,
                title=_("Upload in progress"),
                message=_("%s saves are being uploaded from %s since %s.")
                % (container.name, pending.machine_name, pending.date),
            )
        if pending.operation == PendingOperation.UPLOAD_PENDING:
            return MessageDialogState(
                type=DialogType.PENDING_UPLOAD,
                title=_("Pending upload"),
                message=_("%s saves from %s (%s) have not been uploaded yet.")
                % (container.name, pending.machine_name, pending.date),
                confirm_button=_("Play anyway"),
                dismiss_button=_("Cancel"),
            )
        if pending.operation == PendingOperation.APP_SESSION_ACTIVE:
            return MessageDialogState(
                type=DialogType.APP_SESSION_ACTIVE,
                title=_("Game running elsewhere"),
                message=_("%s is running %s since %s.") % (pending.machine_name, container.name, pending.date),
                confirm_button=_("Play anyway"),
                dismiss_button=_("Cancel"),
            )
        if pending.operation == PendingOperation.APP_SESSION_SUSPENDED:
            return MessageDialogState(
                type=DialogType.APP_SESSION_SUSPENDED,
                title=_("Cloud sync error"),
                message=_("A suspended session of this game exists on another machine."),
            )
        return MessageDialogState(
            type=DialogType.PENDING_OPERATION_NONE,
            title=_("Cloud sync error"),
            message=_("Steam reported a pending operation without details."),
        )

    def upload(self, app_id: str, game_id: str, is_offline: bool, callbacks: CloudSaveCallbacks) -> None:
        if not self.steam_client:
            return
        try:
            self.steam_client.close_app(game_id, is_offline=is_offline, on_progress=self._progress_reporter(callbacks))
        except Exception as ex:  # pylint: disable=broad-except
            logger.exception("Steam cloud save upload failed for %s: %s", app_id, ex)
