"""Cloud save platforms and the dispatch of a launch to the one that applies"""

import threading
from gettext import gettext as _
from typing import TYPE_CHECKING, Optional, Sequence

from gamesync.container import Container
from gamesync.exceptions import MisconfigurationError
from gamesync.services.base import (
    CloudSaveCallbacks,
    CloudSavePlatform,
    CloudSyncOutcome,
    CloudSyncParams,
    DialogType,
    MessageDialogState,
    Proceed,
    ShowDialog,
)
from gamesync.util.log import logger

if TYPE_CHECKING:
    from gamesync.download_info import DownloadRegistry


def get_cloud_sync_platform(container: Container, platforms: Sequence[CloudSavePlatform]) -> Optional[CloudSavePlatform]:
    """Return the platform that applies to a container, None if there is none.

    Raises MisconfigurationError if more than one platform claims it.
    """
    matches = [platform for platform in platforms if platform.applies_to(container)]
    if len(matches) > 1:
        raise MisconfigurationError(
            "%s is claimed by more than one cloud save platform: %s"
            % (container.id, ", ".join(platform.id for platform in matches))
        )
    return matches[0] if matches else None


def sync_cloud_saves(
    container: Container,
    params: CloudSyncParams,
    platforms: Sequence[CloudSavePlatform],
    callbacks: Optional[CloudSaveCallbacks] = None,
    download_registry: Optional["DownloadRegistry"] = None,
    stop_request: Optional[threading.Event] = None,
) -> CloudSyncOutcome:
    """Run the pre-launch cloud sync of a container"""
    if download_registry and download_registry.is_downloading(container.id):
        logger.warning("%s is still downloading, not syncing its saves", container)
        return ShowDialog(
            MessageDialogState(
                type=DialogType.DOWNLOAD_IN_PROGRESS,
                title=_("Download in progress"),
                message=_("%s is still being downloaded. Wait for the download to finish.") % container.name,
            )
        )
    platform = get_cloud_sync_platform(container, platforms)
    if not platform:
        logger.debug("No cloud save platform for %s", container)
        return Proceed()
    return platform.sync(container, params, callbacks or CloudSaveCallbacks(), stop_request)


def upload_cloud_saves(
    container: Container,
    is_offline: bool,
    platforms: Sequence[CloudSavePlatform],
    callbacks: Optional[CloudSaveCallbacks] = None,
) -> None:
    """Run the post-exit upload of a container's saves"""
    platform = get_cloud_sync_platform(container, platforms)
    if not platform:
        return
    platform.upload(container.id, container.game_id, is_offline, callbacks or CloudSaveCallbacks())
