"""Cloud save step of a game launch.

A launch goes IDLE -> SYNCING, then PROCEEDED, AWAITING_USER_DECISION or
RETRYING (which syncs again). While a dialog waits for the user, decide()
either re-runs the sync with the user's choice, proceeds, or abandons the
launch. A launch cancelled while syncing ends ABANDONED.
"""

import threading
from dataclasses import replace
from enum import Enum
from typing import Callable, List, Optional, Sequence

from gamesync.container import Container
from gamesync.services import sync_cloud_saves, upload_cloud_saves
from gamesync.services.base import (
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
)
from gamesync.util.jobs import AsyncCall
from gamesync.util.log import logger


class LaunchState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    PROCEEDED = "proceeded"
    AWAITING_USER_DECISION = "awaiting_user_decision"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


class UserDecision(Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    LAUNCH_ANYWAY = "launch_anyway"
    ABANDON = "abandon"


# Dialogs after which "launch anyway" means asking Steam again without
# waiting on the other machine
PENDING_OPERATION_DIALOGS = (DialogType.PENDING_UPLOAD, DialogType.APP_SESSION_ACTIVE)


class InvalidTransitionError(Exception):
    """Raised when the launch is asked for something its state doesn't allow"""


class LaunchSync:
    def __init__(
        self,
        container: Container,
        platforms: Sequence[CloudSavePlatform],
        callbacks: Optional[CloudSaveCallbacks] = None,
        download_registry=None,
        use_temporary_override: bool = False,
        is_offline: bool = False,
    ) -> None:
        self.container = container
        self.platforms = platforms
        self.callbacks = callbacks or CloudSaveCallbacks()
        self.download_registry = download_registry
        self.params = CloudSyncParams(
            app_id=container.id,
            game_id=container.game_id,
            use_temporary_override=use_temporary_override,
            is_offline=is_offline,
        )
        self.state = LaunchState.IDLE
        self.dialog: Optional[MessageDialogState] = None
        self.history: List[LaunchState] = [self.state]
        self.state_listeners: List[Callable[[LaunchState], None]] = []
        self.stop_request = threading.Event()

    def __repr__(self) -> str:
        return "LaunchSync(container=%s, state=%s)" % (self.container.id, self.state.name)

    @property
    def retry_count(self) -> int:
        return self.params.retry_count

    def _set_state(self, state: LaunchState) -> None:
        logger.debug("%s: %s -> %s", self.container, self.state.name, state.name)
        self.state = state
        self.history.append(state)
        for listener in self.state_listeners:
            listener(state)

    def start(self) -> LaunchState:
        if self.state != LaunchState.IDLE:
            raise InvalidTransitionError("Launch of %s already started" % self.container)
        return self._sync()

    def start_async(self, callback: Callable[[Optional[LaunchState], Optional[Exception]], None]) -> AsyncCall:
        """Run start() on a worker thread. Stopping the returned job cancels
        the launch."""
        return AsyncCall(self.start, callback, stop_request=self.stop_request)

    def cancel(self) -> None:
        """Stop the running sync before its remaining transfers"""
        logger.info("Cancelling the cloud sync of %s", self.container)
        self.stop_request.set()

    def _sync(self) -> LaunchState:
        while not self.stop_request.is_set():
            self._set_state(LaunchState.SYNCING)
            outcome = sync_cloud_saves(
                self.container,
                self.params,
                self.platforms,
                callbacks=self.callbacks,
                download_registry=self.download_registry,
                stop_request=self.stop_request,
            )
            if self.stop_request.is_set():
                break
            if not isinstance(outcome, Retry):
                return self._apply(outcome)
            self._set_state(LaunchState.RETRYING)
            self.params = replace(self.params, retry_count=self.params.retry_count + 1)
        logger.info("Launch of %s cancelled", self.container)
        self.dialog = None
        self._set_state(LaunchState.ABANDONED)
        return self.state

    def _apply(self, outcome: CloudSyncOutcome) -> LaunchState:
        if isinstance(outcome, ShowDialog):
            self.dialog = outcome.state
            self._set_state(LaunchState.AWAITING_USER_DECISION)
        elif isinstance(outcome, Proceed):
            self.dialog = None
            self._set_state(LaunchState.PROCEEDED)
        else:
            raise InvalidTransitionError("Unknown cloud sync outcome: %s" % outcome)
        return self.state

    def decide(self, decision: UserDecision) -> LaunchState:
        """Apply the user's answer to the dialog being shown"""
        if self.state != LaunchState.AWAITING_USER_DECISION:
            raise InvalidTransitionError("No decision expected in state %s" % self.state.name)
        logger.info("User decision for %s: %s", self.container, decision.name)
        dialog_type = self.dialog.type if self.dialog else None
        self.dialog = None
        if decision == UserDecision.ABANDON:
            self._set_state(LaunchState.ABANDONED)
        elif decision == UserDecision.KEEP_LOCAL:
            self.params = replace(self.params, preferred_save=SaveLocation.LOCAL)
            self._sync()
        elif decision == UserDecision.KEEP_REMOTE:
            self.params = replace(self.params, preferred_save=SaveLocation.REMOTE)
            self._sync()
        elif dialog_type in PENDING_OPERATION_DIALOGS:
            self.params = replace(self.params, ignore_pending_operations=True)
            self._sync()
        else:
            self._set_state(LaunchState.PROCEEDED)
        return self.state

    def on_exit(self) -> None:
        """Upload the saves once the game has exited"""
        upload_cloud_saves(self.container, self.params.is_offline, self.platforms, callbacks=self.callbacks)
