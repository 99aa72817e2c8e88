"""Sort local and remote saves by what changed since the last sync"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from gamesync.savesync.catalog import SaveFile


class SyncAction(Enum):
    """Possible sync actions after comparing local and remote saves."""

    DOWNLOAD = 0
    UPLOAD = 1
    CONFLICT = 2
    NONE = 3


@dataclass
class SyncClassifier:
    """Classifies sync direction by comparing local and cloud files.

    Uses the last sync timestamp to determine which files have been
    updated since the last sync, and whether to upload, download,
    or flag a conflict. The four lists make up the sync plan.
    """

    local_newer: List[SaveFile] = field(default_factory=list)
    remote_newer: List[SaveFile] = field(default_factory=list)
    local_only: List[SaveFile] = field(default_factory=list)
    remote_only: List[SaveFile] = field(default_factory=list)
    action: Optional[SyncAction] = None

    def get_action(self) -> SyncAction:
        """Determine the sync action based on classified files."""
        if not self.local_newer and self.remote_newer:
            self.action = SyncAction.DOWNLOAD
        elif self.local_newer and not self.remote_newer:
            self.action = SyncAction.UPLOAD
        elif not self.local_newer and not self.remote_newer:
            self.action = SyncAction.NONE
        else:
            self.action = SyncAction.CONFLICT
        return self.action

    @classmethod
    def classify(
        cls,
        local_files: List[SaveFile],
        remote_files: List[SaveFile],
        timestamp: float,
    ) -> "SyncClassifier":
        """Classify files based on last sync timestamp.

        Deleted remote entries count as present when looking for files
        missing from the cloud, but are never considered for download.

        Args:
            local_files: Local save files with metadata.
            remote_files: Cloud save files, deleted entries included.
            timestamp: Unix timestamp of the last successful sync.
        """
        classifier = cls()
        local_paths = {f.relative_path for f in local_files}
        remote_paths = {f.relative_path for f in remote_files}

        for f in local_files:
            if f.relative_path not in remote_paths:
                classifier.local_only.append(f)
            if f.update_ts is not None and f.update_ts > timestamp:
                classifier.local_newer.append(f)

        for f in remote_files:
            if f.is_deleted:
                continue
            if f.relative_path not in local_paths:
                classifier.remote_only.append(f)
            if f.update_ts is not None and f.update_ts > timestamp:
                classifier.remote_newer.append(f)

        classifier.get_action()
        return classifier
