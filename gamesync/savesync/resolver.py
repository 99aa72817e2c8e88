"""Per file arbitration when both sides changed since the last sync"""

from dataclasses import dataclass, field
from typing import Dict, List, Set

from gamesync.savesync.catalog import SaveFile
from gamesync.savesync.classifier import SyncAction, SyncClassifier
from gamesync.util.log import logger


@dataclass
class TransferPlan:
    to_upload: List[SaveFile] = field(default_factory=list)
    to_download: List[SaveFile] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.to_upload or self.to_download)


def resolve_conflict(classifier: SyncClassifier) -> TransferPlan:
    """Split a conflicting sync into uploads and downloads by comparing
    modification times file by file.

    A file changed on both sides goes the way of its newer copy. When both
    copies have the same time neither is transferred.
    """
    local_map: Dict[str, SaveFile] = {f.relative_path: f for f in classifier.local_newer}
    remote_map: Dict[str, SaveFile] = {f.relative_path: f for f in classifier.remote_newer if not f.is_deleted}
    common_paths = local_map.keys() & remote_map.keys()

    plan = TransferPlan()
    queued: Set[str] = set()

    def queue(files: List[SaveFile], path: str, save_file: SaveFile) -> None:
        if path in queued:
            return
        queued.add(path)
        files.append(save_file)

    for path in sorted(common_paths):
        local_time = local_map[path].update_ts or 0
        remote_time = remote_map[path].update_ts or 0
        if local_time > remote_time:
            logger.info("Local file is newer: %s (local: %s > cloud: %s)", path, local_time, remote_time)
            queue(plan.to_upload, path, local_map[path])
        elif remote_time > local_time:
            logger.info("Cloud file is newer: %s (cloud: %s > local: %s)", path, remote_time, local_time)
            queue(plan.to_download, path, remote_map[path])
        else:
            logger.warning("Files have same timestamp, skipping: %s", path)
            queued.add(path)

    for save_file in classifier.local_newer + classifier.local_only:
        if save_file.relative_path not in common_paths:
            queue(plan.to_upload, save_file.relative_path, save_file)

    for save_file in classifier.remote_newer + classifier.remote_only:
        if save_file.is_deleted or save_file.relative_path in common_paths:
            continue
        queue(plan.to_download, save_file.relative_path, save_file)

    return plan


def plan_transfers(classifier: SyncClassifier) -> TransferPlan:
    """Return the transfers for the classifier's action"""
    action = classifier.action or classifier.get_action()
    if action == SyncAction.UPLOAD:
        return TransferPlan(to_upload=_unique(classifier.local_newer + classifier.local_only))
    if action == SyncAction.DOWNLOAD:
        remote = [f for f in classifier.remote_newer + classifier.remote_only if not f.is_deleted]
        return TransferPlan(to_download=_unique(remote))
    if action == SyncAction.CONFLICT:
        return resolve_conflict(classifier)
    return TransferPlan()


def _unique(files: List[SaveFile]) -> List[SaveFile]:
    seen: Set[str] = set()
    unique = []
    for save_file in files:
        if save_file.relative_path in seen:
            continue
        seen.add(save_file.relative_path)
        unique.append(save_file)
    return unique
