"""Local and remote save file catalogs.

Both sides are described with the same SaveFile record so that the
classifier can compare them path by path. Hashes are MD5 digests of the
gzip-compressed content, which is how the cloud stores compute them.
"""

import concurrent.futures
import datetime
import gzip
import hashlib
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

from gamesync.util.log import logger

# MD5 of an empty gzip stream. The cloud keeps these entries around for
# files that were deleted.
DELETION_MD5 = "aadd86936a80ee8a369579c3926f1b3c"

LOCAL_TIMEZONE = datetime.datetime.now(datetime.timezone.utc).astimezone().tzinfo


def compute_gzip_md5(raw_data: bytes) -> str:
    compressed = gzip.compress(raw_data, compresslevel=6, mtime=0)
    return hashlib.md5(compressed).hexdigest()


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """Convert an ISO 8601 date to whole epoch seconds, None if it can't be read.

    Fractions are dropped so that server dates compare with the whole second
    sync watermarks.
    """
    if not value:
        return None
    try:
        return int(datetime.datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone().timestamp())
    except (ValueError, TypeError):
        logger.warning("Invalid timestamp: %s", value)
        return None


def format_timestamp(timestamp: float) -> str:
    date_time_obj = datetime.datetime.fromtimestamp(timestamp, tz=LOCAL_TIMEZONE).astimezone(datetime.timezone.utc)
    return date_time_obj.isoformat(timespec="seconds")


@dataclass
class SaveFile:
    """A file involved in cloud save synchronization.

    Attributes:
        relative_path: Path relative to the sync root, with forward slashes.
            This is what identifies the file on both sides.
        absolute_path: Local filesystem path of the file.
        md5: MD5 of the gzip-compressed content, None until computed.
        update_time: ISO 8601 modification date, or None.
        update_ts: Modification date in epoch seconds, or None.
    """

    relative_path: str
    absolute_path: str = ""
    md5: Optional[str] = None
    update_time: Optional[str] = None
    update_ts: Optional[float] = None

    @property
    def is_deleted(self) -> bool:
        """True for remote entries marking a deleted file"""
        return self.md5 == DELETION_MD5

    def compute_metadata(self) -> None:
        """Compute md5 and modification date from the local file.

        Raises OSError if the file can't be read.
        """
        ts = os.stat(self.absolute_path).st_mtime
        with open(self.absolute_path, "rb") as save_file:
            raw_data = save_file.read()
        self.md5 = compute_gzip_md5(raw_data)
        self.update_time = format_timestamp(ts)
        self.update_ts = datetime.datetime.fromisoformat(self.update_time).timestamp()

    def __repr__(self) -> str:
        return f"{self.md5} {self.relative_path}"


def get_relative_path(root: str, path: str) -> str:
    """Get the relative path from a root directory, using forward slashes."""
    return os.path.relpath(path, root).replace(os.sep, "/").replace("\\", "/")


def create_directory_map(path: str) -> List[str]:
    """Recursively list all regular files in a directory."""
    files: List[str] = []
    if not os.path.isdir(path):
        return files
    for root, _dirs, filenames in os.walk(path):
        for filename in filenames:
            abs_path = os.path.join(root, filename)
            if os.path.isfile(abs_path):
                files.append(abs_path)
    return sorted(files)


def compute_all_metadata(files: Iterable[SaveFile], max_workers: int = 4) -> List[SaveFile]:
    """Hash files on a thread pool. Files that can't be read are logged and
    left out of the result."""
    files = list(files)
    if not files:
        return []
    hashed = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_files = {executor.submit(save_file.compute_metadata): save_file for save_file in files}
        for future in concurrent.futures.as_completed(future_files):
            save_file = future_files[future]
            if future.exception():
                logger.warning("Skipping unreadable save file %s: %s", save_file.absolute_path, future.exception())
                continue
            hashed.append(save_file)
    return sorted(hashed, key=lambda f: f.relative_path)


def scan_local(root_dir: str, max_workers: int = 4) -> List[SaveFile]:
    """Scan a save directory into hashed SaveFile records"""
    local_files = [
        SaveFile(relative_path=get_relative_path(root_dir, path), absolute_path=path)
        for path in create_directory_map(root_dir)
    ]
    local_files = compute_all_metadata(local_files, max_workers=max_workers)
    logger.info("Found %d local file(s) in %s", len(local_files), root_dir)
    return local_files


def filter_remote_entries(entries: Iterable[dict], dir_name: str) -> List[SaveFile]:
    """Turn a remote listing into SaveFiles for one save location.

    Entries are dicts with 'name', 'hash' and 'last_modified'. Only names
    under dir_name are kept, with the dir_name prefix removed.
    """
    prefix = dir_name + "/"
    files = []
    for entry in entries:
        name = entry.get("name", "")
        if not name.startswith(prefix):
            continue
        last_modified = entry.get("last_modified")
        files.append(
            SaveFile(
                relative_path=name[len(prefix):],
                md5=entry.get("hash"),
                update_time=last_modified,
                update_ts=parse_timestamp(last_modified),
            )
        )
    return files
