"""Epic Games Store cloud save storage.

Epic keeps the save files of a game under ``<account_id>/<app_name>/`` in its
data storage service. Listing returns a read link per file; uploading needs
write links that are requested for a batch of file names first.
"""

import os
import threading
from typing import Dict, List, Optional

import requests

from gamesync.exceptions import CloudStorageError
from gamesync.savesync.catalog import SaveFile, filter_remote_entries, parse_timestamp
from gamesync.util.http import HTTPError, Request
from gamesync.util.log import logger

EGS_DATASTORAGE_URL = "https://datastorage-public-service-liveegs.live.use1a.on.epicgames.com"
EGS_SAVESYNC_PATH = "/api/v1/access/egstore/savesync"

# Epic has a single save folder per game
EGS_LOCATION_NAME = "savegames"


class EGSCloudStorageClient:
    """Client for the Epic data storage savesync API"""

    def __init__(
        self, account_id: str, app_name: str, access_token: str, session: Optional[requests.Session] = None
    ) -> None:
        self.account_id = account_id
        self.app_name = app_name
        self.access_token = access_token
        self.session = session
        self._read_links: Dict[str, str] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return "EGSCloudStorageClient(account_id=%s, app_name=%s)" % (self.account_id, self.app_name)

    @property
    def savesync_url(self) -> str:
        return f"{EGS_DATASTORAGE_URL}{EGS_SAVESYNC_PATH}/{self.account_id}/{self.app_name}/"

    @property
    def prefix(self) -> str:
        return f"{self.account_id}/{self.app_name}"

    def _make_request(self, url: str, authenticated: bool = True) -> Request:
        headers = {"Authorization": "bearer %s" % self.access_token} if authenticated else {}
        return Request(url, headers=headers, session=self.session)

    def list_files(self, dir_name: str = EGS_LOCATION_NAME) -> List[SaveFile]:
        """List the save files of the game. dir_name is accepted for
        interface compatibility, Epic has no save locations."""
        request = self._make_request(self.savesync_url)
        try:
            request.get()
        except HTTPError as ex:
            if ex.code == 404:
                return []
            raise
        try:
            files = request.json.get("files") or {}
        except (ValueError, AttributeError) as ex:
            raise CloudStorageError("Failed to parse Epic save listing: %s" % ex) from ex

        entries = []
        read_links = {}
        for name, details in files.items():
            if ".manifest" in name:
                # Manifest based saves of older clients
                continue
            entries.append({"name": name, "hash": details.get("hash"), "last_modified": details.get("lastModified")})
            read_links[name] = details.get("readLink")
        save_files = filter_remote_entries(entries, self.prefix)
        with self._lock:
            self._read_links.update(read_links)
        logger.info("Found %d Epic cloud save file(s) for %s", len(save_files), self.app_name)
        return save_files

    def get_remote_name(self, save_file: SaveFile) -> str:
        return f"{self.prefix}/{save_file.relative_path}"

    def get_write_links(self, save_files: List[SaveFile]) -> Dict[str, str]:
        """Request write links for a batch of files, keyed by remote name"""
        request = self._make_request(self.savesync_url)
        request.post(json_data={"files": [self.get_remote_name(f) for f in save_files]})
        files = request.json.get("files") or {}
        return {name: details.get("writeLink") for name, details in files.items() if details.get("writeLink")}

    def upload_file(self, save_file: SaveFile, dir_name: str = EGS_LOCATION_NAME) -> bool:
        """Upload the raw content of a local file. Raises OSError if it can't
        be read."""
        with open(save_file.absolute_path, "rb") as local_file:
            data = local_file.read()
        try:
            write_link = self.get_write_links([save_file]).get(self.get_remote_name(save_file))
            if not write_link:
                logger.error("No write link received for %s", save_file.relative_path)
                return False
            self._make_request(write_link, authenticated=False).put(data)
        except (HTTPError, ValueError) as ex:
            logger.error("Upload FAILED: %s - %s", save_file.relative_path, ex)
            return False
        logger.info("Upload SUCCESS: %s (%d bytes)", save_file.relative_path, len(data))
        return True

    def download_file(self, save_file: SaveFile, dir_name: str = EGS_LOCATION_NAME) -> bool:
        with self._lock:
            read_link = self._read_links.get(self.get_remote_name(save_file))
        if not read_link:
            logger.error("No read link for %s, was the game listed first?", save_file.relative_path)
            return False
        request = self._make_request(read_link, authenticated=False)
        try:
            request.get()
        except HTTPError as ex:
            logger.error("Failed to download %s: %s", save_file.relative_path, ex)
            return False
        os.makedirs(os.path.dirname(save_file.absolute_path), exist_ok=True)
        with open(save_file.absolute_path, "wb") as local_file:
            local_file.write(request.content)
        timestamp = parse_timestamp(save_file.update_time)
        if timestamp is not None:
            os.utime(save_file.absolute_path, (timestamp, timestamp))
        logger.info("Download complete: %s (%d bytes)", save_file.relative_path, len(request.content))
        return True


def get_path_variables(install_path: str, account_id: str, wine_prefix: Optional[str], wine_user: Optional[str]):
    """Values of the variables found in Epic's CloudSaveFolder attribute"""
    if not wine_user:
        wine_user = os.environ.get("USER", "steamuser")
    user_dir = os.path.join(wine_prefix or "", "drive_c", "users", wine_user)
    return {
        "{installdir}": install_path,
        "{epicid}": account_id,
        "{appdata}": os.path.join(user_dir, "AppData", "Local"),
        "{userdir}": os.path.join(user_dir, "Documents"),
        "{userprofile}": user_dir,
        "{usersavedgames}": os.path.join(user_dir, "Saved Games"),
    }


def resolve_save_path(
    save_folder: str,
    install_path: str,
    account_id: str,
    wine_prefix: Optional[str] = None,
    wine_user: Optional[str] = None,
) -> Optional[str]:
    """Resolve Epic's CloudSaveFolder to a path inside the Wine prefix"""
    if not save_folder:
        return None
    path_vars = get_path_variables(install_path, account_id, wine_prefix, wine_user)
    if not wine_prefix and any(var in save_folder.lower() for var in path_vars if var not in ("{installdir}", "{epicid}")):
        logger.error("Wine prefix required for resolving Epic save path %s", save_folder)
        return None
    parts = [path_vars.get(part.lower(), part) for part in save_folder.replace("\\", "/").split("/")]
    return os.path.normpath("/".join(parts))
