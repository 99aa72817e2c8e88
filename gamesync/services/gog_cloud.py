"""GOG Cloud Save storage

Implements the GOG Galaxy cloud storage protocol used to synchronize saves.

Endpoints:
    - Cloud Storage: https://cloudstorage.gog.com
    - Remote Config: https://remote-config.gog.com
    - Content System: https://content-system.gog.com
    - Auth: https://auth.gog.com
"""

import gzip
import hashlib
import json
import os
import re
import threading
import urllib.parse
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests

from gamesync.exceptions import AuthenticationError, CloudStorageError
from gamesync.savesync.catalog import SaveFile, filter_remote_entries, parse_timestamp
from gamesync.util.http import HTTPError, Request
from gamesync.util.log import logger

# GOG Cloud Storage API endpoints
GOG_CLOUDSTORAGE_URL = "https://cloudstorage.gog.com"
GOG_CONTENT_SYSTEM_URL = "https://content-system.gog.com"
GOG_REMOTE_CONFIG_URL = "https://remote-config.gog.com"
GOG_AUTH_URL = "https://auth.gog.com"

# The cloud storage API only answers clients that look like GOG Galaxy
GOG_CLOUD_USER_AGENT = (
    "GOGGalaxyCommunicationService/2.0.13.27 (Windows_32bit) dont_sync_marker/true installation_source/gog"
)

DEFAULT_LOCATION_NAME = "__default"
DEFAULT_LOCATION_TEMPLATE = "%LOCALAPPDATA%/GOG.com/Galaxy/Applications/{client_id}/Storage/Shared/Files"


@dataclass
class CloudSaveLocation:
    """A GOG cloud save location for a game.

    Attributes:
        name: The location identifier (e.g. '__default' or a specific name)
        location: The path template with GOG variables (e.g. '<?DOCUMENTS?>/My Games/...')
    """

    name: str
    location: str


class GOGCloudStorageClient:
    """Client for GOG's cloud storage REST API.

    A single listing call returns every file of the game's container; files
    of a save location are the ones prefixed by the location name.
    """

    def __init__(
        self, user_id: str, client_id: str, access_token: str, session: Optional[requests.Session] = None
    ) -> None:
        self.user_id = user_id
        self.client_id = client_id
        self.access_token = access_token
        self.session = session

    def __repr__(self) -> str:
        return "GOGCloudStorageClient(user_id=%s, client_id=%s)" % (self.user_id, self.client_id)

    def get_file_url(self, save_file: SaveFile, dir_name: str) -> str:
        fpath = urllib.parse.quote(save_file.relative_path)
        return f"{GOG_CLOUDSTORAGE_URL}/v1/{self.user_id}/{self.client_id}/{dir_name}/{fpath}"

    def _make_request(self, url: str, extra_headers: Optional[Dict[str, str]] = None) -> Request:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "User-Agent": GOG_CLOUD_USER_AGENT,
            "X-Object-Meta-User-Agent": GOG_CLOUD_USER_AGENT,
        }
        if extra_headers:
            headers.update(extra_headers)
        return Request(url, headers=headers, session=self.session)

    def list_files(self, dir_name: str) -> List[SaveFile]:
        """List the files of a save location, deleted entries included.

        Raises:
            HTTPError: If the listing fails for another reason than the
                container not existing yet.
        """
        request = self._make_request(
            f"{GOG_CLOUDSTORAGE_URL}/v1/{self.user_id}/{self.client_id}",
            extra_headers={"Accept": "application/json"},
        )
        try:
            request.get()
        except HTTPError as ex:
            if ex.code == 404:
                logger.info("No cloud container yet for client %s", self.client_id)
                return []
            raise
        try:
            entries = request.json
        except ValueError as ex:
            raise CloudStorageError("Failed to parse cloud file listing: %s" % ex) from ex
        if not isinstance(entries, list):
            entries = []
        files = filter_remote_entries(entries, dir_name)
        for cloud_file in files:
            logger.debug(
                "Cloud file found: %s (MD5: %s, modified: %s)",
                cloud_file.relative_path,
                cloud_file.md5,
                cloud_file.update_time,
            )
        logger.info("Found %d files in cloud for directory '%s'", len(files), dir_name)
        return files

    def upload_file(self, save_file: SaveFile, dir_name: str) -> bool:
        """Upload a local file, gzip-compressed, with its modification date
        as metadata. Raises OSError if the local file can't be read."""
        with open(save_file.absolute_path, "rb") as local_file:
            raw_data = local_file.read()
        compressed_data = gzip.compress(raw_data, compresslevel=6, mtime=0)
        headers = {
            "X-Object-Meta-LocalLastModified": save_file.update_time or "",
            "Etag": hashlib.md5(compressed_data).hexdigest(),
            "Content-Encoding": "gzip",
        }
        request = self._make_request(self.get_file_url(save_file, dir_name), extra_headers=headers)
        try:
            request.put(compressed_data)
        except HTTPError as ex:
            logger.error("Upload FAILED: %s - %s", save_file.relative_path, ex)
            return False
        logger.info(
            "Upload SUCCESS: %s (size: %d bytes compressed, MD5: %s)",
            save_file.relative_path,
            len(compressed_data),
            headers["Etag"],
        )
        return True

    def download_file(self, save_file: SaveFile, dir_name: str) -> bool:
        """Download a file to its absolute_path and restore its modification
        date from the cloud metadata."""
        logger.info("Downloading %s to %s", save_file.relative_path, save_file.absolute_path)
        request = self._make_request(self.get_file_url(save_file, dir_name))
        try:
            request.get()
        except HTTPError as ex:
            logger.error("Failed to download %s: %s", save_file.relative_path, ex)
            return False
        if not request.content:
            logger.error("Empty response when downloading %s", save_file.relative_path)
            return False

        try:
            data = gzip.decompress(request.content)
        except (OSError, EOFError, zlib.error) as ex:
            logger.error("Failed to decompress %s: %s", save_file.relative_path, ex)
            return False

        os.makedirs(os.path.dirname(save_file.absolute_path), exist_ok=True)
        with open(save_file.absolute_path, "wb") as local_file:
            local_file.write(data)

        last_modified = request.response_headers.get("X-Object-Meta-LocalLastModified") or save_file.update_time
        timestamp = parse_timestamp(last_modified)
        if timestamp is not None:
            os.utime(save_file.absolute_path, (timestamp, timestamp))
        logger.info("Download complete: %s (%d bytes)", save_file.relative_path, len(data))
        return True


def read_info_file(install_path: str, game_id: str) -> dict:
    """Read goggame-<id>.info from the install directory, {} if there is none"""
    for directory in (install_path, os.path.join(install_path, "game")):
        info_path = os.path.join(directory, "goggame-%s.info" % game_id)
        if not os.path.isfile(info_path):
            continue
        try:
            with open(info_path, encoding="utf-8") as info_file:
                return json.load(info_file)
        except (OSError, ValueError) as ex:
            logger.warning("Unreadable info file %s: %s", info_path, ex)
    return {}


def get_game_client_credentials(game_id: str, platform: str = "windows") -> Tuple[str, str]:
    """Get the game-specific clientId and clientSecret from the build manifest.

    Raises:
        HTTPError: If the build or manifest cannot be fetched.
        AuthenticationError: If clientId is not found in the manifest.
    """
    builds_url = f"{GOG_CONTENT_SYSTEM_URL}/products/{game_id}/os/{platform}/builds?generation=2"
    request = Request(builds_url)
    request.get()
    builds_data = request.json

    if not builds_data or not builds_data.get("items"):
        raise AuthenticationError(f"No builds found for game {game_id} on {platform}")

    meta_url = builds_data["items"][0].get("link")
    if not meta_url:
        urls = builds_data["items"][0].get("urls")
        if urls:
            meta_url = urls[0].get("url")
    if not meta_url:
        raise AuthenticationError(f"No manifest URL found for game {game_id}")

    meta_request = Request(meta_url)
    meta_request.get()

    # Generation 2 manifests are zlib compressed
    try:
        manifest = json.loads(zlib.decompress(meta_request.content))
    except zlib.error:
        manifest = json.loads(meta_request.content)

    client_id = manifest.get("clientId")
    if not client_id:
        raise AuthenticationError(f"No clientId found in manifest for game {game_id}")
    return client_id, manifest.get("clientSecret") or ""


def get_game_scoped_token(refresh_token: str, client_id: str, client_secret: str) -> dict:
    """Exchange a GOG refresh token for a token scoped to the game's clientId.

    Raises:
        HTTPError: If the token exchange fails.
        AuthenticationError: If the answer has no user_id or access_token.
    """
    params = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "without_new_session": "1",
    }
    url = f"{GOG_AUTH_URL}/token?" + urllib.parse.urlencode(params)
    request = Request(url, redacted_query_parameters=("refresh_token", "client_secret"))
    request.get()
    token = request.json
    if not token.get("user_id") or not token.get("access_token"):
        raise AuthenticationError("Invalid game token response: missing user_id or access_token")
    return token


class RemoteConfigCache:
    """Cloud save locations from GOG's remote config API, cached per clientId.

    Entries are never evicted; the cache lives as long as the process.
    """

    # Remote-config uses capitalized platform names
    platform_map = {
        "windows": "Windows",
        "linux": "Linux",
        "osx": "MacOS",
    }

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locations: Dict[Tuple[str, str], List[CloudSaveLocation]] = {}

    def __len__(self) -> int:
        return len(self._locations)

    def get_locations(self, client_id: str, platform: str = "windows") -> List[CloudSaveLocation]:
        key = (client_id, platform)
        with self._lock:
            if key in self._locations:
                logger.debug("Using cached save locations for clientId %s", client_id)
                return list(self._locations[key])
        locations = fetch_cloud_save_locations(client_id, self.platform_map.get(platform.lower(), platform))
        if locations:
            with self._lock:
                self._locations[key] = locations
        return list(locations)


def fetch_cloud_save_locations(client_id: str, api_platform: str = "Windows") -> List[CloudSaveLocation]:
    """Fetch cloud save locations from GOG's remote config API.

    Returns an empty list if cloud saves are not enabled for this game or the
    config can't be fetched.
    """
    url = f"{GOG_REMOTE_CONFIG_URL}/components/galaxy_client/clients/{client_id}?component_version=2.0.45"
    try:
        request = Request(url)
        request.get()
        data = request.json
    except (HTTPError, ValueError) as ex:
        logger.error("Failed to get remote config for client %s: %s", client_id, ex)
        return []

    content = data.get("content") if isinstance(data, dict) else None
    if not content:
        logger.warning("No 'content' field in remote config response")
        return []

    platform_data = content.get(api_platform)
    if not platform_data:
        for available_platform, available_data in content.items():
            if available_platform.lower() == api_platform.lower():
                platform_data = available_data
                break
    cloud_storage = (platform_data or {}).get("cloudStorage") or {}
    if not cloud_storage.get("enabled"):
        logger.info("Cloud storage not enabled for client %s platform %s", client_id, api_platform)
        return []

    locations = []
    for loc in cloud_storage.get("locations") or []:
        if not loc.get("location"):
            logger.warning("Skipping save location with an empty path: %s", loc)
            continue
        locations.append(CloudSaveLocation(name=loc.get("name", DEFAULT_LOCATION_NAME), location=loc["location"]))
    logger.info("Found %d save location(s) for client %s", len(locations), client_id)
    return locations


def get_default_location(client_id: str) -> CloudSaveLocation:
    """Location Galaxy uses when the game declares none"""
    return CloudSaveLocation(DEFAULT_LOCATION_NAME, DEFAULT_LOCATION_TEMPLATE.format(client_id=client_id))


# GOG save path variable mapping
GOG_VARIABLE_MAP_LINUX_NATIVE = {
    "INSTALL": "",  # Set per game
    "DOCUMENTS": str(Path.home() / "Documents"),
    "APPLICATION_DATA_LOCAL": str(Path.home() / ".local" / "share"),
    "APPLICATION_DATA_LOCAL_LOW": str(Path.home() / ".local" / "share"),
    "APPLICATION_DATA_ROAMING": str(Path.home() / ".config"),
    "SAVED_GAMES": str(Path.home() / ".local" / "share"),
    "APPLICATION_SUPPORT": "",
}

# Windows env vars, resolved later inside the Wine prefix
GOG_VARIABLE_MAP_WINE = {
    "INSTALL": "",  # Set per game
    "DOCUMENTS": "%USERPROFILE%\\Documents",
    "SAVED_GAMES": "%USERPROFILE%\\Saved Games",
    "APPLICATION_DATA_LOCAL": "%LOCALAPPDATA%",
    "APPLICATION_DATA_LOCAL_LOW": "%APPDATA%\\..\\LocalLow",
    "APPLICATION_DATA_ROAMING": "%APPDATA%",
    "APPLICATION_SUPPORT": "",
}


def resolve_save_path(
    location: CloudSaveLocation,
    install_path: str,
    is_native: bool = False,
    wine_prefix: Optional[str] = None,
    wine_user: Optional[str] = None,
) -> Optional[str]:
    """Resolve a GOG cloud save location to an absolute filesystem path.

    Replaces GOG variables (<?INSTALL?>, <?DOCUMENTS?>, etc.) with
    actual filesystem paths. Returns None if a Windows path has no Wine
    prefix to resolve into.
    """
    var_map = GOG_VARIABLE_MAP_LINUX_NATIVE.copy() if is_native else GOG_VARIABLE_MAP_WINE.copy()
    var_map["INSTALL"] = install_path

    def replace_var(match: re.Match) -> str:
        var_name = match.group(1)
        resolved = var_map.get(var_name)
        if resolved is None:
            logger.warning("Unknown GOG save path variable: %s", var_name)
            return var_name
        return resolved

    resolved = re.sub(r"<\?(\w+)\?>", replace_var, location.location)

    if is_native:
        resolved = os.path.expandvars(os.path.expanduser(resolved))
        return os.path.normpath(resolved)

    if not wine_prefix:
        logger.error("Wine prefix required for resolving Windows save paths")
        return None
    if not wine_user:
        wine_user = os.environ.get("USER", "steamuser")

    wine_users = os.path.join(wine_prefix, "drive_c", "users", wine_user)
    resolved = resolved.replace("\\", "/")
    resolved = resolved.replace("%USERPROFILE%", wine_users)
    resolved = resolved.replace("%LOCALAPPDATA%", os.path.join(wine_users, "AppData", "Local"))
    resolved = resolved.replace("%APPDATA%", os.path.join(wine_users, "AppData", "Roaming"))
    return os.path.normpath(resolved)
