"""Tests for gamesync.services.gog_cloud and the GOG cloud save platform"""

import gzip
import hashlib
import json
import os
import shutil
import tempfile
import unittest
import zlib
from unittest.mock import MagicMock, patch

from gamesync.container import Container
from gamesync.credentials import Credentials, Err, Ok
from gamesync.exceptions import AuthenticationError, CloudStorageError
from gamesync.savesync.catalog import SaveFile
from gamesync.services import gog as gog_service
from gamesync.services import gog_cloud
from gamesync.services.gog import GOGCloudSavePlatform
from gamesync.services.gog_cloud import (
    DEFAULT_LOCATION_NAME,
    CloudSaveLocation,
    GOGCloudStorageClient,
    RemoteConfigCache,
    fetch_cloud_save_locations,
    get_default_location,
    get_game_client_credentials,
    get_game_scoped_token,
    read_info_file,
    resolve_save_path,
)
from gamesync.util.http import HTTPError


class TestGOGCloudStorageClient(unittest.TestCase):
    def setUp(self):
        self.client = GOGCloudStorageClient(user_id="12345", client_id="client", access_token="token")
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def test_list_files(self):
        mock_req = MagicMock()
        mock_req.json = [
            {"name": "saves/slot1.sav", "hash": "abc", "last_modified": "1970-01-01T00:03:20+00:00"},
            {"name": "config/game.ini", "hash": "def", "last_modified": "1970-01-01T00:03:20+00:00"},
        ]
        with patch.object(gog_cloud, "Request", return_value=mock_req) as request_class:
            files = self.client.list_files("saves")
        self.assertEqual([f.relative_path for f in files], ["slot1.sav"])
        self.assertEqual(files[0].update_ts, 200)
        url = request_class.call_args[0][0]
        self.assertEqual(url, "https://cloudstorage.gog.com/v1/12345/client")
        headers = request_class.call_args[1]["headers"]
        self.assertEqual(headers["Authorization"], "Bearer token")
        self.assertIn("GOGGalaxyCommunicationService", headers["User-Agent"])

    def test_list_files_without_container(self):
        mock_req = MagicMock()
        mock_req.get.side_effect = HTTPError("Not found", code=404)
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            self.assertEqual(self.client.list_files("saves"), [])

    def test_list_files_error(self):
        mock_req = MagicMock()
        mock_req.get.side_effect = HTTPError("Server error", code=500)
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            with self.assertRaises(HTTPError):
                self.client.list_files("saves")

    def test_list_files_bad_json(self):
        mock_req = MagicMock()
        type(mock_req).json = property(lambda self: json.loads("{oops"))
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            with self.assertRaises(CloudStorageError):
                self.client.list_files("saves")

    def test_file_url_is_quoted(self):
        save_file = SaveFile(relative_path="slot 1/game.sav")
        self.assertEqual(
            self.client.get_file_url(save_file, "saves"),
            "https://cloudstorage.gog.com/v1/12345/client/saves/slot%201/game.sav",
        )

    def test_upload_file(self):
        path = os.path.join(self.tmp_dir, "slot1.sav")
        with open(path, "wb") as save_file:
            save_file.write(b"progress")
        save_file = SaveFile("slot1.sav", absolute_path=path, update_time="1970-01-01T00:03:20+00:00")
        mock_req = MagicMock()
        with patch.object(gog_cloud, "Request", return_value=mock_req) as request_class:
            self.assertTrue(self.client.upload_file(save_file, "saves"))
        compressed = mock_req.put.call_args[0][0]
        self.assertEqual(gzip.decompress(compressed), b"progress")
        headers = request_class.call_args[1]["headers"]
        self.assertEqual(headers["Etag"], hashlib.md5(compressed).hexdigest())
        self.assertEqual(headers["Content-Encoding"], "gzip")
        self.assertEqual(headers["X-Object-Meta-LocalLastModified"], "1970-01-01T00:03:20+00:00")

    def test_upload_failure(self):
        path = os.path.join(self.tmp_dir, "slot1.sav")
        with open(path, "wb") as save_file:
            save_file.write(b"progress")
        mock_req = MagicMock()
        mock_req.put.side_effect = HTTPError("Forbidden", code=403)
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            self.assertFalse(self.client.upload_file(SaveFile("slot1.sav", absolute_path=path), "saves"))

    def test_download_file(self):
        path = os.path.join(self.tmp_dir, "sub", "slot1.sav")
        mock_req = MagicMock()
        mock_req.content = gzip.compress(b"progress")
        mock_req.response_headers = {"X-Object-Meta-LocalLastModified": "1970-01-01T00:03:20+00:00"}
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            self.assertTrue(self.client.download_file(SaveFile("slot1.sav", absolute_path=path), "saves"))
        with open(path, "rb") as save_file:
            self.assertEqual(save_file.read(), b"progress")
        self.assertEqual(os.path.getmtime(path), 200)

    def test_download_not_gzipped(self):
        path = os.path.join(self.tmp_dir, "slot1.sav")
        mock_req = MagicMock()
        mock_req.content = b"plain"
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            self.assertFalse(self.client.download_file(SaveFile("slot1.sav", absolute_path=path), "saves"))
        self.assertFalse(os.path.exists(path))

    def test_download_empty_response(self):
        mock_req = MagicMock()
        mock_req.content = b""
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            self.assertFalse(self.client.download_file(SaveFile("slot1.sav", absolute_path="/x"), "saves"))


class TestGetGameClientCredentials(unittest.TestCase):
    def test_success(self):
        builds_request = MagicMock()
        builds_request.json = {"items": [{"link": "https://cdn.gog.com/manifest.json"}]}
        manifest_request = MagicMock()
        manifest_request.content = json.dumps({"clientId": "game_client", "clientSecret": "secret"}).encode()
        with patch.object(gog_cloud, "Request", side_effect=[builds_request, manifest_request]):
            self.assertEqual(get_game_client_credentials("12345"), ("game_client", "secret"))

    def test_zlib_compressed_manifest(self):
        builds_request = MagicMock()
        builds_request.json = {"items": [{"urls": [{"url": "https://cdn.gog.com/manifest"}]}]}
        manifest_request = MagicMock()
        manifest_request.content = zlib.compress(json.dumps({"clientId": "game_client"}).encode())
        with patch.object(gog_cloud, "Request", side_effect=[builds_request, manifest_request]):
            self.assertEqual(get_game_client_credentials("12345", "linux"), ("game_client", ""))

    def test_no_builds(self):
        builds_request = MagicMock()
        builds_request.json = {"items": []}
        with patch.object(gog_cloud, "Request", return_value=builds_request):
            with self.assertRaises(AuthenticationError):
                get_game_client_credentials("12345")

    def test_no_client_id(self):
        builds_request = MagicMock()
        builds_request.json = {"items": [{"link": "https://cdn.gog.com/manifest.json"}]}
        manifest_request = MagicMock()
        manifest_request.content = b"{}"
        with patch.object(gog_cloud, "Request", side_effect=[builds_request, manifest_request]):
            with self.assertRaises(AuthenticationError):
                get_game_client_credentials("12345")


class TestGetGameScopedToken(unittest.TestCase):
    def test_success(self):
        mock_req = MagicMock()
        mock_req.json = {"user_id": "42", "access_token": "game_token"}
        with patch.object(gog_cloud, "Request", return_value=mock_req) as request_class:
            token = get_game_scoped_token("refresh", "client", "secret")
        self.assertEqual(token["access_token"], "game_token")
        url = request_class.call_args[0][0]
        self.assertIn("grant_type=refresh_token", url)
        self.assertIn("without_new_session=1", url)

    def test_incomplete_answer(self):
        mock_req = MagicMock()
        mock_req.json = {"access_token": "game_token"}
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            with self.assertRaises(AuthenticationError):
                get_game_scoped_token("refresh", "client", "secret")


class TestSaveLocations(unittest.TestCase):
    def get_config_request(self, content):
        mock_req = MagicMock()
        mock_req.json = {"content": content}
        return mock_req

    def test_fetch_locations(self):
        mock_req = self.get_config_request(
            {
                "Windows": {
                    "cloudStorage": {
                        "enabled": True,
                        "locations": [
                            {"name": "saves", "location": "<?DOCUMENTS?>/Game/Saves"},
                            {"name": "broken", "location": ""},
                        ],
                    }
                }
            }
        )
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            locations = fetch_cloud_save_locations("client")
        self.assertEqual(locations, [CloudSaveLocation("saves", "<?DOCUMENTS?>/Game/Saves")])

    def test_platform_name_is_case_insensitive(self):
        mock_req = self.get_config_request(
            {"linux": {"cloudStorage": {"enabled": True, "locations": [{"location": "<?INSTALL?>/saves"}]}}}
        )
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            locations = fetch_cloud_save_locations("client", "Linux")
        self.assertEqual(locations, [CloudSaveLocation(DEFAULT_LOCATION_NAME, "<?INSTALL?>/saves")])

    def test_cloud_storage_disabled(self):
        mock_req = self.get_config_request({"Windows": {"cloudStorage": {"enabled": False}}})
        with patch.object(gog_cloud, "Request", return_value=mock_req):
            self.assertEqual(fetch_cloud_save_locations("client"), [])

    def test_request_failure(self):
        with patch.object(gog_cloud, "Request", side_effect=HTTPError("fail")):
            self.assertEqual(fetch_cloud_save_locations("client"), [])

    def test_locations_are_cached_per_client(self):
        cache = RemoteConfigCache()
        locations = [CloudSaveLocation("saves", "<?INSTALL?>/saves")]
        with patch.object(gog_cloud, "fetch_cloud_save_locations", return_value=locations) as fetch:
            self.assertEqual(cache.get_locations("client", "windows"), locations)
            self.assertEqual(cache.get_locations("client", "windows"), locations)
            cache.get_locations("client", "linux")
        self.assertEqual(fetch.call_count, 2)
        fetch.assert_any_call("client", "Windows")
        fetch.assert_any_call("client", "Linux")

    def test_empty_answers_are_not_cached(self):
        cache = RemoteConfigCache()
        with patch.object(gog_cloud, "fetch_cloud_save_locations", return_value=[]) as fetch:
            cache.get_locations("client")
            cache.get_locations("client")
        self.assertEqual(fetch.call_count, 2)
        self.assertEqual(len(cache), 0)

    def test_default_location(self):
        location = get_default_location("client")
        self.assertEqual(location.name, "__default")
        self.assertEqual(location.location, "%LOCALAPPDATA%/GOG.com/Galaxy/Applications/client/Storage/Shared/Files")


class TestResolveSavePath(unittest.TestCase):
    def test_native_install_path(self):
        location = CloudSaveLocation("saves", "<?INSTALL?>/saves")
        self.assertEqual(resolve_save_path(location, "/games/test", is_native=True), "/games/test/saves")

    def test_wine_documents(self):
        location = CloudSaveLocation("saves", "<?DOCUMENTS?>/My Games/Test")
        path = resolve_save_path(location, "/games/test", wine_prefix="/prefix", wine_user="player")
        self.assertEqual(path, "/prefix/drive_c/users/player/Documents/My Games/Test")

    def test_wine_default_location(self):
        path = resolve_save_path(get_default_location("client"), "/games/test", wine_prefix="/prefix", wine_user="player")
        self.assertEqual(
            path,
            "/prefix/drive_c/users/player/AppData/Local/GOG.com/Galaxy/Applications/client/Storage/Shared/Files",
        )

    def test_wine_without_prefix(self):
        location = CloudSaveLocation("saves", "<?DOCUMENTS?>/Test")
        self.assertIsNone(resolve_save_path(location, "/games/test"))

    def test_default_wine_user(self):
        location = CloudSaveLocation("saves", "<?APPLICATION_DATA_ROAMING?>/Test")
        with patch.dict(os.environ, {"USER": "someone"}):
            path = resolve_save_path(location, "/games/test", wine_prefix="/prefix")
        self.assertEqual(path, "/prefix/drive_c/users/someone/AppData/Roaming/Test")


class TestReadInfoFile(unittest.TestCase):
    def test_info_file_in_game_dir(self):
        with tempfile.TemporaryDirectory() as install_path:
            os.makedirs(os.path.join(install_path, "game"))
            with open(os.path.join(install_path, "game", "goggame-123.info"), "w", encoding="utf-8") as info_file:
                json.dump({"clientId": "installed_client"}, info_file)
            self.assertEqual(read_info_file(install_path, "123")["clientId"], "installed_client")
            self.assertEqual(read_info_file(install_path, "456"), {})


class TestGOGCloudSavePlatform(unittest.TestCase):
    def setUp(self):
        self.credentials = MagicMock()
        self.credentials.get_credentials.return_value = Ok(Credentials("account_token", refresh_token="refresh"))
        self.remote_config = MagicMock()
        self.platform = GOGCloudSavePlatform(MagicMock(), self.credentials, remote_config=self.remote_config)
        self.container = Container(
            "GOG_123",
            config={
                "game": {"name": "Test", "install_path": "/games/test"},
                "wine": {"prefix": "/prefix", "user": "player"},
            },
        )

    def test_cloud_storage(self):
        self.remote_config.get_locations.return_value = [CloudSaveLocation("saves", "<?DOCUMENTS?>/Test")]
        with patch.object(gog_service, "read_info_file", return_value={}), patch.object(
            gog_service, "get_game_client_credentials", return_value=("client", "secret")
        ), patch.object(
            gog_service, "get_game_scoped_token", return_value={"user_id": 42, "access_token": "game_token"}
        ) as get_token:
            storage_client, locations = self.platform.get_cloud_storage(self.container)
        get_token.assert_called_once_with("refresh", "client", "secret")
        self.assertEqual(storage_client.user_id, "42")
        self.assertEqual(storage_client.access_token, "game_token")
        self.assertEqual(locations, [("saves", "/prefix/drive_c/users/player/Documents/Test")])
        self.remote_config.get_locations.assert_called_once_with("client", "windows")

    def test_default_location_when_none_declared(self):
        self.remote_config.get_locations.return_value = []
        with patch.object(gog_service, "read_info_file", return_value={}), patch.object(
            gog_service, "get_game_client_credentials", return_value=("client", "secret")
        ), patch.object(gog_service, "get_game_scoped_token", return_value={"user_id": 42, "access_token": "t"}):
            _storage_client, locations = self.platform.get_cloud_storage(self.container)
        self.assertEqual([name for name, _path in locations], ["__default"])

    def test_installed_client_id_wins(self):
        with patch.object(gog_service, "read_info_file", return_value={"clientId": "installed"}), patch.object(
            gog_service, "get_game_client_credentials", return_value=("manifest", "secret")
        ):
            self.assertEqual(self.platform.get_client_credentials(self.container), ("installed", "secret"))

    def test_not_logged_in(self):
        self.credentials.get_credentials.return_value = Err("No gog token available")
        with self.assertRaises(AuthenticationError):
            self.platform.get_cloud_storage(self.container)

    def test_applies_to_gog_containers(self):
        self.assertTrue(self.platform.applies_to(self.container))
        self.assertFalse(self.platform.applies_to(Container("STEAM_220", config={})))
