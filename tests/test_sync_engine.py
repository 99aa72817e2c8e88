import datetime
import json
import os
import shutil
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

from gamesync.exceptions import CloudStorageError, SyncInProgressError
from gamesync.savesync.catalog import (
    DELETION_MD5,
    SaveFile,
    compute_gzip_md5,
    filter_remote_entries,
    format_timestamp,
)
from gamesync.savesync.classifier import SyncAction
from gamesync.savesync.engine import PREFER_DOWNLOAD, PREFER_UPLOAD, SaveSyncEngine
from gamesync.savesync.guard import ActiveSyncGuard
from gamesync.savesync.watermarks import SyncTimestampStore, get_scope_key
from gamesync.util.http import HTTPError


class MemoryStorage:
    """Cloud store keeping files in a dict of name -> (data, mtime)"""

    def __init__(self):
        self.files = {}
        self.deleted = set()
        self.failing = set()
        self.uploads = []
        self.downloads = []

    def put(self, name, data, mtime):
        self.files[name] = (data, mtime)

    def list_files(self, dir_name):
        files = []
        for name, (data, mtime) in self.files.items():
            if not name.startswith(dir_name + "/"):
                continue
            md5 = DELETION_MD5 if name in self.deleted else compute_gzip_md5(data)
            files.append(
                SaveFile(
                    relative_path=name[len(dir_name) + 1:],
                    md5=md5,
                    update_time=format_timestamp(mtime),
                    update_ts=mtime,
                )
            )
        return files

    def upload_file(self, save_file, dir_name):
        if save_file.relative_path in self.failing:
            return False
        with open(save_file.absolute_path, "rb") as local_file:
            self.put("%s/%s" % (dir_name, save_file.relative_path), local_file.read(), save_file.update_ts)
        self.uploads.append(save_file.relative_path)
        return True

    def download_file(self, save_file, dir_name):
        if save_file.relative_path in self.failing:
            raise HTTPError("Service unavailable", code=503)
        data, mtime = self.files["%s/%s" % (dir_name, save_file.relative_path)]
        os.makedirs(os.path.dirname(save_file.absolute_path), exist_ok=True)
        with open(save_file.absolute_path, "wb") as local_file:
            local_file.write(data)
        os.utime(save_file.absolute_path, (mtime, mtime))
        self.downloads.append(save_file.relative_path)
        return True


class ServerClockStorage(MemoryStorage):
    """Cloud store stamping uploads with its own clock, with sub-second precision"""

    def __init__(self, server_time):
        super().__init__()
        self.server_time = server_time

    def upload_file(self, save_file, dir_name):
        with open(save_file.absolute_path, "rb") as local_file:
            self.put("%s/%s" % (dir_name, save_file.relative_path), local_file.read(), self.server_time)
        self.uploads.append(save_file.relative_path)
        return True

    def list_files(self, dir_name):
        entries = [
            {
                "name": name,
                "hash": compute_gzip_md5(data),
                "last_modified": datetime.datetime.fromtimestamp(mtime, tz=datetime.timezone.utc).isoformat(),
            }
            for name, (data, mtime) in self.files.items()
        ]
        return filter_remote_entries(entries, dir_name)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.save_dir = os.path.join(self.tmp_dir, "saves")
        self.timestamps = SyncTimestampStore(os.path.join(self.tmp_dir, "timestamps.json"))
        self.engine = SaveSyncEngine(self.timestamps, max_workers=2)
        self.storage = MemoryStorage()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def write_local(self, name, data, mtime):
        path = os.path.join(self.save_dir, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as save_file:
            save_file.write(data)
        os.utime(path, (mtime, mtime))
        return path

    def sync(self, **kwargs):
        return self.engine.sync_location("GOG_1", self.save_dir, "saves", self.storage, **kwargs)


class TestSyncTimestampStore(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmp_dir, "timestamps.json")

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def test_defaults_to_zero(self):
        self.assertEqual(SyncTimestampStore(self.path).get_sync_timestamp("GOG_1", "saves"), 0)

    def test_timestamps_are_saved(self):
        store = SyncTimestampStore(self.path)
        self.assertTrue(store.set_sync_timestamp("GOG_1", "saves", 1000))
        with open(self.path, encoding="utf-8") as timestamps_file:
            self.assertEqual(json.load(timestamps_file), {"GOG_1_saves": "1000"})
        self.assertEqual(SyncTimestampStore(self.path).get_sync_timestamp("GOG_1", "saves"), 1000)

    def test_timestamps_never_move_backwards(self):
        store = SyncTimestampStore(self.path)
        store.set_sync_timestamp("GOG_1", "saves", 1000)
        self.assertFalse(store.set_sync_timestamp("GOG_1", "saves", 500))
        self.assertEqual(store.get_sync_timestamp("GOG_1", "saves"), 1000)

    def test_locations_are_independent(self):
        store = SyncTimestampStore(self.path)
        store.set_sync_timestamp("GOG_1", "saves", 1000)
        self.assertEqual(store.get_sync_timestamp("GOG_1", "config"), 0)
        self.assertEqual(get_scope_key("GOG_1", "config"), "GOG_1_config")

    def test_corrupt_file(self):
        with open(self.path, "w", encoding="utf-8") as timestamps_file:
            timestamps_file.write("{not json")
        store = SyncTimestampStore(self.path)
        self.assertEqual(len(store), 0)

    def test_invalid_value(self):
        with open(self.path, "w", encoding="utf-8") as timestamps_file:
            json.dump({"GOG_1_saves": "soon", "GOG_2_saves": "12.7"}, timestamps_file)
        store = SyncTimestampStore(self.path)
        self.assertEqual(store.get_sync_timestamp("GOG_1", "saves"), 0)
        self.assertEqual(store.get_sync_timestamp("GOG_2", "saves"), 12)


class TestActiveSyncGuard(unittest.TestCase):
    def test_single_sync_per_game(self):
        guard = ActiveSyncGuard()
        self.assertTrue(guard.start_sync("GOG_1"))
        self.assertFalse(guard.start_sync("GOG_1"))
        self.assertTrue(guard.start_sync("GOG_2"))
        guard.end_sync("GOG_1")
        self.assertFalse(guard.is_syncing("GOG_1"))
        self.assertTrue(guard.start_sync("GOG_1"))

    def test_hold_releases_on_error(self):
        guard = ActiveSyncGuard()
        with self.assertRaises(RuntimeError):
            with guard.hold("GOG_1"):
                self.assertTrue(guard.is_syncing("GOG_1"))
                raise RuntimeError("boom")
        self.assertFalse(guard.is_syncing("GOG_1"))

    def test_hold_refuses_concurrent_sync(self):
        guard = ActiveSyncGuard()
        with guard.hold("GOG_1"):
            with self.assertRaises(SyncInProgressError):
                with guard.hold("GOG_1"):
                    pass
        self.assertFalse(guard.is_syncing("GOG_1"))


class TestTrivialCases(EngineTestCase):
    def test_empty_cloud_uploads_everything(self):
        self.write_local("save1.dat", b"one", 100)
        result = self.sync()
        self.assertEqual(result.action, SyncAction.UPLOAD)
        self.assertEqual(result.uploaded, ["save1.dat"])
        self.assertIn("saves/save1.dat", self.storage.files)
        self.assertGreater(result.timestamp, 0)
        self.assertEqual(self.timestamps.get_sync_timestamp("GOG_1", "saves"), result.timestamp)

    def test_empty_local_downloads_everything(self):
        self.storage.put("saves/save1.dat", b"one", 200)
        result = self.sync()
        self.assertEqual(result.action, SyncAction.DOWNLOAD)
        with open(os.path.join(self.save_dir, "save1.dat"), "rb") as save_file:
            self.assertEqual(save_file.read(), b"one")
        self.assertEqual(os.path.getmtime(os.path.join(self.save_dir, "save1.dat")), 200)

    def test_nothing_anywhere(self):
        result = self.sync()
        self.assertEqual(result.action, SyncAction.NONE)
        self.assertTrue(os.path.isdir(self.save_dir))
        self.assertGreater(self.timestamps.get_sync_timestamp("GOG_1", "saves"), 0)

    def test_only_deleted_entries_in_cloud(self):
        self.storage.put("saves/gone.dat", b"", 200)
        self.storage.deleted.add("saves/gone.dat")
        result = self.sync()
        self.assertEqual(result.action, SyncAction.NONE)
        self.assertEqual(self.storage.downloads, [])
        self.assertFalse(os.path.exists(os.path.join(self.save_dir, "gone.dat")))


class TestClassifiedSync(EngineTestCase):
    def test_conflict_uploads_newer_local(self):
        self.timestamps.set_sync_timestamp("GOG_1", "saves", 100)
        self.write_local("save1.dat", b"local", 300)
        self.storage.put("saves/save1.dat", b"remote", 150)
        result = self.sync()
        self.assertEqual(result.action, SyncAction.CONFLICT)
        self.assertEqual(result.uploaded, ["save1.dat"])
        self.assertEqual(result.downloaded, [])
        self.assertEqual(self.storage.files["saves/save1.dat"][0], b"local")

    def test_second_sync_transfers_nothing(self):
        self.write_local("save1.dat", b"local", 100)
        self.storage.put("saves/save2.dat", b"remote", 200)
        self.sync()
        self.storage.uploads.clear()
        self.storage.downloads.clear()
        result = self.sync()
        self.assertEqual(result.action, SyncAction.NONE)
        self.assertEqual(self.storage.uploads, [])
        self.assertEqual(self.storage.downloads, [])

    def test_sub_second_server_dates_do_not_trigger_downloads(self):
        self.storage = ServerClockStorage(1000.3)
        self.write_local("save1.dat", b"local", 500)
        with patch("gamesync.savesync.engine.time.time", return_value=1000.7):
            first = self.sync()
        self.assertEqual(first.action, SyncAction.UPLOAD)
        self.assertEqual(self.timestamps.get_sync_timestamp("GOG_1", "saves"), 1000)
        self.assertEqual(self.storage.list_files("saves")[0].update_ts, 1000)
        second = self.sync()
        self.assertEqual(second.action, SyncAction.NONE)
        self.assertEqual(self.storage.downloads, [])
        self.assertEqual(self.storage.uploads, ["save1.dat"])

    def test_forced_download(self):
        self.timestamps.set_sync_timestamp("GOG_1", "saves", 1000)
        self.write_local("save1.dat", b"local", 300)
        self.storage.put("saves/save1.dat", b"remote", 150)
        result = self.sync(preferred_action=PREFER_DOWNLOAD)
        self.assertEqual(result.action, SyncAction.DOWNLOAD)
        with open(os.path.join(self.save_dir, "save1.dat"), "rb") as save_file:
            self.assertEqual(save_file.read(), b"remote")

    def test_forced_upload(self):
        self.timestamps.set_sync_timestamp("GOG_1", "saves", 1000)
        self.write_local("save1.dat", b"local", 100)
        self.storage.put("saves/save1.dat", b"remote", 150)
        result = self.sync(preferred_action=PREFER_UPLOAD)
        self.assertEqual(result.action, SyncAction.UPLOAD)
        self.assertEqual(self.storage.files["saves/save1.dat"][0], b"local")

    def test_other_locations_are_ignored(self):
        self.write_local("save1.dat", b"local", 100)
        self.storage.put("config/settings.ini", b"remote", 200)
        result = self.sync()
        self.assertEqual(result.action, SyncAction.UPLOAD)
        self.assertFalse(os.path.exists(os.path.join(self.save_dir, "settings.ini")))


class TestFailures(EngineTestCase):
    def test_failed_transfer_keeps_timestamp(self):
        self.timestamps.set_sync_timestamp("GOG_1", "saves", 100)
        self.write_local("ok.dat", b"local", 300)
        self.write_local("bad.dat", b"local", 300)
        self.storage.put("saves/other.dat", b"x", 50)
        self.storage.failing.add("bad.dat")
        result = self.sync()
        self.assertEqual(result.uploaded, ["ok.dat"])
        self.assertEqual(result.failed, ["bad.dat"])
        self.assertFalse(result.completed)
        self.assertEqual(result.timestamp, 0)
        self.assertEqual(self.timestamps.get_sync_timestamp("GOG_1", "saves"), 100)

    def test_download_error_is_a_failed_transfer(self):
        self.storage.put("saves/save1.dat", b"remote", 200)
        self.storage.failing.add("save1.dat")
        result = self.sync()
        self.assertEqual(result.failed, ["save1.dat"])
        self.assertEqual(self.timestamps.get_sync_timestamp("GOG_1", "saves"), 0)

    def test_listing_error(self):
        storage = MagicMock()
        storage.list_files.side_effect = HTTPError("Server error", code=500)
        with self.assertRaises(CloudStorageError):
            self.engine.sync_location("GOG_1", self.save_dir, "saves", storage)
        self.assertEqual(self.timestamps.get_sync_timestamp("GOG_1", "saves"), 0)

    def test_cancelled_sync_keeps_timestamp(self):
        self.write_local("save1.dat", b"local", 100)
        stop_request = threading.Event()
        stop_request.set()
        result = self.sync(stop_request=stop_request)
        self.assertEqual(self.storage.uploads, [])
        self.assertEqual(result.failed, ["save1.dat"])
        self.assertEqual(self.timestamps.get_sync_timestamp("GOG_1", "saves"), 0)


class TestSyncGame(EngineTestCase):
    def test_sync_game_runs_every_location(self):
        other_dir = os.path.join(self.tmp_dir, "config")
        self.write_local("save1.dat", b"local", 100)
        results = self.engine.sync_game(
            "GOG_1", [("saves", self.save_dir), ("config", other_dir)], self.storage
        )
        self.assertEqual([result.action for result in results], [SyncAction.UPLOAD, SyncAction.NONE])
        self.assertFalse(self.engine.guard.is_syncing("GOG_1"))

    def test_sync_game_refuses_concurrent_sync(self):
        self.engine.guard.start_sync("GOG_1")
        with self.assertRaises(SyncInProgressError):
            self.engine.sync_game("GOG_1", [("saves", self.save_dir)], self.storage)
        self.assertEqual(self.storage.uploads, [])

    def test_timestamp_is_recent(self):
        self.write_local("save1.dat", b"local", 100)
        before = int(time.time())
        result = self.sync()
        self.assertGreaterEqual(result.timestamp, before)
