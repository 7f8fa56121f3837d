"""
Tests for src/modshare/upload

Covers:
- Digest dedup index (first folder wins, duplicates remembered)
- Package sources: fresh export vs. reusable local backup, metadata entries
- UploadCoordinator: one transfer per unique digest, size limit, hard
  failures (a locally missing package fails the whole batch), validation,
  busy guard and release of cache records it created
"""

import asyncio
import json
import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from src.modshare.cache.package_cache import PackageCache
from src.modshare.errors import BusyError, PackagePreparationError
from src.modshare.fs.storage import StorageManager
from src.modshare.host.capability import ModMetadata
from src.modshare.host.directory_host import DirectoryModHost
from src.modshare.transfer.local_channel import LocalTransferChannel
from src.modshare.upload.coordinator import UploadCoordinator
from src.modshare.upload.dedup import DedupResult, DigestIndex
from src.modshare.upload.sources import PackageSourceResolver, build_package_entry


def _write_mod(root: Path, folder: str, *, name: str, payload: bytes = b"payload") -> Path:
    mod_dir = root / folder
    mod_dir.mkdir(parents=True)
    (mod_dir / "meta.json").write_text(json.dumps({"Name": name, "Author": "Ann"}), encoding="utf-8")
    (mod_dir / "data.bin").write_bytes(payload)
    return mod_dir


class TestDigestIndex(unittest.TestCase):
    def test_first_folder_wins(self):
        index = DigestIndex()
        first = index.check_and_register("aa", "Alpha")
        second = index.check_and_register("AA", "Beta")
        third = index.check_and_register("BB", "Gamma")

        self.assertEqual(first.result, DedupResult.NEW)
        self.assertEqual(second.result, DedupResult.DUPLICATE)
        self.assertEqual(second.first_folder, "Alpha")
        self.assertEqual(third.result, DedupResult.NEW)
        self.assertEqual(index.digests, ["AA", "BB"])
        self.assertEqual(index.folders_for("aa"), ["Alpha", "Beta"])
        self.assertEqual(index.stats(), {"total_checked": 3, "duplicates_found": 1, "unique_digests": 2})

    def test_unknown_digest(self):
        index = DigestIndex()
        self.assertFalse(index.is_known("CC"))
        self.assertIsNone(index.first_folder("CC"))
        self.assertEqual(index.folders_for("CC"), [])


class TestBuildPackageEntry(unittest.TestCase):
    def test_falls_back_to_folder_name(self):
        entry = build_package_entry("AA", "Folder", None)
        self.assertEqual(entry.display_name, "Folder")
        self.assertIsNone(entry.author)

    def test_trims_metadata(self):
        meta = ModMetadata(name="  Foo  ", author=" ", version="1.0", website=" `https://example.com` ")
        entry = build_package_entry("AA", "Folder", meta, "FD")
        self.assertEqual(entry.display_name, "Foo")
        self.assertIsNone(entry.author)
        self.assertEqual(entry.website, "https://example.com")
        self.assertEqual(entry.folder_digest, "FD")


class TestPackageSourceResolver(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        self.host = DirectoryModHost(self.base / "mods")
        self.storage = StorageManager(self.base / "data")
        self.sources = PackageSourceResolver(host=self.host, storage=self.storage)
        self.mod_dir = _write_mod(self.base / "mods", "Foo", name="Foo")

    def tearDown(self):
        self.temp_dir.cleanup()

    def _age_folder(self, seconds: int = 3600) -> None:
        past = os.stat(self.mod_dir).st_mtime - seconds
        for path in [self.mod_dir, *self.mod_dir.rglob("*")]:
            os.utime(path, (past, past))

    def test_fresh_export_is_temporary(self):
        prepared = self.sources.prepare("Foo")
        self.assertTrue(prepared.temporary)
        self.assertTrue(prepared.package_path.exists())
        self.assertEqual(len(prepared.digest), 40)

        prepared.discard_temporary()
        self.assertFalse(prepared.package_path.exists())

    def test_newer_local_backup_is_reused(self):
        self._age_folder()
        backup = self.sources.save_local_backup("Foo")

        prepared = self.sources.prepare("Foo")
        self.assertFalse(prepared.temporary)
        self.assertEqual(prepared.package_path, backup)

        prepared.discard_temporary()
        self.assertTrue(backup.exists())

    def test_snapshot_ignores_backup(self):
        self._age_folder()
        backup = self.sources.save_local_backup("Foo")
        prepared = self.sources.prepare("Foo", snapshot=True)
        self.assertTrue(prepared.temporary)
        self.assertNotEqual(prepared.package_path, backup)
        prepared.discard_temporary()

    def test_stale_backup_is_ignored(self):
        backup = self.sources.save_local_backup("Foo")
        past = backup.stat().st_mtime - 3600
        os.utime(backup, (past, past))
        prepared = self.sources.prepare("Foo")
        self.assertTrue(prepared.temporary)
        prepared.discard_temporary()

    def test_missing_folder(self):
        with self.assertRaises(PackagePreparationError):
            self.sources.prepare("Nope")

    def test_describe_reads_metadata(self):
        prepared = self.sources.prepare("Foo")
        entry = self.sources.describe(prepared)
        prepared.discard_temporary()
        self.assertEqual(entry.display_name, "Foo")
        self.assertEqual(entry.author, "Ann")
        self.assertEqual(entry.install_folder_name, "Foo")
        self.assertIsNotNone(entry.folder_digest)


class TestUploadCoordinator(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        mods = self.base / "mods"
        # Identical content under two folder names hashes to one package
        _write_mod(mods, "Foo", name="Foo")
        _write_mod(mods, "Foo Copy", name="Foo")
        _write_mod(mods, "Bar", name="Bar", payload=b"other payload")

        self.storage = StorageManager(self.base / "data")
        self.paths = self.storage.ensure_dirs()
        self.cache = PackageCache(self.paths.cache)
        self.sources = PackageSourceResolver(host=DirectoryModHost(mods), storage=self.storage)
        self.relay = LocalTransferChannel(self.base / "relay", "alice")
        self.channel = Mock(wraps=self.relay)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _coordinator(self, **kwargs) -> UploadCoordinator:
        return UploadCoordinator(cache=self.cache, channel=self.channel, sources=self.sources, **kwargs)

    def test_duplicate_folders_upload_once(self):
        progress = []
        report = asyncio.run(self._coordinator().upload_folders(
            ["Foo", "Foo Copy", "Bar", "Foo"], ["bob"], progress=progress.append,
        ))

        self.assertTrue(report.ok)
        self.assertEqual(len(report.entries), 2)
        self.assertEqual(self.channel.upload.call_count, 2)
        foo_digest = report.entries[0].digest
        self.assertEqual(report.folders_by_digest[foo_digest], ["Foo", "Foo Copy"])
        self.assertEqual(len(report.surviving_entries), 2)

        offers = LocalTransferChannel(self.base / "relay", "bob").list_incoming()
        self.assertEqual(sorted(o.digest for o in offers), sorted(report.digests))
        self.assertTrue(progress)
        self.assertEqual(progress[-1].uploaded_bytes, progress[-1].total_bytes)

    def test_created_records_are_released(self):
        report = asyncio.run(self._coordinator().upload_folders(["Foo"], ["bob"]))
        self.assertIsNone(self.cache.lookup(report.digests[0]))
        self.assertEqual(list(self.paths.temp_exports.iterdir()), [])

    def test_records_kept_when_not_releasing(self):
        report = asyncio.run(self._coordinator(release_created=False).upload_folders(["Foo"], ["bob"]))
        self.assertIsNotNone(self.cache.lookup(report.digests[0]))

    def test_existing_cache_records_are_not_released(self):
        prepared = self.sources.prepare("Foo")
        self.cache.store(prepared.digest, prepared.package_path)
        prepared.discard_temporary()

        asyncio.run(self._coordinator().upload_folders(["Foo"], ["bob"]))
        self.assertIsNotNone(self.cache.lookup(prepared.digest))
        self.assertEqual(self.cache.owner_count(prepared.digest), 1)

    def test_too_large_is_skipped_not_failed(self):
        report = asyncio.run(self._coordinator(max_upload_bytes=1).upload_folders(["Foo", "Bar"], ["bob"]))

        self.assertTrue(report.ok)
        self.assertEqual(self.channel.upload.call_count, 0)
        self.assertEqual(sorted(report.skipped_names), ["Bar", "Foo"])
        self.assertEqual(report.surviving_entries, [])

    def test_forbidden_recipient_fails_batch(self):
        self.channel = LocalTransferChannel(self.base / "relay", "alice", forbidden_recipients=["mallory"])
        report = asyncio.run(self._coordinator().upload_folders(["Foo"], ["mallory"]))
        self.assertFalse(report.ok)
        self.assertEqual(report.offending_names, ["Foo"])
        self.assertEqual(report.to_public_dict()["result"]["forbidden"], report.digests)

    def test_locally_missing_package_fails_whole_batch(self):
        prepared = self.sources.prepare("Bar")
        bar_digest = prepared.digest
        prepared.discard_temporary()
        lookup = self.cache.lookup

        with patch.object(self.cache, "lookup", side_effect=lambda d: None if d == bar_digest else lookup(d)):
            report = asyncio.run(self._coordinator().upload_folders(["Foo", "Bar"], ["bob"]))

        foo_digest = report.entries[0].digest
        self.assertFalse(report.ok)
        self.assertEqual(self.channel.upload.call_count, 0)
        self.assertEqual(report.result.locally_missing, {bar_digest})
        self.assertEqual(report.result.failed, {foo_digest})
        self.assertEqual(report.result.succeeded(report.digests), set())
        self.assertEqual(report.surviving_entries, [])
        self.assertEqual(sorted(report.offending_names), ["Bar", "Foo"])

    def test_store_only_offers_nothing(self):
        report = asyncio.run(self._coordinator().upload_folders(["Foo"], ["bob"], store_only=True))
        self.assertTrue(report.ok)
        self.assertEqual(LocalTransferChannel(self.base / "relay", "bob").list_incoming(), [])
        self.assertEqual(self.channel.upload.call_args.args[2], [])

    def test_validation(self):
        coordinator = self._coordinator()
        with self.assertRaises(ValueError):
            asyncio.run(coordinator.upload_folders([" ", ""], ["bob"]))
        with self.assertRaises(ValueError):
            asyncio.run(coordinator.upload_folders(["Foo"], []))
        self.assertFalse(coordinator.busy)

    def test_preparation_failure_uploads_nothing(self):
        coordinator = self._coordinator()
        with self.assertRaises(PackagePreparationError):
            asyncio.run(coordinator.upload_folders(["Foo", "Missing"], ["bob"]))
        self.assertEqual(self.channel.upload.call_count, 0)
        self.assertEqual(self.cache.entries(), [])
        self.assertFalse(coordinator.busy)

    def test_second_batch_is_busy(self):
        gate = threading.Event()
        entered = threading.Event()
        real_prepare = self.sources.prepare

        def slow_prepare(folder, **kwargs):
            entered.set()
            gate.wait(5)
            return real_prepare(folder, **kwargs)

        self.sources.prepare = slow_prepare
        coordinator = self._coordinator()

        async def run_test():
            first = asyncio.create_task(coordinator.upload_folders(["Foo"], ["bob"]))
            while not entered.is_set():
                await asyncio.sleep(0.01)
            self.assertTrue(coordinator.busy)
            with self.assertRaises(BusyError):
                await coordinator.upload_folders(["Bar"], ["bob"])
            gate.set()
            return await first

        report = asyncio.run(run_test())
        self.assertTrue(report.ok)
        self.assertFalse(coordinator.busy)


if __name__ == "__main__":
    unittest.main()
