"""
Tests for src/modshare/cache/package_cache.py

Covers:
- store/lookup and content-addressed layout
- owner counting across store, adopt and release
- startup reload and partial-file cleanup
"""

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from src.modshare.cache.package_cache import PackageCache
from src.modshare.errors import CacheWriteError
from src.modshare.fs.hashing import compute_bytes_hash


class TestPackageCache(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        self.cache = PackageCache(self.base / "cache")
        self.source = self.base / "export.pmp"
        self.source.write_bytes(b"package bytes")
        self.digest = compute_bytes_hash(b"package bytes")

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_store_and_lookup(self):
        record = self.cache.store(self.digest.lower(), self.source)
        self.assertEqual(record.digest, self.digest)
        self.assertEqual(record.local_path.name, f"{self.digest}.pmp")
        self.assertEqual(record.local_path.read_bytes(), b"package bytes")
        self.assertEqual(self.cache.lookup(self.digest), record)
        self.assertTrue(self.cache.contains(self.digest.lower()))
        self.assertEqual(record.size, len(b"package bytes"))

    def test_lookup_missing(self):
        self.assertIsNone(self.cache.lookup("DEADBEEF"))

    def test_store_existing_does_not_read_source(self):
        first = self.cache.store(self.digest, self.source)
        self.source.unlink()
        second = self.cache.store(self.digest, self.source)
        self.assertEqual(first, second)
        self.assertEqual(self.cache.owner_count(self.digest), 2)

    def test_release_deletes_file_with_last_owner(self):
        record = self.cache.store(self.digest, self.source)
        self.cache.store(self.digest, self.source)

        self.assertFalse(self.cache.release(record))
        self.assertTrue(record.local_path.exists())
        self.assertTrue(self.cache.release(record))
        self.assertFalse(record.local_path.exists())
        self.assertIsNone(self.cache.lookup(self.digest))

    def test_release_unknown_record(self):
        record = self.cache.store(self.digest, self.source)
        self.cache.release(record)
        self.assertFalse(self.cache.release(record))

    def test_adopt_moves_partial(self):
        partial = self.cache.partial_path(self.digest)
        self.assertTrue(partial.name.startswith("."))
        partial.write_bytes(b"package bytes")

        record = self.cache.adopt(self.digest, partial)
        self.assertFalse(partial.exists())
        self.assertEqual(record.local_path.read_bytes(), b"package bytes")

    def test_adopt_existing_consumes_partial(self):
        self.cache.store(self.digest, self.source)
        partial = self.cache.partial_path(self.digest)
        partial.write_bytes(b"package bytes")

        self.cache.adopt(self.digest, partial)
        self.assertFalse(partial.exists())
        self.assertEqual(self.cache.owner_count(self.digest), 2)

    def test_store_failure_raises_cache_write_error(self):
        with patch("src.modshare.cache.package_cache.shutil.copyfile", side_effect=OSError("disk full")):
            with self.assertRaises(CacheWriteError) as ctx:
                self.cache.store(self.digest, self.source)
        self.assertEqual(ctx.exception.digest, self.digest)
        self.assertIsNone(self.cache.lookup(self.digest))
        self.assertEqual(list((self.base / "cache").iterdir()), [])

    def test_vanished_file_drops_record(self):
        record = self.cache.store(self.digest, self.source)
        record.local_path.unlink()
        self.assertIsNone(self.cache.lookup(self.digest))
        self.assertEqual(self.cache.entries(), [])

    def test_reload_owns_existing_files_and_purges_partials(self):
        record = self.cache.store(self.digest, self.source)
        leftover = self.cache.partial_path("ABCD")
        leftover.write_bytes(b"half")

        reopened = PackageCache(self.base / "cache")
        self.assertFalse(leftover.exists())
        self.assertEqual(reopened.lookup(self.digest), record)
        self.assertEqual(reopened.owner_count(self.digest), 1)

        # An operation reusing the file takes a second ownership and must not delete it
        reopened.store(self.digest, self.source)
        self.assertFalse(reopened.release(record))
        self.assertTrue(record.local_path.exists())


if __name__ == "__main__":
    unittest.main()
