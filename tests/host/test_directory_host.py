"""
Tests for src/modshare/host/directory_host.py
"""

import json
import tempfile
import unittest
import zipfile
from pathlib import Path

from src.modshare.cancellation import CancellationToken
from src.modshare.errors import OperationCancelled
from src.modshare.fs.archive_zip import create_deterministic_archive
from src.modshare.host.directory_host import DirectoryModHost


class TestDirectoryModHost(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        self.root = self.base / "mods"
        self.host = DirectoryModHost(self.root)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _mod(self, folder: str, meta=None, files=None) -> Path:
        mod_dir = self.root / folder
        mod_dir.mkdir(parents=True, exist_ok=True)
        if meta is not None:
            (mod_dir / "meta.json").write_text(
                meta if isinstance(meta, str) else json.dumps(meta), encoding="utf-8"
            )
        for name, data in (files or {}).items():
            path = mod_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return mod_dir

    def _package(self, files: dict) -> Path:
        source = self.base / "src-pkg"
        for name, data in files.items():
            path = source / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return create_deterministic_archive(source, self.base / "pkg.pmp").zip_path

    def test_list_mods_uses_display_names(self):
        self._mod("Foo", {"Name": "Foo Deluxe", "Author": "Ann"})
        self._mod("Bar")
        self._mod(".hidden")
        self.assertEqual(self.host.list_mods(), {"Bar": "Bar", "Foo": "Foo Deluxe"})

    def test_list_mods_without_root(self):
        self.assertEqual(self.host.list_mods(), {})
        self.assertIsNone(self.host.get_install_root())

    def test_get_metadata(self):
        self._mod("Foo", {"Name": " Foo ", "Author": "Ann", "Version": "1.2", "Website": ""})
        meta = self.host.get_metadata("Foo")
        self.assertEqual(meta.name, "Foo")
        self.assertEqual(meta.author, "Ann")
        self.assertEqual(meta.version, "1.2")
        self.assertIsNone(meta.website)
        self.assertIsNone(self.host.get_metadata("Missing"))

    def test_get_metadata_malformed_raises(self):
        self._mod("Broken", "{not json")
        with self.assertRaises(ValueError):
            self.host.get_metadata("Broken")

    def test_mod_exists_rejects_unsanitized_names(self):
        self._mod("Foo")
        self.assertTrue(self.host.mod_exists("Foo"))
        self.assertFalse(self.host.mod_exists("../Foo"))
        self.assertFalse(self.host.mod_exists(""))

    def test_install_replaces_existing_folder(self):
        self._mod("Foo", files={"old.txt": b"old"})
        package = self._package({"meta.json": b'{"Name": "Foo"}', "data/new.txt": b"new"})
        steps = []

        ok = self.host.install("Foo", package, lambda msg, done, total: steps.append((done, total)))

        self.assertTrue(ok)
        self.assertFalse((self.root / "Foo" / "old.txt").exists())
        self.assertEqual((self.root / "Foo" / "data" / "new.txt").read_bytes(), b"new")
        self.assertEqual(steps[-1], (2, 2))
        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ["Foo"])

    def test_install_rejects_unsafe_entries(self):
        package = self.base / "evil.pmp"
        with zipfile.ZipFile(package, "w") as zf:
            zf.writestr("../escape.txt", b"x")
        self.assertFalse(self.host.install("Foo", package))
        self.assertFalse((self.base / "escape.txt").exists())
        self.assertFalse((self.root / "Foo").exists())

    def test_install_rejects_bad_archive_and_folder(self):
        junk = self.base / "junk.pmp"
        junk.write_bytes(b"not a zip")
        self.assertFalse(self.host.install("Foo", junk))
        package = self._package({"a.txt": b"a"})
        self.assertFalse(self.host.install("bad:name", package))

    def test_cancelled_install_keeps_previous(self):
        self._mod("Foo", files={"old.txt": b"old"})
        package = self._package({"a.txt": b"a", "b.txt": b"b"})
        token = CancellationToken()

        def cancel_on_first(msg, done, total):
            token.cancel()

        with self.assertRaises(OperationCancelled):
            self.host.install("Foo", package, cancel_on_first, token)

        self.assertEqual((self.root / "Foo" / "old.txt").read_bytes(), b"old")
        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ["Foo"])


if __name__ == "__main__":
    unittest.main()
