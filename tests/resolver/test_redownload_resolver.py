"""
Tests for src/modshare/resolver

Covers:
- Precedence of resolve_install_folder over a pre-fetched snapshot
- Candidate scoring, penalties and deterministic tie-breaking
- Snapshot capture against a failing host
- PackageInstaller / RedownloadService end to end over a local relay
"""

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, Mock

from src.modshare.cache.package_cache import PackageCache
from src.modshare.downloader.downloader import PackageDownloader
from src.modshare.errors import BusyError, InstallError
from src.modshare.fs.archive_zip import create_deterministic_archive
from src.modshare.fs.hashing import compute_file_hash
from src.modshare.host.capability import ModMetadata
from src.modshare.host.directory_host import DirectoryModHost
from src.modshare.resolver.redownload import (
    InstalledSnapshot,
    MetadataLookup,
    ResolutionRule,
    ResolverPolicy,
    ResolveRequest,
    resolve_install_folder,
    score_candidate,
)
from src.modshare.resolver.service import PackageInstaller, RedownloadService
from src.modshare.resolver.snapshot import capture_snapshot
from src.modshare.transfer.local_channel import LocalTransferChannel

DIGEST = "ABCDEF0123456789ABCDEF0123456789ABCDEF01"


def _snapshot(mods=None, metadata=None, host_known=(), on_disk=()):
    return InstalledSnapshot(
        mods=mods or {},
        metadata=metadata or {},
        host_known=frozenset(host_known),
        on_disk=frozenset(on_disk),
    )


def _lookup(name="Foo", author=None, version=None):
    return MetadataLookup(metadata=ModMetadata(name=name, author=author, version=version))


class TestResolveInstallFolder(unittest.TestCase):
    def test_exact_folder_match_wins_regardless_of_hints(self):
        snap = _snapshot(mods={"Foo": "Something Else", "Bar": "Foo"})
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo", author_hint="Z", version_hint="9"), snap)
        self.assertEqual(result.folder_name, "Foo")
        self.assertEqual(result.rule, ResolutionRule.EXACT_FOLDER)

    def test_exact_match_is_case_sensitive(self):
        snap = _snapshot(mods={"foo": "foo"})
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo"), snap)
        self.assertEqual(result.rule, ResolutionRule.UNIQUE_DISPLAY_NAME)
        self.assertEqual(result.folder_name, "foo")

    def test_unique_display_name_match(self):
        snap = _snapshot(mods={"Foo_v1": "FOO", "Other": "Bar"})
        result = resolve_install_folder(ResolveRequest(DIGEST, "foo"), snap)
        self.assertEqual(result, type(result)("Foo_v1", ResolutionRule.UNIQUE_DISPLAY_NAME))

    def test_author_hint_breaks_ambiguity(self):
        snap = _snapshot(
            mods={"Foo (v1)": "Foo", "Foo (v2)": "Foo"},
            metadata={"Foo (v1)": _lookup(author="A"), "Foo (v2)": _lookup(author="B")},
        )
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo", author_hint="B"), snap)
        self.assertEqual(result.folder_name, "Foo (v2)")
        self.assertEqual(result.rule, ResolutionRule.SCORED_DISPLAY_NAME)

    def test_version_hint_scores_one(self):
        snap = _snapshot(
            mods={"A": "Foo", "B": "Foo"},
            metadata={"A": _lookup(version="1.0"), "B": _lookup(version="2.0")},
        )
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo", version_hint="2.0"), snap)
        self.assertEqual(result.folder_name, "B")

    def test_tie_keeps_ordinally_first_candidate(self):
        snap = _snapshot(
            mods={"b-foo": "Foo", "B-foo": "Foo", "a-foo": "Foo"},
            metadata={k: _lookup() for k in ("b-foo", "B-foo", "a-foo")},
        )
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo"), snap)
        self.assertEqual(result.folder_name, "B-foo")

    def test_metadata_failure_is_penalised_not_excluded(self):
        snap = _snapshot(
            mods={"A": "Foo", "B": "Foo"},
            metadata={"A": MetadataLookup(failed=True), "B": MetadataLookup(metadata=None)},
        )
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo"), snap)
        self.assertEqual(result.folder_name, "B")

        only_failures = _snapshot(
            mods={"A": "Foo", "B": "Foo"},
            metadata={"A": MetadataLookup(failed=True), "B": MetadataLookup(failed=True)},
        )
        self.assertEqual(resolve_install_folder(ResolveRequest(DIGEST, "Foo"), only_failures).folder_name, "A")

    def test_sanitized_name_existing_on_disk(self):
        snap = _snapshot(on_disk={"My_Mod"})
        result = resolve_install_folder(ResolveRequest(DIGEST, "My:Mod"), snap)
        self.assertEqual(result, type(result)("My_Mod", ResolutionRule.SANITIZED_EXISTING))

    def test_sanitized_name_matches_installed_case_insensitively(self):
        snap = _snapshot(mods={"my_mod": "Different Display"})
        result = resolve_install_folder(ResolveRequest(DIGEST, "My:Mod"), snap)
        self.assertEqual(result.folder_name, "my_mod")
        self.assertEqual(result.rule, ResolutionRule.SANITIZED_EXISTING)

    def test_digest_suffixed_fallback(self):
        result = resolve_install_folder(ResolveRequest(DIGEST.lower(), "New Mod."), _snapshot())
        self.assertEqual(result.folder_name, "New Mod-ABCDEF01")
        self.assertEqual(result.rule, ResolutionRule.DIGEST_SUFFIXED)

    def test_short_digest_falls_back_to_sanitized(self):
        result = resolve_install_folder(ResolveRequest("ABC", "New|Mod"), _snapshot())
        self.assertEqual(result, type(result)("New_Mod", ResolutionRule.SANITIZED))

    def test_empty_hints_use_unknown_mod(self):
        result = resolve_install_folder(ResolveRequest("", "   "), _snapshot())
        self.assertEqual(result.folder_name, "UnknownMod")

    def test_missing_name_uses_digest(self):
        result = resolve_install_folder(ResolveRequest(DIGEST, None), _snapshot())
        self.assertEqual(result.folder_name, f"{DIGEST}-ABCDEF01")

    def test_custom_policy_weights(self):
        snap = _snapshot(
            mods={"A": "Foo", "B": "Foo"},
            metadata={"A": _lookup(author="X"), "B": _lookup(version="1")},
        )
        request = ResolveRequest(DIGEST, "Foo", author_hint="X", version_hint="1")
        self.assertEqual(resolve_install_folder(request, snap).folder_name, "A")
        policy = ResolverPolicy(author_weight=1, version_weight=3)
        self.assertEqual(resolve_install_folder(request, snap, policy).folder_name, "B")


class TestScoreCandidate(unittest.TestCase):
    def test_scores(self):
        policy = ResolverPolicy()
        request = ResolveRequest(DIGEST, "Foo", author_hint="b", version_hint="V1")
        self.assertEqual(score_candidate(_lookup("foo", "B", "v1"), request, policy), 5)
        self.assertEqual(score_candidate(_lookup("Other", None, None), request, policy), 0)
        self.assertEqual(score_candidate(MetadataLookup(failed=True), request, policy), -1)
        self.assertEqual(score_candidate(None, request, policy), -1)

    def test_absent_hints_never_score(self):
        request = ResolveRequest(DIGEST, "Foo")
        self.assertEqual(score_candidate(_lookup("Foo", "", ""), request, ResolverPolicy()), 2)

    def test_policy_persist_dict(self):
        policy = ResolverPolicy(name_weight=3, metadata_failure_penalty=4)
        self.assertEqual(ResolverPolicy.from_persist_dict(policy.to_persist_dict()), policy)


class TestCaptureSnapshot(unittest.TestCase):
    def test_collects_metadata_only_for_ambiguous_candidates(self):
        def get_metadata(folder):
            if folder == "A":
                return ModMetadata(name="Foo", author="x")
            raise OSError("ipc")

        host = Mock()
        host.list_mods.return_value = {"A": "Foo", "B": "Foo", "C": "Bar"}
        host.get_metadata.side_effect = get_metadata
        host.mod_exists.return_value = False
        host.get_install_root.return_value = None

        snap = capture_snapshot(host, ResolveRequest(DIGEST, "Foo"))

        self.assertEqual(set(snap.metadata), {"A", "B"})
        self.assertFalse(snap.metadata["A"].failed)
        self.assertTrue(snap.metadata["B"].failed)

    def test_host_failures_degrade(self):
        host = Mock()
        host.list_mods.side_effect = RuntimeError("host down")
        host.mod_exists.side_effect = RuntimeError("host down")
        host.get_install_root.return_value = None

        snap = capture_snapshot(host, ResolveRequest(DIGEST, "Foo"))
        result = resolve_install_folder(ResolveRequest(DIGEST, "Foo"), snap)
        self.assertEqual(result.rule, ResolutionRule.DIGEST_SUFFIXED)


class TestRedownloadService(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base = Path(self.temp_dir.name)
        source = self.base / "export"
        source.mkdir()
        (source / "meta.json").write_text('{"Name": "Foo", "Version": "2.0"}', encoding="utf-8")
        (source / "data.bin").write_bytes(b"\x01\x02")
        package = create_deterministic_archive(source, self.base / "foo.pmp").zip_path
        self.digest = compute_file_hash(package)

        self.channel = LocalTransferChannel(self.base / "relay", "me")
        self.channel.upload(self.digest, package, [], [])
        self.cache = PackageCache(self.base / "cache")
        self.host = DirectoryModHost(self.base / "mods")
        self.installer = PackageInstaller(
            downloader=PackageDownloader(cache=self.cache, channel=self.channel),
            host=self.host,
        )

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_redownload_installs_into_existing_folder(self):
        (self.base / "mods" / "Foo").mkdir(parents=True)
        service = RedownloadService(installer=self.installer, cache=self.cache)
        stages = []

        outcome = asyncio.run(service.redownload(
            self.digest, name="Foo", progress=lambda stage, fraction: stages.append(stage),
        ))

        self.assertEqual(outcome.folder_name, "Foo")
        self.assertEqual(outcome.rule, ResolutionRule.EXACT_FOLDER)
        self.assertTrue(outcome.downloaded)
        self.assertEqual(self.host.get_metadata("Foo").version, "2.0")
        self.assertIn("download", stages)
        self.assertIn("install", stages)
        self.assertIsNotNone(self.cache.lookup(self.digest))
        self.assertFalse(service.busy)

    def test_delete_after_install_releases_package(self):
        service = RedownloadService(installer=self.installer, cache=self.cache, delete_package_after_install=True)
        outcome = asyncio.run(service.redownload(self.digest, name="Brand New"))
        self.assertEqual(outcome.folder_name, f"Brand New-{self.digest[:8]}")
        self.assertIsNone(self.cache.lookup(self.digest))

    def test_delete_after_install_keeps_package_held_elsewhere(self):
        package = self.base / "foo.pmp"
        held = self.cache.store(self.digest, package)
        service = RedownloadService(installer=self.installer, cache=self.cache, delete_package_after_install=True)

        outcome = asyncio.run(service.redownload(self.digest, name="Brand New"))

        self.assertFalse(outcome.downloaded)
        self.assertEqual(self.cache.owner_count(self.digest), 1)
        self.assertTrue(held.local_path.is_file())

    def test_host_failure_raises_install_error(self):
        host = Mock(wraps=self.host)
        host.install = Mock(return_value=False)
        installer = PackageInstaller(downloader=PackageDownloader(cache=self.cache, channel=self.channel), host=host)
        service = RedownloadService(installer=installer, cache=self.cache)
        with self.assertRaises(InstallError):
            asyncio.run(service.redownload(self.digest, name="Foo"))
        self.assertFalse(service.busy)

    def test_concurrent_redownload_is_busy(self):
        async def run_test():
            gate = asyncio.Event()
            installer = Mock()

            async def slow_run(request, *, progress=None, cancel=None):
                await gate.wait()
                return Mock(digest=request.digest, folder_name="Foo"), Mock()

            installer.run = AsyncMock(side_effect=slow_run)
            service = RedownloadService(installer=installer, cache=self.cache)

            first = asyncio.create_task(service.redownload(self.digest, name="Foo"))
            await asyncio.sleep(0)
            with self.assertRaises(BusyError):
                await service.redownload(self.digest, name="Foo")
            gate.set()
            await first
            self.assertFalse(service.busy)

        asyncio.run(run_test())


if __name__ == "__main__":
    unittest.main()
