"""Tests for the install pipeline against an in-memory registry."""

import asyncio
import tarfile

import pytest

from common.errors import CorruptArchive, DownloadFailed, IntegrityViolation, PathTraversal, PermissionDenied
from installer import Installer
from lockfile import manager
from lockfile.manager import Lockfile, LockfileEntry
from security.integrity import expected_integrity

from fakes import make_tarball


def _entry(registry, name, version, **kwargs):
    body = registry.packages[name]["versions"][version]
    dist = body["dist"]
    kwargs.setdefault("paths", [f"node_modules/{name}"])
    return LockfileEntry(
        name=name,
        version=version,
        resolved=dist["tarball"],
        integrity=expected_integrity(dist.get("integrity"), dist.get("shasum")),
        **kwargs,
    )


def _install(project_dir, store, registry, config, entries, state=None, **kwargs):
    lock = Lockfile(packages=list(entries))
    plan = manager.diff(state or [], lock.packages)

    async def run():
        installer = Installer(project_dir, store, registry, config)
        try:
            return await installer.install(lock, plan, **kwargs)
        finally:
            installer.close()

    return asyncio.run(run())


class TestInstall:
    """Happy paths and incremental behaviour."""

    def test_installs_and_records_state(self, tmp_path, store, registry, config):
        registry.add("alpha", "1.0.0", files={"index.js": "alpha"})
        registry.add("beta", "2.0.0")
        entries = [_entry(registry, "alpha", "1.0.0"), _entry(registry, "beta", "2.0.0")]

        report = _install(tmp_path, store, registry, config, entries)

        assert report.installed == 2
        assert report.downloads == 2
        assert report.extractions == 2
        assert (tmp_path / "node_modules" / "alpha" / "index.js").read_text() == "alpha"
        assert [e.key for e in manager.read_state(tmp_path)] == [("alpha", "1.0.0"), ("beta", "2.0.0")]

    def test_second_project_reuses_store(self, tmp_path, store, registry, config):
        registry.add("alpha", "1.0.0")
        entries = [_entry(registry, "alpha", "1.0.0")]
        _install(tmp_path / "one", store, registry, config, entries)

        report = _install(tmp_path / "two", store, registry, config, entries)

        assert report.installed == 1
        assert report.cached == 1
        assert report.downloads == 0
        assert report.extractions == 0
        assert registry.tarball_requests == 1
        assert (tmp_path / "two" / "node_modules" / "alpha" / "index.js").is_file()

    def test_legacy_shasum_is_cached_through_alias(self, tmp_path, store, registry, config):
        registry.add("old", "0.1.0", integrity="shasum")
        entries = [_entry(registry, "old", "0.1.0")]
        assert entries[0].integrity.startswith("sha1-")
        _install(tmp_path / "one", store, registry, config, entries)

        report = _install(tmp_path / "two", store, registry, config, entries)

        assert report.cached == 1
        assert registry.tarball_requests == 1

    def test_force_reverify_relinks_unchanged(self, tmp_path, store, registry, config):
        registry.add("alpha", "1.0.0", files={"index.js": "alpha"})
        entries = [_entry(registry, "alpha", "1.0.0")]
        _install(tmp_path, store, registry, config, entries)
        (tmp_path / "node_modules" / "alpha" / "index.js").unlink()
        state = manager.read_state(tmp_path)

        skipped = _install(tmp_path, store, registry, config, entries, state=state)
        assert skipped.installed == 0
        assert not (tmp_path / "node_modules" / "alpha" / "index.js").exists()

        report = _install(tmp_path, store, registry, config, entries, state=state, force_reverify=True)
        assert report.installed == 1
        assert (tmp_path / "node_modules" / "alpha" / "index.js").read_text() == "alpha"

    def test_removed_and_changed_paths_are_pruned(self, tmp_path, store, registry, config):
        registry.add("alpha", "1.0.0")
        registry.add("alpha", "2.0.0")
        registry.add("gone", "1.0.0")
        old = [
            _entry(registry, "alpha", "1.0.0", paths=["node_modules/x/node_modules/alpha"]),
            _entry(registry, "gone", "1.0.0"),
        ]
        _install(tmp_path, store, registry, config, old)

        report = _install(
            tmp_path, store, registry, config, [_entry(registry, "alpha", "2.0.0")], state=manager.read_state(tmp_path)
        )

        assert report.removed == 1
        assert not (tmp_path / "node_modules" / "gone").exists()
        assert not (tmp_path / "node_modules" / "x").exists()
        assert (tmp_path / "node_modules" / "alpha").is_dir()

    def test_bins_for_root_packages(self, tmp_path, store, registry, config):
        registry.add("tool", "1.0.0", files={"cli.js": "#!/usr/bin/env node\n"}, bin={"tool": "cli.js"})
        entry = _entry(registry, "tool", "1.0.0", bin={"tool": "cli.js"})

        _install(tmp_path, store, registry, config, [entry])

        assert (tmp_path / "node_modules" / ".bin" / "tool").is_symlink()


class TestFailures:
    """Fail-closed behaviour."""

    def test_missing_integrity_fails_before_download(self, tmp_path, store, registry, config):
        registry.add("alpha", "1.0.0", integrity=None)
        entry = _entry(registry, "alpha", "1.0.0")
        assert entry.integrity is None

        with pytest.raises(IntegrityViolation):
            _install(tmp_path, store, registry, config, [entry])

        assert registry.tarball_requests == 0
        assert store.list_digests() == []

    def test_missing_integrity_allowed_when_not_required(self, tmp_path, store, registry, config):
        registry.add("alpha", "1.0.0", integrity=None)
        config.security.require_integrity = False

        report = _install(tmp_path, store, registry, config, [_entry(registry, "alpha", "1.0.0")])

        assert report.installed == 1

    def test_tampered_tarball_is_never_stored(self, tmp_path, store, registry, config):
        url = registry.add("alpha", "1.0.0")
        registry.tarballs[url] = make_tarball({"index.js": "malicious"})

        with pytest.raises(IntegrityViolation):
            _install(tmp_path, store, registry, config, [_entry(registry, "alpha", "1.0.0")])

        assert store.list_digests() == []
        assert manager.read_state(tmp_path) == []
        assert not (tmp_path / "node_modules" / "alpha").exists()

    def test_path_traversal_aborts_when_strict(self, tmp_path, store, registry, config):
        info = tarfile.TarInfo("package/../../escape.js")
        info.size = 1
        registry.add("evil", "1.0.0", data=make_tarball({"index.js": "x"}, extra=[(info, b"x")]))

        with pytest.raises(PathTraversal):
            _install(tmp_path / "project", store, registry, config, [_entry(registry, "evil", "1.0.0")])

        assert not (tmp_path / "escape.js").exists()

    def test_path_traversal_skips_package_when_lenient(self, tmp_path, store, registry, config):
        info = tarfile.TarInfo("../escape.js")
        info.size = 1
        registry.add("evil", "1.0.0", data=make_tarball({"index.js": "x"}, extra=[(info, b"x")]))
        registry.add("good", "1.0.0")
        config.security.strict_paths = False

        report = _install(
            tmp_path, store, registry, config, [_entry(registry, "evil", "1.0.0"), _entry(registry, "good", "1.0.0")]
        )

        assert report.failed == 1
        assert report.installed == 1
        assert report.failed_packages == ["evil@1.0.0"]
        assert [e.name for e in manager.read_state(tmp_path)] == ["good"]

    def test_corrupt_archive_aborts_when_strict(self, tmp_path, store, registry, config):
        registry.add("broken", "1.0.0", data=b"garbage-not-a-tarball")

        with pytest.raises(CorruptArchive):
            _install(tmp_path, store, registry, config, [_entry(registry, "broken", "1.0.0")])

        assert manager.read_state(tmp_path) == []

    def test_corrupt_archive_skips_package_when_lenient(self, tmp_path, store, registry, config):
        registry.add("broken", "1.0.0", data=b"garbage-not-a-tarball")
        registry.add("good", "1.0.0")
        config.security.strict_paths = False

        report = _install(
            tmp_path, store, registry, config, [_entry(registry, "broken", "1.0.0"), _entry(registry, "good", "1.0.0")]
        )

        assert report.failed_packages == ["broken@1.0.0"]
        assert report.installed == 1
        assert report.extractions == 1

    def test_download_failure_is_fatal(self, tmp_path, store, registry, config):
        url = registry.add("alpha", "1.0.0")
        registry.broken.add(url)

        with pytest.raises(DownloadFailed) as excinfo:
            _install(tmp_path, store, registry, config, [_entry(registry, "alpha", "1.0.0")])

        assert excinfo.value.package == "alpha@1.0.0"

    def test_optional_download_failure_is_skipped(self, tmp_path, store, registry, config):
        url = registry.add("fsevents", "2.3.0")
        registry.broken.add(url)

        report = _install(
            tmp_path, store, registry, config, [_entry(registry, "fsevents", "2.3.0", optional=True)]
        )

        assert report.failed == 1
        assert any("fsevents@2.3.0 was not installed" in w for w in report.warnings)


class TestPolicy:
    """Script and permission policy applied before any download."""

    def test_scripts_blocked_by_default(self, tmp_path, store, registry, config):
        registry.add("native", "1.0.0")
        registry.add("@trusted/native", "1.0.0")
        config.security.trusted_scopes = ["@trusted"]
        entries = [
            _entry(registry, "native", "1.0.0", has_install_script=True),
            _entry(registry, "@trusted/native", "1.0.0", has_install_script=True),
        ]

        report = _install(tmp_path, store, registry, config, entries)

        assert report.scripts_blocked == ["native@1.0.0"]
        assert report.scripts_allowed == ["@trusted/native@1.0.0"]

    def test_strict_permissions_deny_before_download(self, tmp_path, store, registry, config):
        registry.add("sneaky", "1.0.0")
        config.security.strict_permissions = True
        entry = _entry(registry, "sneaky", "1.0.0", capabilities=["network"])

        with pytest.raises(PermissionDenied) as excinfo:
            _install(tmp_path, store, registry, config, [entry])

        assert excinfo.value.capability == "network"
        assert registry.tarball_requests == 0

    def test_denied_permission_warns_when_lenient(self, tmp_path, store, registry, config):
        registry.add("sneaky", "1.0.0")
        entry = _entry(registry, "sneaky", "1.0.0", capabilities=["environment"])

        report = _install(tmp_path, store, registry, config, [entry])

        assert report.installed == 1
        assert any("'environment' capability" in w for w in report.warnings)

    def test_supply_chain_warning(self, tmp_path, store, registry, config):
        registry.add("lodahs", "1.0.0")

        report = _install(tmp_path, store, registry, config, [_entry(registry, "lodahs", "1.0.0")])

        assert any("lodash" in w for w in report.warnings)
