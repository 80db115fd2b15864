"""Tests for traversal-safe tarball extraction."""

import asyncio
import os
import stat
import tarfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from common.errors import CorruptArchive, PathTraversal
from installer.extractor import Extractor, extract_tarball

from fakes import make_tarball


def _member(name, type_=tarfile.REGTYPE, linkname="", data=b"evil"):
    info = tarfile.TarInfo(name)
    info.type = type_
    info.linkname = linkname
    info.mode = 0o644
    if type_ == tarfile.REGTYPE:
        info.size = len(data)
        return info, data
    return info, None


class TestExtractTarball:
    """Member validation and layout."""

    def test_strips_leading_directory(self, tmp_path):
        data = make_tarball({"index.js": "x", "lib/util.js": "y", "bin/cli.js": ("#!/bin/sh\n", 0o755)})

        written = extract_tarball(data, tmp_path / "out", "demo@1.0.0")

        assert written == 3
        assert (tmp_path / "out" / "index.js").read_text() == "x"
        assert (tmp_path / "out" / "lib" / "util.js").read_text() == "y"
        assert os.stat(tmp_path / "out" / "bin" / "cli.js").st_mode & stat.S_IXUSR
        assert not os.stat(tmp_path / "out" / "index.js").st_mode & stat.S_IXUSR

    def test_non_standard_prefix_is_stripped(self, tmp_path):
        data = make_tarball({"index.js": "x"}, prefix="node-demo")

        extract_tarball(data, tmp_path / "out", "demo@1.0.0")

        assert (tmp_path / "out" / "index.js").is_file()

    @pytest.mark.parametrize(
        "name",
        ["package/../../evil.js", "../evil.js", "/etc/evil.js", "C:/evil.js", "package/a/../../../evil.js"],
    )
    def test_traversal_is_rejected(self, tmp_path, name):
        data = make_tarball({"index.js": "x"}, extra=[_member(name)])
        dest = tmp_path / "deep" / "out"

        with pytest.raises(PathTraversal) as excinfo:
            extract_tarball(data, dest, "evil@1.0.0")

        assert excinfo.value.package == "evil@1.0.0"
        assert not (tmp_path / "evil.js").exists()
        assert not (tmp_path / "deep" / "evil.js").exists()

    def test_links_and_devices_are_skipped(self, tmp_path):
        data = make_tarball(
            {"index.js": "x"},
            extra=[
                _member("package/passwd", tarfile.SYMTYPE, "/etc/passwd"),
                _member("package/hard", tarfile.LNKTYPE, "package/index.js"),
                _member("package/dev", tarfile.CHRTYPE),
            ],
        )

        written = extract_tarball(data, tmp_path / "out", "demo@1.0.0")

        assert written == 1
        assert sorted(os.listdir(tmp_path / "out")) == ["index.js"]

    def test_symlinked_directory_cannot_be_followed(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        dest = tmp_path / "out"
        dest.mkdir()
        os.symlink(outside, dest / "lib")
        data = make_tarball({"lib/evil.js": "x"})

        with pytest.raises(PathTraversal):
            extract_tarball(data, dest, "demo@1.0.0")
        assert not (outside / "evil.js").exists()

    def test_unreadable_archive(self, tmp_path):
        with pytest.raises(CorruptArchive) as excinfo:
            extract_tarball(b"garbage-not-a-tarball", tmp_path / "out", "demo@1.0.0")

        assert excinfo.value.package == "demo@1.0.0"
        assert excinfo.value.to_dict()["category"] == "corrupt_archive"

    def test_file_where_directory_is_needed(self, tmp_path):
        data = make_tarball({"lib": "x", "lib/child.js": "y"})

        with pytest.raises(CorruptArchive, match="demo@1.0.0"):
            extract_tarball(data, tmp_path / "out", "demo@1.0.0")


class TestExtractor:
    """Once-per-digest extraction into the store."""

    def test_concurrent_requests_extract_once(self, store):
        digest = store.put(make_tarball({"index.js": "x"}))
        executor = ThreadPoolExecutor(max_workers=2)
        extractor = Extractor(store, executor)

        async def run():
            return await asyncio.gather(*(extractor.ensure_extracted(digest, "demo@1.0.0") for _ in range(5)))

        try:
            paths = asyncio.run(run())
            again = asyncio.run(extractor.ensure_extracted(digest, "demo@1.0.0"))
        finally:
            executor.shutdown(wait=True)

        assert len(set(paths)) == 1
        assert again == paths[0]
        assert extractor.extractions == 1
        assert (paths[0] / "index.js").read_text() == "x"

    def test_failed_extraction_leaves_no_tree(self, store):
        digest = store.put(make_tarball({"index.js": "x"}, extra=[_member("../evil.js")]))
        extractor = Extractor(store)

        with pytest.raises(PathTraversal):
            asyncio.run(extractor.ensure_extracted(digest, "evil@1.0.0"))

        assert not store.has_extracted(digest)
        assert os.listdir(store.tmp_dir) == []

    def test_failed_extraction_is_not_counted(self, store):
        good = store.put(make_tarball({"index.js": "x"}))
        bad = store.put(b"garbage-not-a-tarball")
        extractor = Extractor(store)

        async def run():
            await extractor.ensure_extracted(good, "good@1.0.0")
            with pytest.raises(CorruptArchive):
                await extractor.ensure_extracted(bad, "bad@1.0.0")

        asyncio.run(run())

        assert extractor.extractions == 1
        assert not store.has_extracted(bad)
