"""Content-addressable cache shared by every project on the machine.

Layout under the cache root::

    blobs/<2-char prefix>/<sha512 hex>        raw tarball bytes
    extracted/<2-char prefix>/<sha512 hex>/   unpacked package tree
    index/<algo>/<2-char prefix>/<hex>        integrity alias -> store digest
    metadata/<safe-name>.json                 cached packuments
    tmp/                                      staging area

Objects are published atomically: blobs through ``os.link`` from a
temporary file (fails if the target exists, so a digest is promoted at most
once) and directories through ``os.rename`` of a fully populated staging
directory. Readers therefore never observe partial content, and concurrent
processes racing on the same digest converge on a single copy.
"""

from __future__ import annotations

import errno
import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from common.errors import CacheMiss
from common.logging_utils import extra_context, is_debug_enabled

logger = logging.getLogger(__name__)

_HEX = set("0123456789abcdef")


def compute_digest(data: bytes) -> str:
    """Return the store digest (sha512 hex) of ``data``."""
    return hashlib.sha512(data).hexdigest()


def _check_digest(digest: str) -> str:
    if len(digest) < 3 or not set(digest) <= _HEX:
        raise ValueError(f"Not a hex digest: {digest!r}")
    return digest


def _safe_metadata_name(name: str) -> str:
    return name.replace("/", "%2f")


class ContentStore:
    """On-disk content-addressable store keyed by sha512 hex digest."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.blobs_dir = self.root / "blobs"
        self.extracted_dir = self.root / "extracted"
        self.index_dir = self.root / "index"
        self.metadata_dir = self.root / "metadata"
        self.tmp_dir = self.root / "tmp"
        for directory in (
            self.blobs_dir,
            self.extracted_dir,
            self.index_dir,
            self.metadata_dir,
            self.tmp_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    # -- paths ---------------------------------------------------------

    def blob_path(self, digest: str) -> Path:
        digest = _check_digest(digest)
        return self.blobs_dir / digest[:2] / digest

    def _extracted_target(self, digest: str) -> Path:
        digest = _check_digest(digest)
        return self.extracted_dir / digest[:2] / digest

    # -- blobs ---------------------------------------------------------

    def put(self, data: bytes) -> str:
        """Store ``data`` and return its digest. Idempotent."""
        digest = compute_digest(data)
        target = self.blob_path(digest)
        if target.is_file():
            return digest
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix="blob-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp_name, target)
            except FileExistsError:
                # Another writer promoted identical bytes first.
                pass
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
        if is_debug_enabled(logger):
            logger.debug(
                "Stored blob",
                extra=extra_context(
                    event="store_put",
                    component="content_store",
                    digest=digest,
                    size=len(data),
                ),
            )
        return digest

    def get(self, digest: str) -> bytes:
        """Return the bytes stored under ``digest``.

        Raises:
            CacheMiss: nothing is stored under that digest.
        """
        try:
            with open(self.blob_path(digest), "rb") as fh:
                return fh.read()
        except FileNotFoundError as exc:
            raise CacheMiss(digest) from exc

    def has(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    # -- extracted trees -----------------------------------------------

    def has_extracted(self, digest: str) -> bool:
        return self._extracted_target(digest).is_dir()

    def extracted_path(self, digest: str) -> Path:
        """Return the extracted tree for ``digest``.

        Raises:
            CacheMiss: the tree has not been extracted yet.
        """
        target = self._extracted_target(digest)
        if not target.is_dir():
            raise CacheMiss(digest, kind="extracted tree")
        return target

    def staging_dir(self) -> Path:
        """Create an empty private directory on the store's filesystem."""
        return Path(tempfile.mkdtemp(dir=self.tmp_dir, prefix="stage-"))

    def store_extracted(self, digest: str, source_dir: Path) -> Path:
        """Atomically publish ``source_dir`` as the extracted tree of ``digest``.

        ``source_dir`` must live on the store's filesystem (see
        ``staging_dir``); it is consumed. When another writer already
        published the digest the staging copy is discarded.
        """
        target = self._extracted_target(digest)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_dir():
            shutil.rmtree(source_dir, ignore_errors=True)
            return target
        try:
            os.rename(source_dir, target)
        except OSError as exc:
            if exc.errno not in (errno.EEXIST, errno.ENOTEMPTY) or not target.is_dir():
                raise
            logger.debug("Lost extraction race for %s; discarding staging copy", digest)
            shutil.rmtree(source_dir, ignore_errors=True)
        return target

    # -- integrity aliases -----------------------------------------------

    def _alias_path(self, algorithm: str, hex_digest: str) -> Path:
        hex_digest = _check_digest(hex_digest)
        return self.index_dir / algorithm / hex_digest[:2] / hex_digest

    def put_alias(self, algorithm: str, hex_digest: str, digest: str) -> None:
        """Record that ``algorithm:hex_digest`` names the blob ``digest``."""
        path = self._alias_path(algorithm, hex_digest)
        if path.is_file():
            return
        self._write_atomic(path, digest.encode("ascii"))

    def lookup_alias(self, algorithm: str, hex_digest: str) -> Optional[str]:
        """Return the store digest aliased by ``algorithm:hex_digest``, if any."""
        if algorithm == "sha512":
            return hex_digest if self.has(hex_digest) else None
        try:
            digest = self._alias_path(algorithm, hex_digest).read_text(encoding="ascii").strip()
        except FileNotFoundError:
            return None
        return digest if self.has(digest) else None

    # -- metadata --------------------------------------------------------

    def metadata_path(self, name: str) -> Path:
        return self.metadata_dir / f"{_safe_metadata_name(name)}.json"

    def read_metadata(self, name: str) -> Optional[Tuple[Dict[str, Any], float]]:
        """Return (packument, age in seconds) or None when absent or unreadable."""
        path = self.metadata_path(name)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable metadata cache file %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            return None
        return data, max(age, 0.0)

    def write_metadata(self, name: str, data: Dict[str, Any]) -> None:
        payload = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
        self._write_atomic(self.metadata_path(name), payload)

    # -- maintenance -----------------------------------------------------

    def list_digests(self) -> List[str]:
        """Return every blob digest in the store, sorted."""
        digests = []
        for prefix_dir in self.blobs_dir.iterdir():
            if prefix_dir.is_dir():
                digests.extend(p.name for p in prefix_dir.iterdir() if p.is_file())
        return sorted(digests)

    def remove(self, digest: str) -> bool:
        """Remove a blob and its extracted tree. Returns True if anything was removed."""
        removed = False
        blob = self.blob_path(digest)
        try:
            blob.unlink()
            removed = True
        except FileNotFoundError:
            pass
        tree = self._extracted_target(digest)
        if tree.is_dir():
            # Rename first so readers never see a half-deleted tree.
            doomed = Path(tempfile.mkdtemp(dir=self.tmp_dir, prefix="gone-")) / "tree"
            os.rename(tree, doomed)
            shutil.rmtree(doomed.parent, ignore_errors=True)
            removed = True
        return removed

    def total_size(self) -> int:
        """Total bytes held by blobs and extracted trees."""
        total = 0
        for base in (self.blobs_dir, self.extracted_dir):
            for dirpath, _dirnames, filenames in os.walk(base):
                for filename in filenames:
                    try:
                        total += os.lstat(os.path.join(dirpath, filename)).st_size
                    except FileNotFoundError:
                        continue
        return total

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix="meta-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
