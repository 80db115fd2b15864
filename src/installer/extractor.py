"""Safe tarball extraction into the content store."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shutil
import tarfile
import zlib
from concurrent.futures import Executor
from pathlib import Path, PurePosixPath
from typing import Dict, Optional

from common.errors import CorruptArchive, PathTraversal
from store.content_store import ContentStore

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


def _check_member_name(name: str, package: str) -> PurePosixPath:
    """Validate a member name and return it as a relative POSIX path."""
    if "\x00" in name:
        raise PathTraversal(package, name)
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise PathTraversal(package, name)
    path = PurePosixPath(normalized)
    if any(part == ".." for part in path.parts):
        raise PathTraversal(package, name)
    return path


def extract_tarball(data: bytes, dest: Path, package: str) -> int:
    """Extract an npm tarball into ``dest``; returns the number of files written.

    The leading path component (``package/`` for npm tarballs) is stripped.
    Symlinks, hardlinks and device entries are skipped. File modes keep
    only the executable bits.

    Raises:
        PathTraversal: an entry is absolute, contains ``..`` or a NUL byte,
            or would resolve outside ``dest``.
        CorruptArchive: the data is not a readable archive, or its entries
            conflict (a file where a directory is needed).
    """
    root = os.path.realpath(Path(dest))
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
            return _extract_members(archive, root, package)
    except (tarfile.TarError, EOFError, zlib.error) as exc:
        raise CorruptArchive(package, str(exc) or type(exc).__name__) from exc
    except OSError as exc:
        raise CorruptArchive(package, f"{exc.strerror or exc}: {exc.filename}") from exc


def _extract_members(archive: tarfile.TarFile, root: str, package: str) -> int:
    written = 0
    for member in archive:
        path = _check_member_name(member.name, package)
        parts = [p for p in path.parts if p not in ("", ".")]
        if len(parts) <= 1:
            continue
        relative = os.path.join(*parts[1:])
        target = os.path.join(root, relative)
        resolved = os.path.realpath(target)
        if resolved != root and not resolved.startswith(root + os.sep):
            raise PathTraversal(package, member.name)

        if member.isdir():
            os.makedirs(target, exist_ok=True)
            continue
        if not member.isfile():
            logger.debug("Skipping non-regular entry %s in %s", member.name, package)
            continue

        os.makedirs(os.path.dirname(target), exist_ok=True)
        source = archive.extractfile(member)
        if source is None:
            continue
        with source, open(target, "wb") as out:
            shutil.copyfileobj(source, out, _CHUNK)
        mode = 0o755 if member.mode & 0o111 else 0o644
        os.chmod(target, mode)
        written += 1
    return written


class Extractor:
    """Extract each store digest at most once per process.

    Concurrent requests for the same digest share one in-flight future;
    across processes the store's atomic rename keeps a single copy.
    """

    def __init__(self, store: ContentStore, executor: Optional[Executor] = None):
        self._store = store
        self._executor = executor
        self._inflight: Dict[str, "asyncio.Future[Path]"] = {}
        self.extractions = 0

    async def ensure_extracted(self, digest: str, package: str) -> Path:
        """Return the extracted tree for ``digest``, extracting it if needed."""
        if self._store.has_extracted(digest):
            return self._store.extracted_path(digest)
        pending = self._inflight.get(digest)
        if pending is None:
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(self._executor, self._extract_sync, digest, package)
            self._inflight[digest] = pending
            pending.add_done_callback(lambda future: self._finished(digest, future))
        return await asyncio.shield(pending)

    def _finished(self, digest: str, future: "asyncio.Future[Path]") -> None:
        # Done callbacks run on the event loop thread.
        self._inflight.pop(digest, None)
        if not future.cancelled() and future.exception() is None:
            self.extractions += 1

    def _extract_sync(self, digest: str, package: str) -> Path:
        data = self._store.get(digest)
        staging = self._store.staging_dir()
        try:
            count = extract_tarball(data, staging, package)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        logger.debug("Extracted %d file(s) for %s", count, package)
        return self._store.store_extracted(digest, staging)
