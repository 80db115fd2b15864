"""Tarball download, verification and storage."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional

from config import PaktConfig
from common.errors import DownloadFailed, IntegrityViolation, NetworkFailure, PackageNotFound
from common.logging_utils import extra_context, is_debug_enabled, Timer
from lockfile.manager import LockfileEntry
from security import integrity
from store.content_store import ContentStore
from versioning.models import format_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    """Where a package's tarball ended up and how it got there."""

    digest: str
    cached: bool
    size: int = 0


class Downloader:
    """Fetch tarballs into the content store, verifying them first.

    Network fan-out is bounded by ``network.concurrency``; hashing runs on
    ``executor``. Nothing reaches the store before it has been verified.
    """

    def __init__(
        self,
        client,
        store: ContentStore,
        config: PaktConfig,
        executor: Optional[Executor] = None,
    ):
        self._client = client
        self._store = store
        self._security = config.security
        self._executor = executor
        self._semaphore = asyncio.Semaphore(config.network.concurrency)
        self.downloads = 0

    def cached_digest(self, expected: Optional[str]) -> Optional[str]:
        """Return the store digest already holding content for ``expected``, if any."""
        target = integrity.strongest(expected)
        if target is None:
            return None
        return self._store.lookup_alias(target.algorithm, target.hex)

    async def fetch(self, entry: LockfileEntry, reverify: bool = False) -> FetchResult:
        """Make ``entry``'s tarball available in the store.

        Raises:
            IntegrityViolation: content does not match the locked digest,
                or no digest is locked while integrity is required.
            DownloadFailed: the tarball could not be downloaded.
        """
        label = format_key(entry.key)
        expected = entry.integrity
        require = self._security.require_integrity
        if integrity.strongest(expected) is None and require:
            # Fail closed before touching the network.
            raise IntegrityViolation(label, expected or "<none>", "<not downloaded>")

        loop = asyncio.get_running_loop()
        digest = self.cached_digest(expected)
        if digest is not None:
            if reverify:
                data = await loop.run_in_executor(self._executor, self._store.get, digest)
                await loop.run_in_executor(self._executor, integrity.verify, data, expected, label, require)
            return FetchResult(digest=digest, cached=True)

        if not entry.resolved:
            raise DownloadFailed(label, "no tarball URL recorded")

        async with self._semaphore:
            with Timer() as timer:
                try:
                    data = await self._client.fetch_tarball(entry.resolved)
                except (NetworkFailure, PackageNotFound) as exc:
                    logger.error(
                        "Download failed for %s: %s",
                        label,
                        exc,
                        extra=extra_context(
                            event="download_failed",
                            component="downloader",
                            package=label,
                            outcome="failed",
                        ),
                    )
                    raise DownloadFailed(label, str(exc)) from exc
            self.downloads += 1

        checked = await loop.run_in_executor(self._executor, integrity.verify, data, expected, label, require)
        digest = await loop.run_in_executor(self._executor, self._store.put, data)
        if checked is not None and checked.algorithm != "sha512":
            self._store.put_alias(checked.algorithm, checked.hex, digest)

        if is_debug_enabled(logger):
            logger.debug(
                "Downloaded tarball",
                extra=extra_context(
                    event="download_complete",
                    component="downloader",
                    package=label,
                    size=len(data),
                    duration_ms=timer.duration_ms(),
                    outcome="success",
                ),
            )
        return FetchResult(digest=digest, cached=False, size=len(data))
