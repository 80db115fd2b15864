"""npm registry client: package metadata and tarball downloads."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Dict, Iterable, Optional

import aiohttp

from config import PaktConfig
from constants import Constants
from common.errors import NetworkFailure, PackageNotFound
from common.http_client import robust_get
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from store.content_store import ContentStore

from .cache import MetadataCache
from .types import PackageMetadata

logger = logging.getLogger(__name__)


def package_url(base_url: str, name: str) -> str:
    """Return the packument URL for ``name``; scoped names are encoded as ``@scope%2Fname``."""
    encoded = urllib.parse.quote(name, safe="@")
    return base_url.rstrip("/") + "/" + encoded


class RegistryClient:
    """Async registry client with TTL metadata cache and in-flight deduplication.

    Use as an async context manager, or call ``start``/``stop``. A session
    passed in by the caller is not closed by ``stop``.
    """

    def __init__(
        self,
        config: PaktConfig,
        store: Optional[ContentStore] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._cache = MetadataCache(
            store=store,
            ttl=config.cache.metadata_ttl,
            offline=config.cache.offline,
        )
        self._inflight: Dict[str, "asyncio.Future[PackageMetadata]"] = {}
        self.metadata_requests = 0
        self.tarball_requests = 0

    @property
    def offline(self) -> bool:
        return self._config.cache.offline

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=max(self._config.network.concurrency, 1) * 2)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": Constants.USER_AGENT},
            )
            self._owns_session = True

    async def stop(self) -> None:
        """Cancel outstanding prefetches and close an owned session."""
        pending = [f for f in self._inflight.values() if not f.done()]
        for fut in pending:
            fut.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "RegistryClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _auth_headers(self, url: str) -> Dict[str, str]:
        host = urllib.parse.urlsplit(url).hostname or ""
        tokens = self._config.registry.auth_tokens
        token = tokens.get(host)
        if token is None:
            for key, value in tokens.items():
                key_host = urllib.parse.urlsplit(key).hostname if "://" in key else key
                if key_host == host:
                    token = value
                    break
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _get(self, url: str, headers: Dict[str, str], context: str):
        if self._session is None:
            await self.start()
        assert self._session is not None
        net = self._config.network
        merged = dict(headers)
        merged.update(self._auth_headers(url))
        return await robust_get(
            self._session,
            url,
            headers=merged,
            timeout=net.timeout,
            retries=net.retries,
            base_delay=net.retry_base_delay,
            context=context,
        )

    def prefetch(self, names: Iterable[str]) -> None:
        """Start metadata fetches for ``names`` without waiting for them."""
        for name in names:
            if name in self._inflight or self._cache.get(name) is not None:
                continue
            self._schedule(name)

    def _schedule(self, name: str) -> "asyncio.Future[PackageMetadata]":
        task = asyncio.ensure_future(self._fetch_metadata_uncached(name))
        self._inflight[name] = task

        def _done(fut: "asyncio.Future[PackageMetadata]") -> None:
            if self._inflight.get(name) is fut:
                del self._inflight[name]
            # Mark failures of abandoned prefetches as retrieved.
            if not fut.cancelled():
                fut.exception()

        task.add_done_callback(_done)
        return task

    async def fetch_metadata(self, name: str) -> PackageMetadata:
        """Return metadata for ``name``, from cache when fresh.

        Raises:
            PackageNotFound: the registry answered 404.
            NetworkFailure: the registry was unreachable after retries, or
                the client is offline and nothing is cached.
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        fut = self._inflight.get(name) or self._schedule(name)
        return await asyncio.shield(fut)

    async def _fetch_metadata_uncached(self, name: str) -> PackageMetadata:
        url = package_url(self._config.registry.url_for(name), name)
        if self.offline:
            raise NetworkFailure(safe_url(url), "offline mode and no cached metadata", attempts=0)

        self.metadata_requests += 1
        headers = {"Accept": Constants.NPM_INSTALL_ACCEPT}
        with Timer() as timer:
            status, _headers, body = await self._get(url, headers, context="metadata")

        if status == 404:
            logger.warning(
                "Package %s not found in registry",
                name,
                extra=extra_context(
                    event="http_response",
                    component="registry_client",
                    outcome="not_found",
                    status_code=404,
                    target=safe_url(url),
                    package=name,
                ),
            )
            raise PackageNotFound(name)
        if status >= 400:
            raise NetworkFailure(safe_url(url), f"HTTP {status}")

        try:
            packument = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise NetworkFailure(safe_url(url), f"invalid JSON in registry response: {exc}") from exc
        if not isinstance(packument, dict):
            raise NetworkFailure(safe_url(url), "registry response is not a JSON object")

        metadata = PackageMetadata.from_packument(name, packument)
        self._cache.set(name, metadata)
        if is_debug_enabled(logger):
            logger.debug(
                "Fetched metadata",
                extra=extra_context(
                    event="metadata_fetched",
                    component="registry_client",
                    outcome="success",
                    package=name,
                    versions=len(metadata.versions),
                    duration_ms=timer.duration_ms(),
                ),
            )
        return metadata

    async def fetch_tarball(self, url: str) -> bytes:
        """Download a tarball and return its raw bytes.

        Raises:
            PackageNotFound: the tarball URL answered 404.
            NetworkFailure: transport failure after retries, non-2xx answer,
                or offline mode.
        """
        if self.offline:
            raise NetworkFailure(safe_url(url), "offline mode", attempts=0)
        self.tarball_requests += 1
        status, _headers, body = await self._get(url, {"Accept": "application/octet-stream"}, context="tarball")
        if status == 404:
            raise PackageNotFound(safe_url(url), "tarball missing")
        if status >= 400:
            raise NetworkFailure(safe_url(url), f"HTTP {status}")
        return body
