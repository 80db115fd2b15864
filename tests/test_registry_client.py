"""Tests for the registry client against a local aiohttp server."""

import asyncio
import os
import time
import urllib.parse
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from common.errors import NetworkFailure, PackageNotFound
from constants import Constants
from registry.cache import MetadataCache
from registry.client import RegistryClient, package_url
from registry.types import PackageMetadata


def _packument(name, *versions):
    return {
        "name": name,
        "dist-tags": {"latest": versions[-1]},
        "versions": {
            v: {"name": name, "version": v, "dist": {"tarball": f"https://cdn.test/{name}-{v}.tgz"}}
            for v in versions
        },
    }


class _Upstream:
    """Scripted registry: each path answers from a queue of (status, body)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def respond(self, path, *responses):
        self.routes[path] = list(responses)

    async def handle(self, request):
        path = urllib.parse.unquote(request.raw_path)
        self.requests.append((path, dict(request.headers)))
        queue = self.routes.get(path)
        if not queue:
            return web.Response(status=404, text="not found")
        status, body = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(body, dict):
            return web.json_response(body, status=status)
        return web.Response(status=status, body=body)


@asynccontextmanager
async def _serve(upstream):
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", upstream.handle)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/"))
    finally:
        await server.close()


@pytest.fixture
def upstream():
    return _Upstream()


@pytest.fixture
def net_config(config):
    config.network.retries = 2
    config.network.timeout = 5.0
    return config


def test_package_url_encodes_scope():
    assert package_url("https://r.test/", "@scope/pkg") == "https://r.test/@scope%2Fpkg"
    assert package_url("https://r.test", "left-pad") == "https://r.test/left-pad"


class TestFetchMetadata:
    """Metadata requests, caching and failure classification."""

    def test_parses_and_caches(self, upstream, net_config):
        upstream.respond("/alpha", (200, _packument("alpha", "1.0.0", "1.1.0")))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    first = await client.fetch_metadata("alpha")
                    second = await client.fetch_metadata("alpha")
                    return client, first, second

        client, first, second = asyncio.run(run())

        assert first is second
        assert first.latest == "1.1.0"
        assert first.get_version("1.0.0").dist.tarball == "https://cdn.test/alpha-1.0.0.tgz"
        assert client.metadata_requests == 1
        assert len(upstream.requests) == 1
        assert upstream.requests[0][1]["Accept"] == Constants.NPM_INSTALL_ACCEPT

    def test_disk_cache_is_shared_between_clients(self, upstream, net_config, store):
        upstream.respond("/alpha", (200, _packument("alpha", "1.0.0")))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config, store) as client:
                    await client.fetch_metadata("alpha")
                async with RegistryClient(net_config, store) as client:
                    metadata = await client.fetch_metadata("alpha")
                    return client.metadata_requests, metadata

        requests, metadata = asyncio.run(run())

        assert requests == 0
        assert metadata.latest == "1.0.0"
        assert len(upstream.requests) == 1

    def test_concurrent_requests_are_deduplicated(self, upstream, net_config):
        upstream.respond("/alpha", (200, _packument("alpha", "1.0.0")))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    client.prefetch(["alpha"])
                    return await asyncio.gather(*(client.fetch_metadata("alpha") for _ in range(5)))

        results = asyncio.run(run())

        assert len(results) == 5
        assert len(upstream.requests) == 1

    def test_missing_package(self, upstream, net_config):
        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    await client.fetch_metadata("nope")

        with pytest.raises(PackageNotFound) as excinfo:
            asyncio.run(run())

        assert excinfo.value.name == "nope"
        assert len(upstream.requests) == 1

    def test_transient_errors_are_retried(self, upstream, net_config):
        upstream.respond("/alpha", (503, b"busy"), (503, b"busy"), (200, _packument("alpha", "1.0.0")))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    return await client.fetch_metadata("alpha")

        metadata = asyncio.run(run())

        assert metadata.latest == "1.0.0"
        assert len(upstream.requests) == 3

    def test_retries_exhausted(self, upstream, net_config):
        net_config.network.retries = 1
        upstream.respond("/alpha", (503, b"busy"))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    await client.fetch_metadata("alpha")

        with pytest.raises(NetworkFailure) as excinfo:
            asyncio.run(run())

        assert excinfo.value.attempts == 2
        assert excinfo.value.reason == "HTTP 503"
        assert len(upstream.requests) == 2

    def test_client_errors_are_not_retried(self, upstream, net_config):
        upstream.respond("/alpha", (403, b"forbidden"))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    await client.fetch_metadata("alpha")

        with pytest.raises(NetworkFailure, match="HTTP 403"):
            asyncio.run(run())
        assert len(upstream.requests) == 1

    def test_invalid_json(self, upstream, net_config):
        upstream.respond("/alpha", (200, b"<html>"))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    await client.fetch_metadata("alpha")

        with pytest.raises(NetworkFailure, match="invalid JSON"):
            asyncio.run(run())

    def test_scope_override_and_token(self, net_config):
        public, private = _Upstream(), _Upstream()
        private.respond("/@corp/tool", (200, _packument("@corp/tool", "2.0.0")))
        public.respond("/alpha", (200, _packument("alpha", "1.0.0")))

        async def run():
            async with _serve(public) as public_url, _serve(private) as private_url:
                net_config.registry.url = public_url
                net_config.registry.scopes = {"@corp": private_url}
                net_config.registry.auth_tokens = {private_url: "s3cret"}
                async with RegistryClient(net_config) as client:
                    await client.fetch_metadata("@corp/tool")
                    await client.fetch_metadata("alpha")

        asyncio.run(run())

        assert [path for path, _ in private.requests] == ["/@corp/tool"]
        assert [path for path, _ in public.requests] == ["/alpha"]
        # Both servers listen on 127.0.0.1, so the host-keyed token applies to each.
        assert private.requests[0][1]["Authorization"] == "Bearer s3cret"


class TestOffline:
    """Offline mode serves only what the cache holds."""

    def test_nothing_cached(self, net_config, store):
        net_config.cache.offline = True

        async def run():
            async with RegistryClient(net_config, store) as client:
                await client.fetch_metadata("alpha")

        with pytest.raises(NetworkFailure) as excinfo:
            asyncio.run(run())

        assert excinfo.value.attempts == 0

    def test_stale_cache_is_served(self, net_config, store):
        store.write_metadata("alpha", _packument("alpha", "1.0.0"))
        old = time.time() - 10 * 24 * 3600
        os.utime(store.metadata_path("alpha"), (old, old))
        net_config.cache.offline = True

        async def run():
            async with RegistryClient(net_config, store) as client:
                return await client.fetch_metadata("alpha"), client.metadata_requests

        metadata, requests = asyncio.run(run())

        assert metadata.latest == "1.0.0"
        assert requests == 0

    def test_tarball_download_refused(self, net_config):
        net_config.cache.offline = True

        async def run():
            async with RegistryClient(net_config) as client:
                await client.fetch_tarball("https://cdn.test/alpha-1.0.0.tgz")

        with pytest.raises(NetworkFailure, match="offline"):
            asyncio.run(run())


class TestFetchTarball:

    def test_downloads_bytes(self, upstream, net_config):
        upstream.respond("/alpha/-/alpha-1.0.0.tgz", (200, b"\x1f\x8b tarball"))

        async def run():
            async with _serve(upstream) as url:
                net_config.registry.url = url
                async with RegistryClient(net_config) as client:
                    data = await client.fetch_tarball(url + "alpha/-/alpha-1.0.0.tgz")
                    return data, client.tarball_requests

        data, requests = asyncio.run(run())

        assert data == b"\x1f\x8b tarball"
        assert requests == 1

    def test_missing_tarball(self, upstream, net_config):
        async def run():
            async with _serve(upstream) as url:
                async with RegistryClient(net_config) as client:
                    await client.fetch_tarball(url + "gone.tgz")

        with pytest.raises(PackageNotFound):
            asyncio.run(run())


class TestMetadataCache:

    def test_disk_entry_expires_after_ttl(self, store):
        store.write_metadata("@scope/pkg", _packument("@scope/pkg", "1.0.0"))
        old = time.time() - 120
        os.utime(store.metadata_path("@scope/pkg"), (old, old))

        assert MetadataCache(store, ttl=60).get("@scope/pkg") is None
        assert MetadataCache(store, ttl=600).get("@scope/pkg").latest == "1.0.0"
        assert MetadataCache(store, ttl=60, offline=True).get("@scope/pkg") is not None

    def test_memory_only_entries(self):
        cache = MetadataCache(ttl=60)
        assert cache.get("alpha") is None

    def test_eviction_keeps_size_bounded(self):
        cache = MetadataCache(ttl=60, max_entries=10)
        for i in range(15):
            cache.set(f"pkg{i}", PackageMetadata.from_packument(f"pkg{i}", _packument(f"pkg{i}", "1.0.0")))

        assert cache.get("pkg14") is not None
        assert cache.get("pkg0") is None
