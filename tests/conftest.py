"""Shared fixtures."""

import json

import pytest

from config import PaktConfig
from store.content_store import ContentStore

from fakes import FakeRegistry


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "cache")


@pytest.fixture
def config(tmp_path):
    cfg = PaktConfig()
    cfg.cache.dir = str(tmp_path / "cache")
    cfg.network.retry_base_delay = 0.0
    cfg.network.cpu_workers = 2
    return cfg


@pytest.fixture
def project(tmp_path):
    """Factory writing a package.json into a fresh project directory."""

    def _make(manifest, name="project"):
        path = tmp_path / name
        path.mkdir(parents=True, exist_ok=True)
        (path / "package.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return path

    return _make
