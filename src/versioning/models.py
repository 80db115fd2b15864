"""Data models for versioning and package resolution."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class ResolutionMode(Enum):
    """Resolution strategy derived from the constraint text."""
    EXACT = "exact"
    RANGE = "range"
    LATEST = "latest"
    TAG = "tag"
    WORKSPACE = "workspace"


class DependencyKind(Enum):
    """Which manifest section a dependency came from."""
    REGULAR = "dependencies"
    OPTIONAL = "optionalDependencies"
    PEER = "peerDependencies"
    DEV = "devDependencies"


@dataclass(frozen=True)
class VersionSpec:
    """Normalized representation of a constraint and derived behavior flags."""
    raw: str
    mode: ResolutionMode
    include_prerelease: bool


@dataclass(frozen=True)
class PackageSpec:
    """A declared dependency: name plus version constraint.

    ``real_name`` differs from ``name`` for ``npm:`` aliases, where the
    package is fetched as ``real_name`` but installed under ``name``.
    """
    name: str
    constraint: str
    kind: DependencyKind = DependencyKind.REGULAR
    registry: Optional[str] = None
    real_name: Optional[str] = None

    @property
    def scope(self) -> Optional[str]:
        """Return ``@scope`` for scoped packages, else None."""
        return package_scope(self.name)

    @property
    def fetch_name(self) -> str:
        """Name to query the registry with."""
        return self.real_name or self.name

    @property
    def optional(self) -> bool:
        return self.kind == DependencyKind.OPTIONAL


def package_scope(name: str) -> Optional[str]:
    """Return ``@scope`` for a scoped package name, else None."""
    if name.startswith("@") and "/" in name:
        return name.split("/", 1)[0]
    return None


# Stable key for a concrete package version.
NodeKey = Tuple[str, str]


def format_key(key: NodeKey) -> str:
    """Render a node key as ``name@version``."""
    return f"{key[0]}@{key[1]}"


def parse_key(text: str) -> NodeKey:
    """Split ``name@version`` (scoped names included) into a node key."""
    name, sep, version = text.rpartition("@")
    if not sep or not name:
        raise ValueError(f"Not a name@version key: {text!r}")
    return name, version
