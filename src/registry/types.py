"""Typed views over npm registry documents (packuments)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from constants import Capability, Constants

logger = logging.getLogger(__name__)

_CAPABILITY_VALUES = {c.value for c in Capability}


@dataclass(frozen=True)
class DistInfo:
    """Tarball location and published digests for one version."""

    tarball: str
    integrity: Optional[str] = None
    shasum: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DistInfo":
        size = data.get("unpackedSize", data.get("size"))
        return cls(
            tarball=str(data.get("tarball") or ""),
            integrity=data.get("integrity") or None,
            shasum=data.get("shasum") or None,
            size=int(size) if isinstance(size, int) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"tarball": self.tarball}
        if self.integrity:
            data["integrity"] = self.integrity
        if self.shasum:
            data["shasum"] = self.shasum
        if self.size is not None:
            data["size"] = self.size
        return data


def _str_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}


def normalize_bin(name: str, value: Any) -> Dict[str, str]:
    """Normalize the ``bin`` field to a command -> relative path mapping.

    A bare string installs one command named after the package (without
    its scope).
    """
    if isinstance(value, str) and value:
        command = name.split("/", 1)[-1]
        return {command: value}
    return _str_map(value)


def declared_capabilities(raw: Any, has_install_script: bool) -> Tuple[str, ...]:
    """Capabilities a version declares, as sorted Capability values.

    ``permissions`` may be a list of names or a mapping of name -> truthy.
    Install scripts always imply the ``scripts`` capability.
    """
    names: List[str] = []
    if isinstance(raw, list):
        names = [str(v) for v in raw]
    elif isinstance(raw, dict):
        names = [str(k) for k, v in raw.items() if v]
    found = set()
    for item in names:
        lowered = item.strip().lower()
        if lowered in _CAPABILITY_VALUES:
            found.add(lowered)
        else:
            logger.debug("Ignoring unknown declared capability %r", item)
    if has_install_script:
        found.add(Capability.SCRIPTS.value)
    return tuple(sorted(found))


@dataclass(frozen=True)
class VersionMetadata:
    """Manifest of one published version."""

    name: str
    version: str
    dist: DistInfo
    dependencies: Dict[str, str] = field(default_factory=dict)
    optional_dependencies: Dict[str, str] = field(default_factory=dict)
    peer_dependencies: Dict[str, str] = field(default_factory=dict)
    optional_peers: Tuple[str, ...] = ()
    scripts: Dict[str, str] = field(default_factory=dict)
    has_install_script: bool = False
    permissions: Tuple[str, ...] = ()
    bin: Dict[str, str] = field(default_factory=dict)
    deprecated: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, version: str, data: Mapping[str, Any]) -> "VersionMetadata":
        scripts = _str_map(data.get("scripts"))
        flag = data.get("hasInstallScript")
        if isinstance(flag, bool):
            has_install = flag
        else:
            has_install = any(s in scripts for s in Constants.INSTALL_SCRIPTS)
        peer_meta = data.get("peerDependenciesMeta") or {}
        optional_peers = tuple(sorted(
            peer for peer, meta in peer_meta.items()
            if isinstance(meta, dict) and meta.get("optional")
        )) if isinstance(peer_meta, dict) else ()
        deprecated = data.get("deprecated")
        return cls(
            name=str(data.get("name") or name),
            version=str(data.get("version") or version),
            dist=DistInfo.from_dict(data.get("dist") or {}),
            dependencies=_str_map(data.get("dependencies")),
            optional_dependencies=_str_map(data.get("optionalDependencies")),
            peer_dependencies=_str_map(data.get("peerDependencies")),
            optional_peers=optional_peers,
            scripts=scripts,
            has_install_script=has_install,
            permissions=declared_capabilities(data.get("permissions"), has_install),
            bin=normalize_bin(name, data.get("bin")),
            deprecated=deprecated if isinstance(deprecated, str) and deprecated else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back into packument version shape."""
        data: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "dist": self.dist.to_dict(),
            "hasInstallScript": self.has_install_script,
        }
        if self.dependencies:
            data["dependencies"] = dict(self.dependencies)
        if self.optional_dependencies:
            data["optionalDependencies"] = dict(self.optional_dependencies)
        if self.peer_dependencies:
            data["peerDependencies"] = dict(self.peer_dependencies)
        if self.optional_peers:
            data["peerDependenciesMeta"] = {p: {"optional": True} for p in self.optional_peers}
        if self.scripts:
            data["scripts"] = dict(self.scripts)
        if self.permissions:
            data["permissions"] = list(self.permissions)
        if self.bin:
            data["bin"] = dict(self.bin)
        if self.deprecated:
            data["deprecated"] = self.deprecated
        return data


@dataclass(frozen=True)
class PackageMetadata:
    """All published versions of a package plus its dist-tags."""

    name: str
    versions: Dict[str, VersionMetadata] = field(default_factory=dict)
    dist_tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_packument(cls, name: str, data: Mapping[str, Any]) -> "PackageMetadata":
        """Build from a full or abbreviated npm packument."""
        versions_raw = data.get("versions") or {}
        versions: Dict[str, VersionMetadata] = {}
        if isinstance(versions_raw, dict):
            for version, body in versions_raw.items():
                if not isinstance(body, dict):
                    continue
                versions[version] = VersionMetadata.from_dict(name, version, body)
        return cls(
            name=str(data.get("name") or name),
            versions=versions,
            dist_tags=_str_map(data.get("dist-tags")),
        )

    def to_packument(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "dist-tags": dict(self.dist_tags),
            "versions": {v: meta.to_dict() for v, meta in self.versions.items()},
        }

    def get_version(self, version: str) -> Optional[VersionMetadata]:
        return self.versions.get(version)

    @property
    def latest(self) -> Optional[str]:
        return self.dist_tags.get("latest")
