"""Lockfile and installed-state management.

``pakt-lock.json`` records the exact resolved graph: one entry per package
version with its tarball URL, integrity, dependency versions and install
paths. The file carries a digest over its canonical JSON form so edits
outside pakt are detected on load.

``node_modules/.pakt-state.json`` uses the same entry format to describe
what is actually installed; install plans diff against it.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import tempfile
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from constants import Constants
from common.errors import LockfileTampered
from resolver.graph import DependencyGraph
from security.integrity import expected_integrity
from versioning.constraints import sort_versions
from versioning.models import NodeKey
from workspace.graph import WorkspaceMember

logger = logging.getLogger(__name__)


@dataclass
class LockfileEntry:
    """One locked package version."""

    name: str
    version: str
    resolved: str
    integrity: Optional[str] = None
    dependencies: Dict[str, str] = field(default_factory=dict)
    paths: List[str] = field(default_factory=list)
    has_install_script: bool = False
    capabilities: List[str] = field(default_factory=list)
    optional: bool = False
    bin: Dict[str, str] = field(default_factory=dict)
    real_name: Optional[str] = None

    @property
    def key(self) -> NodeKey:
        return (self.name, self.version)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "resolved": self.resolved,
            "integrity": self.integrity,
            "dependencies": dict(sorted(self.dependencies.items())),
            "paths": sorted(self.paths),
            "hasInstallScript": self.has_install_script,
            "capabilities": sorted(self.capabilities),
            "optional": self.optional,
        }
        if self.bin:
            data["bin"] = dict(sorted(self.bin.items()))
        if self.real_name:
            data["realName"] = self.real_name
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LockfileEntry":
        return cls(
            name=str(data["name"]),
            version=str(data["version"]),
            resolved=str(data.get("resolved") or ""),
            integrity=data.get("integrity") or None,
            dependencies={str(k): str(v) for k, v in (data.get("dependencies") or {}).items()},
            paths=[str(p) for p in data.get("paths") or []],
            has_install_script=bool(data.get("hasInstallScript", False)),
            capabilities=[str(c) for c in data.get("capabilities") or []],
            optional=bool(data.get("optional", False)),
            bin={str(k): str(v) for k, v in (data.get("bin") or {}).items()},
            real_name=data.get("realName") or None,
        )

    def same_install(self, other: "LockfileEntry") -> bool:
        """True when installing ``other`` would leave this entry's files untouched."""
        return (
            self.integrity == other.integrity
            and self.resolved == other.resolved
            and sorted(self.paths) == sorted(other.paths)
        )


@dataclass
class InstallPlan:
    """Difference between two sets of entries."""

    added: List[LockfileEntry] = field(default_factory=list)
    removed: List[LockfileEntry] = field(default_factory=list)
    changed: List[Tuple[LockfileEntry, LockfileEntry]] = field(default_factory=list)
    unchanged: List[LockfileEntry] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def to_install(self) -> List[LockfileEntry]:
        """Entries that must be fetched and linked, sorted by key."""
        entries = list(self.added) + [new for _old, new in self.changed]
        return sorted(entries, key=lambda e: e.key)

    def summary(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "changed": len(self.changed),
            "unchanged": len(self.unchanged),
        }


@dataclass
class Lockfile:
    """In-memory lockfile."""

    packages: List[LockfileEntry] = field(default_factory=list)
    root: Dict[str, str] = field(default_factory=dict)
    workspaces: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    manifest_digest: Optional[str] = None
    version: int = Constants.LOCKFILE_VERSION

    def __post_init__(self) -> None:
        self.packages.sort(key=lambda e: e.key)

    def find(self, name: str, version: str) -> Optional[LockfileEntry]:
        for entry in self.packages:
            if entry.name == name and entry.version == version:
                return entry
        return None

    def locked_versions(self) -> Dict[str, List[str]]:
        """Versions pinned per package name, newest first."""
        versions: Dict[str, List[str]] = defaultdict(list)
        for entry in self.packages:
            versions[entry.name].append(entry.version)
        return {name: sort_versions(v) for name, v in versions.items()}

    def body(self) -> Dict[str, Any]:
        """Every field except the integrity digest."""
        return {
            "lockfileVersion": self.version,
            "manifestDigest": self.manifest_digest,
            "root": dict(sorted(self.root.items())),
            "workspaces": {name: self.workspaces[name] for name in sorted(self.workspaces)},
            "packages": [entry.to_dict() for entry in sorted(self.packages, key=lambda e: e.key)],
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.body()
        data["integrity"] = compute_integrity(data)
        return data

    def dumps(self) -> str:
        """Serialize deterministically: sorted keys, two-space indent, trailing newline."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Lockfile":
        return cls(
            packages=[LockfileEntry.from_dict(p) for p in data.get("packages") or []],
            root={str(k): str(v) for k, v in (data.get("root") or {}).items()},
            workspaces=dict(data.get("workspaces") or {}),
            manifest_digest=data.get("manifestDigest"),
            version=int(data.get("lockfileVersion", Constants.LOCKFILE_VERSION)),
        )


def _canonical(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_integrity(body: Mapping[str, Any]) -> str:
    """Return ``sha256-<base64>`` over the canonical JSON of ``body`` minus ``integrity``."""
    payload = {k: v for k, v in body.items() if k != "integrity"}
    digest = hashlib.sha256(_canonical(payload)).digest()
    return "sha256-" + base64.b64encode(digest).decode("ascii")


def manifest_digest(
    manifest: Mapping[str, Any],
    members: Sequence[WorkspaceMember] = (),
    hoist: bool = True,
) -> str:
    """Digest of every input that affects resolution."""
    sections = ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies")
    payload = {
        "root": {s: manifest.get(s) or {} for s in sections},
        "workspaces": [
            {
                "name": m.name,
                "version": m.version,
                "path": m.rel_path,
                "deps": {s: m.manifest.get(s) or {} for s in sections},
            }
            for m in members
        ],
        "hoist": hoist,
    }
    return hashlib.sha256(_canonical(payload)).hexdigest()


def from_graph(graph: DependencyGraph, digest: Optional[str] = None) -> Lockfile:
    """Build a lockfile from a resolved graph."""
    paths = graph.install_paths()
    entries = []
    for node in graph.packages():
        dist = node.dist
        entries.append(
            LockfileEntry(
                name=node.name,
                version=node.version,
                resolved=dist.tarball if dist is not None else "",
                integrity=expected_integrity(dist.integrity, dist.shasum) if dist is not None else None,
                dependencies={dep: key[1] for dep, key in node.edges.items()},
                paths=paths.get(node.key, []),
                has_install_script=node.has_install_script,
                capabilities=list(node.declared_capabilities),
                optional=node.optional,
                bin=dict(node.bin),
                real_name=node.real_name,
            )
        )
    workspaces = {
        member.name: {
            "path": member.local_path,
            "version": member.version,
            "dependencies": {dep: key[1] for dep, key in sorted(member.edges.items())},
        }
        for member in graph.members()
    }
    return Lockfile(
        packages=entries,
        root={name: key[1] for name, key in graph.root_edges.items()},
        workspaces=workspaces,
        manifest_digest=digest,
    )


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def save(lockfile: Lockfile, path: Path) -> None:
    """Write ``lockfile`` to ``path`` atomically."""
    _write_atomic(Path(path), lockfile.dumps())
    logger.debug("Wrote lockfile %s (%d packages)", path, len(lockfile.packages))


def load(path: Path, tamper_mode: str = "error") -> Optional[Lockfile]:
    """Load and verify a lockfile.

    Returns None when the file is absent, or when it fails verification and
    ``tamper_mode`` is ``"warn"`` (the caller then re-resolves).

    Raises:
        LockfileTampered: digest mismatch or unparseable content while
            ``tamper_mode`` is ``"error"``.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        return _tampered(path, None, f"unreadable: {exc}", tamper_mode)
    if not isinstance(data, dict):
        return _tampered(path, None, "not a JSON object", tamper_mode)

    stored = data.get("integrity")
    actual = compute_integrity(data)
    if stored != actual:
        return _tampered(path, stored, actual, tamper_mode)

    if data.get("lockfileVersion") != Constants.LOCKFILE_VERSION:
        logger.warning(
            "Ignoring lockfile %s with unsupported lockfileVersion %r",
            path,
            data.get("lockfileVersion"),
        )
        return None
    try:
        return Lockfile.from_dict(data)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        return _tampered(path, stored, f"malformed: {exc}", tamper_mode)


def _tampered(path: Path, expected: Optional[str], actual: str, tamper_mode: str) -> None:
    if tamper_mode == "warn":
        logger.warning(
            "Lockfile %s failed verification (%s); ignoring it and re-resolving",
            path,
            actual,
        )
        return None
    raise LockfileTampered(str(path), expected, actual)


def diff(old: Iterable[LockfileEntry], new: Iterable[LockfileEntry]) -> InstallPlan:
    """Compute the install plan turning ``old`` into ``new``.

    Per package name, versions only in ``new`` are paired with versions
    only in ``old`` in version order and reported as changed; unpaired
    leftovers are added or removed. An entry present on both sides whose
    integrity, URL or install paths differ is also changed.
    """
    old_by_key = {e.key: e for e in old}
    new_by_key = {e.key: e for e in new}
    plan = InstallPlan()

    for key in sorted(set(old_by_key) & set(new_by_key)):
        before, after = old_by_key[key], new_by_key[key]
        if before.same_install(after):
            plan.unchanged.append(after)
        else:
            plan.changed.append((before, after))

    only_old: Dict[str, List[str]] = defaultdict(list)
    only_new: Dict[str, List[str]] = defaultdict(list)
    for name, version in set(old_by_key) - set(new_by_key):
        only_old[name].append(version)
    for name, version in set(new_by_key) - set(old_by_key):
        only_new[name].append(version)

    for name in sorted(set(only_old) | set(only_new)):
        olds = sort_versions(only_old.get(name, []), reverse=False)
        news = sort_versions(only_new.get(name, []), reverse=False)
        for before, after in zip(olds, news):
            plan.changed.append((old_by_key[(name, before)], new_by_key[(name, after)]))
        for before in olds[len(news):]:
            plan.removed.append(old_by_key[(name, before)])
        for after in news[len(olds):]:
            plan.added.append(new_by_key[(name, after)])

    plan.changed.sort(key=lambda pair: pair[1].key)
    plan.added.sort(key=lambda e: e.key)
    plan.removed.sort(key=lambda e: e.key)
    return plan


def state_path(project_dir: Path) -> Path:
    return Path(project_dir) / Constants.NODE_MODULES / Constants.STATE_FILE_NAME


def read_state(project_dir: Path) -> List[LockfileEntry]:
    """Entries recorded by the last successful install; empty when unknown."""
    path = state_path(project_dir)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        return [LockfileEntry.from_dict(p) for p in data.get("packages") or []]
    except FileNotFoundError:
        return []
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("Ignoring unreadable install state %s: %s", path, exc)
        return []


def write_state(project_dir: Path, entries: Iterable[LockfileEntry]) -> None:
    payload = {
        "lockfileVersion": Constants.LOCKFILE_VERSION,
        "packages": [e.to_dict() for e in sorted(entries, key=lambda e: e.key)],
    }
    _write_atomic(state_path(project_dir), json.dumps(payload, indent=2, sort_keys=True) + "\n")
