"""Workspace discovery and local package ordering."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from config import WorkspaceConfig
from common.errors import InvalidConstraint, ManifestError, WorkspaceCycle
from versioning.constraints import parse_constraint
from versioning.models import PackageSpec
from versioning.parser import dependency_specs, load_manifest

logger = logging.getLogger(__name__)


@dataclass
class WorkspaceMember:
    """A local package that is part of the workspace."""

    name: str
    version: str
    path: Path
    rel_path: str
    manifest: Dict[str, Any] = field(default_factory=dict)
    specs: List[PackageSpec] = field(default_factory=list)


def workspace_globs(manifest: Mapping[str, Any], config: Optional[WorkspaceConfig] = None) -> List[str]:
    """Return member globs from ``workspaces`` (list or ``{packages: [...]}``), else config."""
    declared = manifest.get("workspaces")
    if isinstance(declared, dict):
        declared = declared.get("packages")
    if isinstance(declared, list) and declared:
        return [str(g) for g in declared]
    if config is not None:
        return list(config.packages)
    return []


def discover_members(
    project_dir: Path,
    manifest: Mapping[str, Any],
    config: Optional[WorkspaceConfig] = None,
) -> List[WorkspaceMember]:
    """Find workspace members below ``project_dir``, sorted by name.

    Raises:
        ManifestError: a member manifest is unreadable, unnamed, or two
            members share a name.
    """
    root = Path(project_dir).resolve()
    found: Dict[str, WorkspaceMember] = {}
    for pattern in workspace_globs(manifest, config):
        for candidate in sorted(root.glob(pattern.rstrip("/"))):
            if not (candidate / "package.json").is_file():
                continue
            member_manifest = load_manifest(candidate)
            name = member_manifest.get("name")
            if not isinstance(name, str) or not name:
                raise ManifestError(f"Workspace package at {candidate} has no name")
            if name in found:
                if found[name].path == candidate.resolve():
                    continue
                raise ManifestError(f"Duplicate workspace package name: {name}")
            rel = candidate.resolve().relative_to(root).as_posix()
            found[name] = WorkspaceMember(
                name=name,
                version=str(member_manifest.get("version") or "0.0.0"),
                path=candidate.resolve(),
                rel_path=rel,
                manifest=member_manifest,
                specs=dependency_specs(member_manifest),
            )
    members = [found[n] for n in sorted(found)]
    if members:
        logger.info("Discovered %d workspace package(s)", len(members))
    return members


def is_local_edge(spec: PackageSpec, member: WorkspaceMember) -> bool:
    """Return True when ``spec`` resolves to the local ``member``."""
    if spec.real_name is not None or spec.name != member.name:
        return False
    if spec.constraint.startswith("workspace:"):
        return True
    try:
        return parse_constraint(spec.name, spec.constraint).matches(member.version)
    except InvalidConstraint:
        return False


def local_dependencies(members: Sequence[WorkspaceMember]) -> Dict[str, List[str]]:
    """Map each member to the sorted names of members it depends on locally."""
    by_name = {m.name: m for m in members}
    graph: Dict[str, List[str]] = {}
    for member in members:
        deps = {
            spec.name
            for spec in member.specs
            if spec.name in by_name and is_local_edge(spec, by_name[spec.name])
        }
        graph[member.name] = sorted(deps)
    return graph


def _find_cycle(graph: Mapping[str, Sequence[str]], candidates: Sequence[str]) -> List[str]:
    """Return one cycle (first node repeated at the end) among ``candidates``."""
    remaining = set(candidates)
    for start in sorted(remaining):
        stack = [start]
        on_path = {start: 0}
        iters = [iter(sorted(d for d in graph[start] if d in remaining))]
        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                iters.pop()
                on_path.pop(stack.pop())
                continue
            if nxt in on_path:
                return stack[on_path[nxt]:] + [nxt]
            on_path[nxt] = len(stack)
            stack.append(nxt)
            iters.append(iter(sorted(d for d in graph[nxt] if d in remaining)))
    return sorted(remaining)


def topological_order(graph: Mapping[str, Sequence[str]]) -> List[str]:
    """Order members so that dependencies come first (Kahn, ties by name).

    Raises:
        WorkspaceCycle: the local dependency graph has a cycle.
    """
    pending = {name: len(deps) for name, deps in graph.items()}
    dependents: Dict[str, List[str]] = {name: [] for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [name for name, count in pending.items() if count == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(graph):
        cycle = _find_cycle(graph, [n for n in graph if n not in order])
        logger.error("Workspace dependency cycle: %s", " -> ".join(cycle))
        raise WorkspaceCycle(cycle)
    return order
