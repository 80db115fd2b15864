"""Resolved dependency graph and its physical ``node_modules`` layout."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from constants import Constants
from registry.types import DistInfo
from versioning.models import NodeKey, format_key

# A visibility scope: None is the project root, otherwise the key of the
# node whose nested node_modules holds the placed packages.
Scope = Optional[NodeKey]


@dataclass
class ResolvedNode:
    """One concrete package version in the graph.

    ``placements`` lists the scopes the node is installed into; the first
    one is its home. Workspace members carry ``local_path`` and no dist.
    """

    name: str
    version: str
    dist: Optional[DistInfo] = None
    real_name: Optional[str] = None
    placements: List[Scope] = field(default_factory=list)
    edges: Dict[str, NodeKey] = field(default_factory=dict)
    optional_edges: Set[str] = field(default_factory=set)
    peer_dependencies: Dict[str, str] = field(default_factory=dict)
    optional_peers: Tuple[str, ...] = ()
    optional: bool = False
    local_path: Optional[str] = None
    declared_capabilities: Tuple[str, ...] = ()
    has_install_script: bool = False
    bin: Dict[str, str] = field(default_factory=dict)
    introduced_by: Scope = None
    member: Optional[NodeKey] = None
    depth: int = 0

    @property
    def key(self) -> NodeKey:
        return (self.name, self.version)

    @property
    def fetch_name(self) -> str:
        return self.real_name or self.name

    @property
    def is_local(self) -> bool:
        return self.local_path is not None

    def __str__(self) -> str:
        return format_key(self.key)


@dataclass
class DependencyGraph:
    """Output of the resolver.

    Every edge target satisfies the constraint that produced it, and each
    scope maps a package name to at most one node.
    """

    nodes: Dict[NodeKey, ResolvedNode] = field(default_factory=dict)
    root_edges: Dict[str, NodeKey] = field(default_factory=dict)
    scopes: Dict[Scope, Dict[str, NodeKey]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def members(self) -> List[ResolvedNode]:
        """Workspace member nodes, sorted by name."""
        return sorted((n for n in self.nodes.values() if n.is_local), key=lambda n: n.name)

    def packages(self) -> List[ResolvedNode]:
        """Registry nodes, sorted by (name, version)."""
        return sorted((n for n in self.nodes.values() if not n.is_local), key=lambda n: n.key)

    def visible_from(self, scope: Scope, name: str) -> Optional[NodeKey]:
        """Resolve ``name`` from ``scope`` by walking home placements up to the root."""
        current = scope
        seen = set()
        while True:
            found = self.scopes.get(current, {}).get(name)
            if found is not None:
                return found
            if current is None or current in seen:
                return None
            seen.add(current)
            node = self.nodes[current]
            current = node.placements[0] if node.placements else None

    def install_paths(self) -> Dict[NodeKey, List[str]]:
        """Return every ``node_modules`` path (POSIX, project-relative) per registry node."""
        cache: Dict[Scope, List[str]] = {None: [Constants.NODE_MODULES]}

        def scope_dirs(scope: Scope, trail: Tuple[NodeKey, ...] = ()) -> List[str]:
            if scope in cache:
                return cache[scope]
            node = self.nodes[scope]
            if node.is_local:
                base = node.local_path.rstrip("/")
                dirs = [Constants.NODE_MODULES if base in ("", ".") else f"{base}/{Constants.NODE_MODULES}"]
            else:
                dirs = []
                for placement in node.placements:
                    if placement in trail:
                        continue
                    for parent_dir in scope_dirs(placement, trail + (scope,)):
                        dirs.append(f"{parent_dir}/{node.name}/{Constants.NODE_MODULES}")
            cache[scope] = sorted(set(dirs))
            return cache[scope]

        paths: Dict[NodeKey, List[str]] = {}
        for node in self.packages():
            node_paths = set()
            for placement in node.placements:
                for parent_dir in scope_dirs(placement):
                    node_paths.add(f"{parent_dir}/{node.name}")
            paths[node.key] = sorted(node_paths)
        return paths
