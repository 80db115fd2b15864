"""Backtracking dependency resolver.

Resolution walks an explicit, sorted work list of dependency edges keyed by
``(depth, requester name, requester version, dependency name)``. Each edge
either reuses a compatible package already visible from the requester, or
picks a version and places it: in the root scope when the name is not
visible at all, nested under the requester otherwise. Nodes are memoized
by ``(name, version)``; a memoized node placed at an additional scope has
its own edges re-checked from there.

Every edge with more than one candidate is a decision point. Graph
mutations go onto an undo trail, so a failing edge can jump back to the
most recent decision that introduced the failing requester (or one of its
ancestors) and try that decision's next candidate.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from config import PaktConfig
from common.errors import InvalidConstraint, PackageNotFound, UnresolvableConstraint
from common.logging_utils import extra_context, is_debug_enabled, Timer
from registry.types import PackageMetadata, VersionMetadata
from versioning.constraints import Constraint, parse_constraint, sort_versions
from versioning.models import DependencyKind, NodeKey, PackageSpec, ResolutionMode, format_key
from versioning.parser import parse_manifest_entry
from workspace.graph import WorkspaceMember

from .graph import DependencyGraph, ResolvedNode, Scope

logger = logging.getLogger(__name__)


class MetadataSource(Protocol):
    async def fetch_metadata(self, name: str) -> PackageMetadata: ...

    def prefetch(self, names: Iterable[str]) -> None: ...


class _PlacementConflict(Exception):
    """A candidate cannot be placed without changing an existing resolution."""


@dataclass
class _WorkItem:
    requester: Scope
    spec: PackageSpec
    depth: int


@dataclass
class _Decision:
    index: int
    item: _WorkItem
    metadata: PackageMetadata
    candidates: List[str]
    position: int
    mark: int
    chosen: NodeKey


def _edge_specs(meta: VersionMetadata) -> List[PackageSpec]:
    """Installable edges of a registry package; optional entries override regular ones."""
    specs: Dict[str, PackageSpec] = {}
    for name, raw in meta.dependencies.items():
        specs[name] = parse_manifest_entry(name, raw, DependencyKind.REGULAR)
    for name, raw in meta.optional_dependencies.items():
        specs[name] = parse_manifest_entry(name, raw, DependencyKind.OPTIONAL)
    return [specs[name] for name in sorted(specs)]


class Resolver:
    """Resolve declared dependencies into a ``DependencyGraph``.

    Args:
        client: Metadata source (``RegistryClient`` or a test double).
        config: Runtime configuration (hoisting, step bound).
        locked: Versions pinned by the previous lockfile, per package name.
            A still-satisfying pin is preferred over newer releases.
    """

    def __init__(
        self,
        client: MetadataSource,
        config: Optional[PaktConfig] = None,
        locked: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self._client = client
        self._config = config or PaktConfig()
        self._locked = {name: set(versions) for name, versions in (locked or {}).items()}
        self._max_steps = self._config.resolver.max_steps
        self._hoist = self._config.workspace.hoist
        self._reset()

    def _reset(self) -> None:
        self._nodes: Dict[NodeKey, ResolvedNode] = {}
        self._root_edges: Dict[str, NodeKey] = {}
        self._root_optional: Set[str] = set()
        self._scopes: Dict[Scope, Dict[str, NodeKey]] = {None: {}}
        self._work: List[Tuple[Tuple[Any, ...], int, _WorkItem]] = []
        self._pointer = 0
        self._seq = 0
        self._trail: List[Tuple[Any, ...]] = []
        self._decisions: List[_Decision] = []
        self._origins: Dict[NodeKey, Tuple[int, _WorkItem]] = {}
        self._warnings: List[str] = []
        self._failures: List[Tuple[str, str, str]] = []
        self._metadata: Dict[str, PackageMetadata] = {}
        self.steps = 0

    # -- public API ------------------------------------------------------

    async def resolve(
        self,
        root_specs: Sequence[PackageSpec],
        members: Sequence[WorkspaceMember] = (),
    ) -> DependencyGraph:
        """Resolve the root manifest's dependencies and workspace members.

        Raises:
            InvalidConstraint: a root or member constraint is malformed.
            UnresolvableConstraint: the search space is exhausted or the
                step bound is hit.
            PackageNotFound, NetworkFailure: propagated from the client
                when they are not recoverable by backtracking.
        """
        self._reset()
        for spec in root_specs:
            self._check_declared(spec, members)
        for member in members:
            for spec in member.specs:
                self._check_declared(spec, members)

        with Timer() as timer:
            for member in members:
                node = ResolvedNode(
                    name=member.name,
                    version=member.version,
                    local_path=member.rel_path,
                    depth=0,
                )
                node.member = node.key
                self._nodes[node.key] = node
                node.placements.append(None)
                self._scopes[None][member.name] = node.key
            for spec in root_specs:
                self._enqueue(None, spec, 1)
            for member in members:
                for spec in member.specs:
                    self._enqueue((member.name, member.version), spec, 1)

            while self._pointer < len(self._work):
                _key, _seq, item = self._work[self._pointer]
                await self._process(self._pointer, item)

        graph = DependencyGraph(
            nodes=self._nodes,
            root_edges=self._root_edges,
            scopes=self._scopes,
            warnings=list(self._warnings),
        )
        self._mark_optional(graph)
        graph.warnings.extend(self._peer_warnings(graph))
        logger.info(
            "Resolved %d package(s) in %d step(s)",
            len(graph.packages()),
            self.steps,
            extra=extra_context(
                event="resolve_complete",
                component="resolver",
                outcome="success",
                count=len(graph.packages()),
                steps=self.steps,
                duration_ms=timer.duration_ms(),
            ),
        )
        return graph

    # -- work list -------------------------------------------------------

    def _check_declared(self, spec: PackageSpec, members: Sequence[WorkspaceMember]) -> None:
        constraint = parse_constraint(spec.name, spec.constraint)
        if constraint.mode == ResolutionMode.WORKSPACE and spec.name not in {m.name for m in members}:
            raise InvalidConstraint(spec.name, spec.constraint, "not a workspace package")

    def _enqueue(self, requester: Scope, spec: PackageSpec, depth: int) -> None:
        req_name, req_version = requester if requester is not None else ("", "")
        sort_key = (depth, req_name, req_version, spec.name)
        self._seq += 1
        entry = (sort_key, self._seq, _WorkItem(requester, spec, depth))
        bisect.insort(self._work, entry)
        self._trail.append(("work", entry))
        if spec.constraint.startswith("workspace:"):
            return
        self._client.prefetch([spec.fetch_name])

    # -- undo trail ------------------------------------------------------

    def _undo(self, mark: int) -> None:
        while len(self._trail) > mark:
            action = self._trail.pop()
            kind = action[0]
            if kind == "work":
                entry = action[1]
                index = bisect.bisect_left(self._work, entry)
                del self._work[index]
            elif kind == "node":
                del self._nodes[action[1]]
                self._origins.pop(action[1], None)
                self._scopes.pop(action[1], None)
            elif kind == "placement":
                _kind, key, scope, name = action
                self._nodes[key].placements.pop()
                del self._scopes[scope][name]
            elif kind == "edge":
                _kind, requester, name, optional = action
                edges = self._root_edges if requester is None else self._nodes[requester].edges
                del edges[name]
                if optional:
                    opt = self._root_optional if requester is None else self._nodes[requester].optional_edges
                    opt.discard(name)
            elif kind == "warning":
                self._warnings.pop()

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._warnings.append(message)
        self._trail.append(("warning",))

    # -- visibility ------------------------------------------------------

    def _chains(self, scope: Scope) -> List[List[Scope]]:
        """All lookup chains from ``scope`` up to the root, one per physical location."""
        if scope is None:
            return [[None]]
        node = self._nodes[scope]
        chains: List[List[Scope]] = []
        for placement in node.placements:
            for chain in self._chains(placement):
                chains.append([scope] + chain)
        return chains

    def _lookup(self, scope: Scope, name: str) -> List[Optional[NodeKey]]:
        """First node named ``name`` along each lookup chain of ``scope``."""
        hits: List[Optional[NodeKey]] = []
        for chain in self._chains(scope):
            hit = None
            for s in chain:
                hit = self._scopes.get(s, {}).get(name)
                if hit is not None:
                    break
            hits.append(hit)
        return hits

    def _compatible(self, key: NodeKey, spec: PackageSpec, constraint: Constraint) -> bool:
        node = self._nodes[key]
        if node.is_local:
            if spec.real_name is not None:
                return False
            return constraint.mode == ResolutionMode.WORKSPACE or constraint.matches(node.version)
        if constraint.mode == ResolutionMode.WORKSPACE or node.fetch_name != spec.fetch_name:
            return False
        metadata = self._metadata.get(spec.fetch_name)
        tags = metadata.dist_tags if metadata is not None else {}
        return constraint.matches(node.version, tags)

    def _shadow_check(self, scope: Scope, name: str, key: NodeKey) -> None:
        """Refuse to place ``key`` in ``scope`` if that changes an existing resolution."""
        stack: List[Scope] = [scope]
        visited: Set[Scope] = set()
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            edges = self._root_edges if current is None else self._nodes[current].edges
            target = edges.get(name)
            if target is not None and target != key:
                raise _PlacementConflict(f"{name} would shadow {format_key(target)}")
            for child in self._scopes.get(current, {}).values():
                if name not in self._scopes.get(child, {}):
                    stack.append(child)

    def _place_in(self, node: ResolvedNode, scope: Scope) -> None:
        existing = self._scopes.setdefault(scope, {}).get(node.name)
        if existing is not None:
            if existing == node.key:
                return
            raise _PlacementConflict(f"{node.name} already placed as {format_key(existing)}")
        self._shadow_check(scope, node.name, node.key)
        self._scopes[scope][node.name] = node.key
        node.placements.append(scope)
        self._trail.append(("placement", node.key, scope, node.name))

    def _ensure_visible(self, key: NodeKey, scope: Scope) -> None:
        """Re-check resolved edges of ``key`` (and its nested packages) from a new placement."""
        pending: List[Tuple[NodeKey, Scope]] = [(key, scope)]
        seen: Set[Tuple[NodeKey, Scope]] = set()
        while pending:
            current, location = pending.pop()
            if (current, location) in seen:
                continue
            seen.add((current, location))
            node = self._nodes[current]
            own = self._scopes.get(current, {})
            for dep_name in sorted(node.edges):
                target = node.edges[dep_name]
                if dep_name in own:
                    continue
                if all(hit == target for hit in self._lookup(location, dep_name)):
                    continue
                self._place_in(self._nodes[target], current)
                pending.append((target, current))
            for child in sorted(self._scopes.get(current, {}).values()):
                pending.append((child, current))

    def _introducers(self, requester: Scope) -> Set[NodeKey]:
        chain: Set[NodeKey] = set()
        current = requester
        while current is not None and current not in chain:
            chain.add(current)
            current = self._nodes[current].introduced_by
        return chain

    def _target_scope(self, requester: Scope, name: str) -> Scope:
        hits = self._lookup(requester, name)
        if all(hit is None for hit in hits):
            if not self._hoist and requester is not None:
                member = self._nodes[requester].member
                if member is not None and all(member in c for c in self._chains(requester)):
                    return member
            return None
        if requester is None:
            raise _PlacementConflict(f"{name} conflicts with a package in the root scope")
        return requester

    # -- processing ------------------------------------------------------

    def _tick(self) -> None:
        self.steps += 1
        if self.steps > self._max_steps:
            raise UnresolvableConstraint(
                self._failures,
                f"step limit of {self._max_steps} exceeded",
            )

    def _requester_label(self, requester: Scope) -> str:
        return "<root>" if requester is None else format_key(requester)

    def _set_edge(self, requester: Scope, name: str, key: NodeKey, optional: bool) -> None:
        if requester is None:
            self._root_edges[name] = key
            if optional:
                self._root_optional.add(name)
        else:
            node = self._nodes[requester]
            node.edges[name] = key
            if optional:
                node.optional_edges.add(name)
        self._trail.append(("edge", requester, name, optional))

    async def _metadata_for(self, name: str) -> PackageMetadata:
        metadata = self._metadata.get(name)
        if metadata is None:
            metadata = await self._client.fetch_metadata(name)
            self._metadata[name] = metadata
        return metadata

    def _candidates(self, spec: PackageSpec, constraint: Constraint, metadata: PackageMetadata) -> List[str]:
        ordered = constraint.select(metadata.versions.keys(), metadata.dist_tags)
        pinned = [v for v in sort_versions(self._locked.get(spec.name, ())) if v in ordered]
        rest = [v for v in ordered if v not in pinned]
        return pinned + rest

    async def _process(self, index: int, item: _WorkItem) -> None:
        self._tick()
        spec = item.spec
        try:
            constraint = parse_constraint(spec.name, spec.constraint)
        except InvalidConstraint as exc:
            await self._fail(item, str(exc))
            return

        if constraint.mode == ResolutionMode.TAG:
            try:
                await self._metadata_for(spec.fetch_name)
            except PackageNotFound as exc:
                await self._fail(item, str(exc))
                return

        hits = self._lookup(item.requester, spec.name)
        first = hits[0] if hits else None
        if first is not None and all(h == first for h in hits) and self._compatible(first, spec, constraint):
            self._set_edge(item.requester, spec.name, first, spec.optional)
            self._pointer = index + 1
            return

        if constraint.mode == ResolutionMode.WORKSPACE:
            await self._fail(item, "workspace package is not visible from the requester")
            return

        try:
            metadata = await self._metadata_for(spec.fetch_name)
        except PackageNotFound as exc:
            await self._fail(item, str(exc))
            return

        candidates = self._candidates(spec, constraint, metadata)
        if is_debug_enabled(logger):
            logger.debug(
                "Candidates for %s",
                spec.name,
                extra=extra_context(
                    event="resolve_candidates",
                    component="resolver",
                    package=spec.name,
                    constraint=spec.constraint,
                    requester=self._requester_label(item.requester),
                    candidates=candidates[:10],
                ),
            )
        if not await self._try_candidates(index, item, metadata, candidates, 0):
            await self._fail(item, f"no version of {spec.fetch_name} satisfies '{spec.constraint}'")

    async def _try_candidates(
        self,
        index: int,
        item: _WorkItem,
        metadata: PackageMetadata,
        candidates: List[str],
        start: int,
    ) -> bool:
        for position in range(start, len(candidates)):
            if position > start:
                self._tick()
            mark = len(self._trail)
            try:
                chosen = self._place(item, candidates[position], metadata)
            except _PlacementConflict as exc:
                logger.debug("Cannot place %s@%s: %s", item.spec.name, candidates[position], exc)
                self._undo(mark)
                continue
            if len(candidates) - position > 1:
                self._decisions.append(
                    _Decision(index, item, metadata, candidates, position, mark, chosen)
                )
            self._pointer = index + 1
            return True
        return False

    def _place(self, item: _WorkItem, version: str, metadata: PackageMetadata) -> NodeKey:
        spec = item.spec
        key = (spec.name, version)
        existing = self._nodes.get(key)
        if existing is not None and (existing.is_local or existing.real_name != spec.real_name):
            raise _PlacementConflict(f"{format_key(key)} is already a different package")

        scope = self._target_scope(item.requester, spec.name)
        if existing is not None:
            self._place_in(existing, scope)
            self._ensure_visible(key, scope)
        else:
            meta = metadata.versions[version]
            parent = self._nodes.get(item.requester) if item.requester is not None else None
            node = ResolvedNode(
                name=spec.name,
                version=version,
                dist=meta.dist,
                real_name=spec.real_name,
                peer_dependencies=dict(meta.peer_dependencies),
                optional_peers=meta.optional_peers,
                declared_capabilities=meta.permissions,
                has_install_script=meta.has_install_script,
                bin=dict(meta.bin),
                introduced_by=item.requester,
                member=parent.member if parent is not None else None,
                depth=item.depth,
            )
            self._origins[key] = (len(self._trail), item)
            self._nodes[key] = node
            self._trail.append(("node", key))
            self._place_in(node, scope)
            if meta.deprecated:
                self._warn(f"{format_key(key)} is deprecated: {meta.deprecated}")
            for dep in _edge_specs(meta):
                self._enqueue(key, dep, item.depth + 1)
        self._set_edge(item.requester, spec.name, key, spec.optional)
        return key

    async def _fail(self, item: _WorkItem, reason: str) -> None:
        """Handle an edge that cannot be satisfied: drop it, backjump, or give up."""
        while True:
            spec = item.spec
            label = self._requester_label(item.requester)
            if spec.optional:
                self._warn(f"Skipping optional dependency {spec.name}@{spec.constraint} of {label}: {reason}")
                index = self._index_of(item)
                self._pointer = index + 1
                return

            failure = (label, spec.name, spec.constraint)
            if failure not in self._failures:
                self._failures.append(failure)
            logger.debug("Edge %s -> %s@%s failed: %s", label, spec.name, spec.constraint, reason)

            introducers = self._introducers(item.requester)
            position = next(
                (i for i in range(len(self._decisions) - 1, -1, -1) if self._decisions[i].chosen in introducers),
                None,
            )
            if position is None:
                if self._skip_optional_ancestor(item, reason):
                    return
                raise UnresolvableConstraint(self._failures, reason)
            decision = self._decisions[position]
            del self._decisions[position:]

            self._undo(decision.mark)
            self._pointer = decision.index
            logger.debug(
                "Backtracking to %s (candidate %d of %d)",
                decision.item.spec.name,
                decision.position + 2,
                len(decision.candidates),
            )
            if await self._try_candidates(
                decision.index, decision.item, decision.metadata, decision.candidates, decision.position + 1
            ):
                return
            item = decision.item
            reason = f"no remaining version of {item.spec.fetch_name} satisfies '{item.spec.constraint}'"

    def _skip_optional_ancestor(self, item: _WorkItem, reason: str) -> bool:
        """Drop the nearest optional edge that brought in ``item``'s requester.

        Everything placed since that edge is undone, so the whole optional
        subtree goes away. Returns False when the chain holds no optional edge.
        """
        current = item.requester
        seen: Set[NodeKey] = set()
        while current is not None and current not in seen:
            seen.add(current)
            origin = self._origins.get(current)
            if origin is None:
                return False
            mark, edge = origin
            if edge.spec.optional:
                break
            current = self._nodes[current].introduced_by
        else:
            return False

        self._decisions = [d for d in self._decisions if d.mark < mark]
        self._undo(mark)
        self._warn(
            f"Skipping optional dependency {edge.spec.name}@{edge.spec.constraint} of "
            f"{self._requester_label(edge.requester)}: {self._requester_label(item.requester)} -> "
            f"{item.spec.name}@{item.spec.constraint} failed ({reason})"
        )
        self._pointer = self._index_of(edge) + 1
        return True

    def _index_of(self, item: _WorkItem) -> int:
        for index in range(self._pointer, len(self._work)):
            if self._work[index][2] is item:
                return index
        for index, entry in enumerate(self._work):
            if entry[2] is item:
                return index
        raise LookupError("work item vanished")

    # -- post-processing -------------------------------------------------

    def _mark_optional(self, graph: DependencyGraph) -> None:
        """Flag nodes reachable only through optional edges."""
        required: Set[NodeKey] = set()
        stack: List[NodeKey] = [k for n, k in graph.root_edges.items() if n not in self._root_optional]
        for member in graph.members():
            required.add(member.key)
            stack.extend(k for n, k in member.edges.items() if n not in member.optional_edges)
        while stack:
            key = stack.pop()
            if key in required:
                continue
            required.add(key)
            node = graph.nodes[key]
            stack.extend(k for n, k in node.edges.items() if n not in node.optional_edges)
        for node in graph.nodes.values():
            node.optional = node.key not in required

    def _peer_warnings(self, graph: DependencyGraph) -> List[str]:
        warnings: List[str] = []
        for node in graph.packages():
            for peer, raw in sorted(node.peer_dependencies.items()):
                visible = None
                for placement in node.placements:
                    visible = graph.visible_from(placement, peer)
                    if visible is not None:
                        break
                if visible is None:
                    if peer not in node.optional_peers:
                        warnings.append(f"{node} requires peer {peer}@{raw}, which is not installed")
                    continue
                try:
                    satisfied = parse_constraint(peer, raw).matches(visible[1])
                except InvalidConstraint:
                    satisfied = False
                if not satisfied:
                    warnings.append(
                        f"{node} requires peer {peer}@{raw}, but {format_key(visible)} is installed"
                    )
        for message in warnings:
            logger.warning(message)
        return warnings
