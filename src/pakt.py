"""pakt - install engine.

Wires manifest loading, workspace discovery, lockfile handling, resolution
and the install pipeline into one operation that always ends in a
classified ``InstallOutcome``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import PaktConfig, load_config
from constants import Constants, ExitCodes
from common.errors import PaktError
from common.logging_utils import extra_context, Timer
from installer.installer import Installer
from lockfile import manager as lockfile_manager
from registry.client import RegistryClient
from resolver.resolver import Resolver
from store.content_store import ContentStore
from versioning.parser import dependency_specs, load_manifest
from workspace.graph import discover_members, local_dependencies, topological_order

logger = logging.getLogger(__name__)


@dataclass
class InstallOutcome:
    """Result surface of an install run."""

    installed: int = 0
    cached: int = 0
    failed: int = 0
    removed: int = 0
    linked_workspaces: List[str] = field(default_factory=list)
    duration_ms: int = 0
    warnings: List[str] = field(default_factory=list)
    scripts_allowed: List[str] = field(default_factory=list)
    scripts_blocked: List[str] = field(default_factory=list)
    resolved: bool = False
    downloads: int = 0
    error: Optional[Dict[str, Any]] = None
    exit_code: int = ExitCodes.SUCCESS.value

    @property
    def ok(self) -> bool:
        return self.exit_code == ExitCodes.SUCCESS.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def install_project(
    project_dir: Path,
    config: Optional[PaktConfig] = None,
    *,
    force_resolve: bool = False,
    force_reverify: bool = False,
    client: Optional[RegistryClient] = None,
    store: Optional[ContentStore] = None,
) -> InstallOutcome:
    """Install the dependencies of the project in ``project_dir``.

    Args:
        project_dir: Directory holding package.json.
        config: Configuration; loaded from the usual sources when omitted.
        force_resolve: Resolve even when the lockfile matches the manifest.
        force_reverify: Re-verify and relink packages that look unchanged.
        client: Registry client to use (not closed here); one is created
            and closed otherwise.
        store: Content store; defaults to the configured cache directory.

    Returns:
        InstallOutcome: counters on success, or ``error`` and a non-zero
        ``exit_code`` for classified failures.
    """
    project_dir = Path(project_dir)
    outcome = InstallOutcome()
    with Timer() as timer:
        try:
            await _install(project_dir, config, outcome, force_resolve, force_reverify, client, store)
        except PaktError as exc:
            logger.error(
                "Install failed: %s",
                exc,
                extra=extra_context(
                    event="install_failed",
                    component="engine",
                    outcome=exc.category,
                    exit_code=exc.exit_code.value,
                ),
            )
            outcome.error = exc.to_dict()
            outcome.exit_code = exc.exit_code.value
    outcome.duration_ms = timer.duration_ms()
    return outcome


async def _install(
    project_dir: Path,
    config: Optional[PaktConfig],
    outcome: InstallOutcome,
    force_resolve: bool,
    force_reverify: bool,
    client: Optional[RegistryClient],
    store: Optional[ContentStore],
) -> None:
    config = config or load_config(project_dir)
    manifest = load_manifest(project_dir)
    members = discover_members(project_dir, manifest, config.workspace)
    # Cycles are reported before any network activity.
    workspace_order = topological_order(local_dependencies(members))

    store = store or ContentStore(config.cache.resolved_dir())
    lock_path = project_dir / Constants.LOCKFILE_NAME
    previous = lockfile_manager.load(lock_path, config.security.lockfile_tamper)
    digest = lockfile_manager.manifest_digest(manifest, members, config.workspace.hoist)

    async with contextlib.AsyncExitStack() as stack:
        if client is None:
            client = await stack.enter_async_context(RegistryClient(config, store))

        if previous is not None and previous.manifest_digest == digest and not force_resolve:
            logger.info("Lockfile is up to date; skipping resolution")
            lock = previous
        else:
            locked = previous.locked_versions() if previous is not None else None
            resolver = Resolver(client, config, locked=locked)
            graph = await resolver.resolve(dependency_specs(manifest), members)
            outcome.warnings.extend(graph.warnings)
            outcome.resolved = True
            lock = lockfile_manager.from_graph(graph, digest)
            if previous is None or previous.dumps() != lock.dumps():
                lockfile_manager.save(lock, lock_path)
                logger.info("Wrote %s", lock_path.name)

        plan = lockfile_manager.diff(lockfile_manager.read_state(project_dir), lock.packages)
        logger.info(
            "Install plan: %d added, %d changed, %d removed, %d unchanged",
            len(plan.added),
            len(plan.changed),
            len(plan.removed),
            len(plan.unchanged),
        )
        installer = Installer(project_dir, store, client, config)
        try:
            report = await installer.install(
                lock,
                plan,
                members=members,
                workspace_order=workspace_order,
                force_reverify=force_reverify,
            )
        finally:
            installer.close()

    outcome.installed = report.installed
    outcome.cached = report.cached
    outcome.failed = report.failed
    outcome.removed = report.removed
    outcome.linked_workspaces = report.linked_workspaces
    outcome.warnings.extend(report.warnings)
    outcome.scripts_allowed = report.scripts_allowed
    outcome.scripts_blocked = report.scripts_blocked
    outcome.downloads = report.downloads


def run_install(project_dir: Path, config: Optional[PaktConfig] = None, **kwargs: Any) -> InstallOutcome:
    """Synchronous wrapper around ``install_project``."""
    return asyncio.run(install_project(project_dir, config, **kwargs))
