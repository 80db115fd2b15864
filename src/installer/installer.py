"""Install pipeline: policy checks, download, extract, link, prune."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from config import PaktConfig
from constants import Constants
from common.errors import CorruptArchive, DownloadFailed, PathTraversal
from common.logging_utils import extra_context, Timer
from lockfile.manager import InstallPlan, Lockfile, LockfileEntry, write_state
from security import supply_chain
from security.policy import PermissionManager, ScriptPolicy
from store.content_store import ContentStore
from versioning.models import format_key
from workspace.graph import WorkspaceMember

from .downloader import Downloader
from .extractor import Extractor
from .linker import LinkStats, link_bins, link_package, link_workspace_member, prune

logger = logging.getLogger(__name__)


@dataclass
class InstallReport:
    """Counters and findings from one install run."""

    installed: int = 0
    cached: int = 0
    failed: int = 0
    removed: int = 0
    downloads: int = 0
    extractions: int = 0
    linked_workspaces: List[str] = field(default_factory=list)
    failed_packages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    scripts_allowed: List[str] = field(default_factory=list)
    scripts_blocked: List[str] = field(default_factory=list)
    link_stats: LinkStats = field(default_factory=LinkStats)


@dataclass
class _EntryResult:
    entry: LockfileEntry
    cached: bool = False
    failed: bool = False
    reason: Optional[str] = None
    stats: LinkStats = field(default_factory=LinkStats)


class Installer:
    """Apply an ``InstallPlan`` to a project's ``node_modules``."""

    def __init__(
        self,
        project_dir: Path,
        store: ContentStore,
        client,
        config: PaktConfig,
        executor: Optional[Executor] = None,
    ):
        self._project_dir = Path(project_dir)
        self._store = store
        self._config = config
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.network.cpu_workers,
            thread_name_prefix="pakt-cpu",
        )
        self._downloader = Downloader(client, store, config, self._executor)
        self._extractor = Extractor(store, self._executor)
        self._permissions = PermissionManager(config.security)
        self._scripts = ScriptPolicy(config.security)

    def close(self) -> None:
        if self._own_executor:
            self._executor.shutdown(wait=True)

    # -- policy ----------------------------------------------------------

    def check_policy(self, entries: Sequence[LockfileEntry], report: InstallReport) -> None:
        """Run permission, script and supply-chain checks before any download.

        Raises:
            PermissionDenied: strict permissions and a denied capability.
        """
        for entry in entries:
            label = format_key(entry.key)
            report.warnings.extend(self._permissions.check(entry.name, entry.capabilities))
            if entry.has_install_script:
                decision = self._scripts.decide(entry.name)
                if decision.allowed:
                    report.scripts_allowed.append(label)
                else:
                    report.scripts_blocked.append(label)
                    logger.info("Blocked install scripts of %s (%s)", label, decision.reason)
            if self._config.security.dependency_confusion_warnings:
                for finding in supply_chain.analyze(entry.real_name or entry.name):
                    message = finding.message()
                    logger.warning("Supply-chain warning: %s", message)
                    report.warnings.append(message)

    # -- per package -------------------------------------------------------

    async def _install_entry(self, entry: LockfileEntry, reverify: bool) -> _EntryResult:
        label = format_key(entry.key)
        result = _EntryResult(entry)
        try:
            fetched = await self._downloader.fetch(entry, reverify=reverify)
            result.cached = fetched.cached
            source = await self._extractor.ensure_extracted(fetched.digest, label)
        except (PathTraversal, CorruptArchive) as exc:
            if self._config.security.strict_paths:
                raise
            logger.error("Skipping %s: %s", label, exc)
            result.failed, result.reason = True, str(exc)
            return result
        except DownloadFailed as exc:
            if not entry.optional:
                raise
            logger.warning("Skipping optional package %s: %s", label, exc)
            result.failed, result.reason = True, str(exc)
            return result

        loop = asyncio.get_running_loop()
        for rel_path in sorted(entry.paths):
            dest = self._project_dir / rel_path
            stats = await loop.run_in_executor(self._executor, link_package, source, dest)
            result.stats.add(stats)
        return result

    async def _run_all(self, entries: Sequence[LockfileEntry], reverify_keys) -> List[_EntryResult]:
        """Install entries concurrently; the first fatal error cancels the rest."""
        if not entries:
            return []
        tasks = [
            asyncio.ensure_future(self._install_entry(entry, entry.key in reverify_keys))
            for entry in entries
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        failure = next((t.exception() for t in tasks if t in done and t.exception() is not None), None)
        if failure is not None:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.exception()
            raise failure
        return [t.result() for t in tasks]

    # -- whole plan --------------------------------------------------------

    async def install(
        self,
        lockfile: Lockfile,
        plan: InstallPlan,
        members: Sequence[WorkspaceMember] = (),
        workspace_order: Sequence[str] = (),
        force_reverify: bool = False,
    ) -> InstallReport:
        """Apply ``plan`` and record the resulting installed state.

        Raises:
            IntegrityViolation, PathTraversal, CorruptArchive,
            PermissionDenied, DownloadFailed: fatal failures; the installed-state file is
                left untouched so the next run retries.
        """
        report = InstallReport()
        to_install = plan.to_install()
        reverify_keys = set()
        if force_reverify:
            reverify_keys = {e.key for e in plan.unchanged}
            to_install = sorted(to_install + list(plan.unchanged), key=lambda e: e.key)

        with Timer() as timer:
            self.check_policy(to_install, report)

            new_paths = {p for e in lockfile.packages for p in e.paths}
            stale = {p for e in plan.removed for p in e.paths}
            stale.update(p for old, _new in plan.changed for p in old.paths)
            pruned = prune(self._project_dir, stale - new_paths) if stale else 0
            report.removed = len(plan.removed)
            if pruned:
                logger.info("Pruned %d stale install path(s)", pruned)

            results = await self._run_all(to_install, reverify_keys)
            failed_keys = set()
            for result in results:
                label = format_key(result.entry.key)
                if result.failed:
                    report.failed += 1
                    report.failed_packages.append(label)
                    report.warnings.append(f"{label} was not installed: {result.reason}")
                    failed_keys.add(result.entry.key)
                    continue
                report.installed += 1
                if result.cached:
                    report.cached += 1
                report.link_stats.add(result.stats)

            if not plan.is_empty() or force_reverify:
                root_prefix = f"{Constants.NODE_MODULES}/"
                bins = [
                    (e.name, e.bin)
                    for e in lockfile.packages
                    if e.bin and e.key not in failed_keys and f"{root_prefix}{e.name}" in e.paths
                ]
                link_bins(self._project_dir, bins)

            by_name = {m.name: m for m in members}
            for name in workspace_order:
                member = by_name[name]
                link_workspace_member(self._project_dir, member.name, member.path)
                report.linked_workspaces.append(member.name)

            installed_entries = [e for e in lockfile.packages if e.key not in failed_keys]
            write_state(self._project_dir, installed_entries)

        report.downloads = self._downloader.downloads
        report.extractions = self._extractor.extractions
        logger.info(
            "Installed %d package(s) (%d from cache, %d failed, %d removed)",
            report.installed,
            report.cached,
            report.failed,
            report.removed,
            extra=extra_context(
                event="install_complete",
                component="installer",
                outcome="success",
                installed=report.installed,
                cached=report.cached,
                failed=report.failed,
                removed=report.removed,
                downloads=report.downloads,
                duration_ms=timer.duration_ms(),
            ),
        )
        return report
