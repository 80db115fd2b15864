"""Materialize packages from the store into ``node_modules``."""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from constants import Constants

logger = logging.getLogger(__name__)


@dataclass
class LinkStats:
    linked: int = 0
    copied: int = 0

    def add(self, other: "LinkStats") -> None:
        self.linked += other.linked
        self.copied += other.copied


def _link_or_copy(source: str, target: str, stats: LinkStats) -> None:
    try:
        os.link(source, target)
        stats.linked += 1
    except OSError as exc:
        logger.debug("Hardlink %s -> %s failed (%s); copying", source, target, exc)
        shutil.copy2(source, target)
        stats.copied += 1


def clear_package_dir(dest: Path) -> None:
    """Empty ``dest`` but keep its nested ``node_modules``."""
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
        return
    if not dest.is_dir():
        return
    for child in dest.iterdir():
        if child.name == Constants.NODE_MODULES and child.is_dir() and not child.is_symlink():
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def link_package(source_dir: Path, dest: Path) -> LinkStats:
    """Hardlink every file of ``source_dir`` into ``dest`` (copy across devices).

    Existing content of ``dest`` is replaced; its nested ``node_modules``
    is preserved.
    """
    stats = LinkStats()
    clear_package_dir(dest)
    dest.mkdir(parents=True, exist_ok=True)
    source_root = str(source_dir)
    for dirpath, dirnames, filenames in os.walk(source_root):
        rel = os.path.relpath(dirpath, source_root)
        target_dir = str(dest) if rel == "." else os.path.join(str(dest), rel)
        if rel == "." and Constants.NODE_MODULES in dirnames:
            # Bundled node_modules would collide with the installed tree.
            dirnames.remove(Constants.NODE_MODULES)
        for dirname in dirnames:
            os.makedirs(os.path.join(target_dir, dirname), exist_ok=True)
        for filename in filenames:
            _link_or_copy(os.path.join(dirpath, filename), os.path.join(target_dir, filename), stats)
    return stats


def remove_path(project_dir: Path, rel_path: str) -> bool:
    """Remove an installed package directory and any now-empty parents.

    Parents are removed up to (not including) the project directory.
    """
    project_dir = Path(project_dir)
    target = project_dir / rel_path
    if not (target.exists() or target.is_symlink()):
        return False
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    parent = target.parent
    while parent != project_dir and project_dir in parent.parents:
        try:
            parent.rmdir()
        except OSError:
            break
        parent = parent.parent
    return True


def prune(project_dir: Path, rel_paths: Iterable[str]) -> int:
    """Remove ``rel_paths`` deepest first; returns how many existed."""
    ordered = sorted(set(rel_paths), key=lambda p: (-p.count("/"), p))
    return sum(1 for rel in ordered if remove_path(project_dir, rel))


def _ensure_executable(path: Path) -> None:
    mode = path.stat().st_mode
    if mode & stat.S_IXUSR:
        return
    # The file may be a hardlink into the shared store; never chmod the store copy.
    if path.stat().st_nlink > 1:
        tmp = path.with_name(path.name + ".pakt-tmp")
        shutil.copy2(path, tmp)
        os.replace(tmp, path)
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def link_bins(project_dir: Path, packages: Iterable[Tuple[str, Dict[str, str]]]) -> List[str]:
    """Rebuild ``node_modules/.bin`` for root-scope packages.

    ``packages`` yields (package name, bin mapping). Returns the command
    names that were linked.
    """
    node_modules = Path(project_dir) / Constants.NODE_MODULES
    bin_dir = node_modules / Constants.BIN_DIR
    if bin_dir.is_dir() and not bin_dir.is_symlink():
        shutil.rmtree(bin_dir)
    linked: List[str] = []
    for name, bins in sorted(packages):
        for command, rel_target in sorted(bins.items()):
            if "/" in command or command in ("", ".", ".."):
                logger.warning("Ignoring invalid bin name %r in %s", command, name)
                continue
            target = (node_modules / name / rel_target).resolve()
            package_root = (node_modules / name).resolve()
            if package_root not in target.parents or not target.is_file():
                logger.warning("Ignoring bin %s of %s: %s is not a file in the package", command, name, rel_target)
                continue
            bin_dir.mkdir(parents=True, exist_ok=True)
            link = bin_dir / command
            if link.exists() or link.is_symlink():
                link.unlink()
            _ensure_executable(target)
            relative = os.path.relpath(target, bin_dir.resolve())
            try:
                os.symlink(relative, link)
            except OSError:
                shutil.copy2(target, link)
            linked.append(command)
    return linked


def link_workspace_member(project_dir: Path, name: str, member_path: Path) -> bool:
    """Point ``node_modules/<name>`` at a workspace member directory.

    Returns False when the link already pointed there.
    """
    link = Path(project_dir) / Constants.NODE_MODULES / name
    relative = os.path.relpath(Path(member_path), link.parent)
    if link.is_symlink():
        if os.readlink(link) == relative:
            return False
        link.unlink()
    elif link.is_dir():
        shutil.rmtree(link)
    elif link.exists():
        link.unlink()
    link.parent.mkdir(parents=True, exist_ok=True)
    os.symlink(relative, link, target_is_directory=True)
    return True
