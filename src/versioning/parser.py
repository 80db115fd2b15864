"""Manifest parsing utilities for package resolution."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from common.errors import ManifestError
from constants import Constants
from .models import DependencyKind, PackageSpec

logger = logging.getLogger(__name__)

_INSTALL_SECTIONS = (
    DependencyKind.REGULAR,
    DependencyKind.OPTIONAL,
    DependencyKind.DEV,
)


def tokenize_alias(raw_spec: str) -> Tuple[Optional[str], str]:
    """Split an ``npm:<name>@<range>`` alias into (real name, range).

    Non-alias specs come back as (None, spec).
    """
    s = raw_spec.strip()
    if not s.startswith("npm:"):
        return None, s
    target = s[len("npm:"):]
    # Scoped names keep their leading '@'; the version separator is the last '@'.
    at = target.rfind("@")
    if at <= 0:
        return target, ""
    return target[:at], target[at + 1:]


def parse_manifest_entry(
    identifier: str,
    raw_spec: Optional[str],
    kind: DependencyKind = DependencyKind.REGULAR,
) -> PackageSpec:
    """Construct a PackageSpec from one manifest dependency entry."""
    if not identifier or not isinstance(identifier, str):
        raise ManifestError(f"Invalid dependency name: {identifier!r}")
    if raw_spec is not None and not isinstance(raw_spec, str):
        raise ManifestError(f"Invalid version constraint for {identifier}: {raw_spec!r}")
    real_name, constraint = tokenize_alias(raw_spec or "")
    return PackageSpec(
        name=identifier.strip(),
        constraint=constraint,
        kind=kind,
        real_name=real_name,
    )


def _section(manifest: Mapping[str, Any], kind: DependencyKind) -> Dict[str, str]:
    section = manifest.get(kind.value) or {}
    if not isinstance(section, dict):
        raise ManifestError(f"'{kind.value}' must be an object")
    return section


def dependency_specs(
    manifest: Mapping[str, Any],
    include_dev: bool = True,
) -> List[PackageSpec]:
    """Return the installable dependencies of a manifest, sorted by name.

    A name listed in several sections keeps its first occurrence in the
    order dependencies, optionalDependencies, devDependencies.
    """
    specs: Dict[str, PackageSpec] = {}
    for kind in _INSTALL_SECTIONS:
        if kind == DependencyKind.DEV and not include_dev:
            continue
        for name, raw in _section(manifest, kind).items():
            if name in specs:
                logger.debug("Skipping duplicate declaration of %s in %s", name, kind.value)
                continue
            specs[name] = parse_manifest_entry(name, raw, kind)
    return [specs[name] for name in sorted(specs)]


def load_manifest(project_dir: Path) -> Dict[str, Any]:
    """Read ``package.json`` from ``project_dir``.

    Raises:
        ManifestError: file missing, unreadable, or not a JSON object.
    """
    path = Path(project_dir) / Constants.PACKAGE_JSON_FILE
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ManifestError(f"package.json not found at {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Unable to read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestError(f"{path} must contain a JSON object")
    return data
