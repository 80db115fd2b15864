"""npm version constraints on top of semantic_version.

Constraints are parsed with ``semantic_version.NpmSpec``, which understands
``^``, ``~``, x-ranges, hyphen ranges, comparator sets and ``||``. Forms it
rejects are normalized into ``SimpleSpec`` syntax before giving up.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import semantic_version

from common.errors import InvalidConstraint
from .models import ResolutionMode, VersionSpec

_ANY = ("", "*", "x", "X", "latest")
_TAG_RE = re.compile(r"^[A-Za-z][A-Za-z0-9._-]*$")
_XRANGE_RE = re.compile(r"^[xX*](\.[xX*0-9]+)*$")
_UNSUPPORTED_PREFIXES = ("file:", "link:", "git+", "git:", "github:", "http:", "https:", "portal:", "patch:")


def parse_version(text: str) -> Optional[semantic_version.Version]:
    """Parse a published version string; invalid versions yield None."""
    try:
        return semantic_version.Version(text.strip().lstrip("v="))
    except ValueError:
        return None


def sort_versions(versions: Iterable[str], reverse: bool = True) -> List[str]:
    """Sort version strings by semver precedence, newest first by default.

    Unparseable versions are dropped. Ties in precedence (build metadata)
    fall back to the string form so the order is total.
    """
    parsed = []
    for v in versions:
        ver = parse_version(v)
        if ver is not None:
            parsed.append((ver, v))
    parsed.sort(key=lambda item: (item[0], item[1]), reverse=reverse)
    return [v for _, v in parsed]


def _normalize_spec(spec_str: str) -> str:
    """Normalize npm range syntax (hyphen, x-ranges) into SimpleSpec-compatible form."""
    s = spec_str.strip()

    # Hyphen ranges: "1.2.3 - 1.4.5" => ">=1.2.3,<=1.4.5"
    m = re.match(r'^\s*([0-9A-Za-z\.\-\+]+)\s+-\s+([0-9A-Za-z\.\-\+]+)\s*$', s)
    if m:
        return f">={m.group(1)},<={m.group(2)}"

    s2 = s.replace('*', 'x').lower().lstrip("v=")
    m = re.match(r'^\s*(\d+)\.(\d+)\.x\s*$', s2)
    if m:
        major, minor = int(m.group(1)), int(m.group(2))
        return f">={major}.{minor}.0,<{major}.{minor + 1}.0"

    m = re.match(r'^\s*(\d+)(?:\.x)?\s*$', s2)
    if m:
        major = int(m.group(1))
        return f">={major}.0.0,<{major + 1}.0.0"

    # Space separated comparator sets: ">=1.0.0 <2.0.0" => ">=1.0.0,<2.0.0"
    if re.match(r'^[<>=~^\d\s.\-+A-Za-z]+$', s) and " " in s:
        return ",".join(part for part in s.split() if part)

    return s


def _determine_resolution_mode(spec: str) -> ResolutionMode:
    """Determine resolution mode from spec string."""
    stripped = spec.strip()
    if stripped in _ANY:
        return ResolutionMode.LATEST
    if stripped.startswith("workspace:"):
        return ResolutionMode.WORKSPACE
    if parse_version(stripped) is not None:
        return ResolutionMode.EXACT
    # Tags like "next" contain x-range characters; match them first.
    if _TAG_RE.match(stripped) and not _XRANGE_RE.match(stripped):
        return ResolutionMode.TAG
    return ResolutionMode.RANGE


def _determine_include_prerelease(spec: str) -> bool:
    """Constraints that name a prerelease opt into prerelease candidates."""
    return bool(re.search(r"\d+\.\d+\.\d+-", spec))


@dataclass
class Constraint:
    """A parsed npm constraint able to filter and order candidate versions."""

    name: str
    spec: VersionSpec
    _matcher: object = field(default=None, repr=False, compare=False)

    @property
    def raw(self) -> str:
        return self.spec.raw

    @property
    def mode(self) -> ResolutionMode:
        return self.spec.mode

    def matches(self, version: str, dist_tags: Optional[Dict[str, str]] = None) -> bool:
        """Return True when ``version`` satisfies this constraint."""
        mode = self.spec.mode
        if mode == ResolutionMode.TAG:
            tagged = (dist_tags or {}).get(self.spec.raw.strip())
            return tagged is not None and tagged == version
        ver = parse_version(version)
        if ver is None:
            return False
        if mode == ResolutionMode.LATEST:
            return not ver.prerelease
        if mode == ResolutionMode.WORKSPACE:
            return True
        matcher = self._matcher
        if isinstance(matcher, semantic_version.NpmSpec):
            return matcher.match(ver)
        # SimpleSpec has no npm prerelease rule of its own.
        if ver.prerelease and not self.spec.include_prerelease:
            return False
        return ver in matcher

    def select(
        self,
        versions: Iterable[str],
        dist_tags: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Return satisfying versions in preference order.

        Newest first, except that the ``latest`` dist-tag moves to the front
        when it satisfies the constraint (npm's behaviour for open ranges).
        """
        tags = dist_tags or {}
        matching = [v for v in sort_versions(versions) if self.matches(v, tags)]
        latest = tags.get("latest")
        if self.spec.mode != ResolutionMode.EXACT and latest in matching:
            matching.remove(latest)
            matching.insert(0, latest)
        return matching


def parse_constraint(name: str, raw: Optional[str]) -> Constraint:
    """Parse the constraint declared for ``name``.

    Raises:
        InvalidConstraint: the text is not a supported npm range or tag.
    """
    text = (raw or "").strip()
    lowered = text.lower()
    if lowered.startswith(_UNSUPPORTED_PREFIXES) or "://" in text or lowered.endswith(".tgz"):
        raise InvalidConstraint(name, text, "only registry versions are supported")

    mode = _determine_resolution_mode(text)
    spec = VersionSpec(raw=text, mode=mode, include_prerelease=_determine_include_prerelease(text))
    if mode in (ResolutionMode.LATEST, ResolutionMode.TAG, ResolutionMode.WORKSPACE):
        return Constraint(name=name, spec=spec)

    cleaned = re.sub(r"(^|\s|\|\|)[v=]+(?=\d)", r"\1", text)
    try:
        matcher: object = semantic_version.NpmSpec(cleaned)
    except ValueError:
        try:
            matcher = semantic_version.SimpleSpec(_normalize_spec(cleaned))
        except ValueError as exc:
            raise InvalidConstraint(name, text, str(exc)) from exc
    return Constraint(name=name, spec=spec, _matcher=matcher)

