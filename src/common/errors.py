"""Error taxonomy shared by every pakt component.

Each error carries the exit code the outer CLI layer maps it to and enough
context (package, version, expected vs. actual digest or path) for precise
reporting. Only NetworkFailure is ever retried, and only inside the
registry client.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

from constants import ExitCodes


class PaktError(RuntimeError):
    """Base class for classified pakt failures."""

    exit_code = ExitCodes.GENERAL_ERROR
    category = "error"

    def to_dict(self) -> dict:
        """Return a JSON-friendly description of the error, context included."""
        data = {"category": self.category, "message": str(self)}
        for key, value in vars(self).items():
            if key.startswith("_"):
                continue
            data[key] = list(value) if isinstance(value, tuple) else value
        return data


class ConfigError(PaktError):
    """Raised when configuration values are missing or malformed."""

    exit_code = ExitCodes.CONFIG_ERROR
    category = "config"


class ManifestError(PaktError):
    """Raised when package.json cannot be read or is malformed."""

    exit_code = ExitCodes.CONFIG_ERROR
    category = "manifest"


class NetworkFailure(PaktError):
    """Raised when a registry request fails after all retries."""

    exit_code = ExitCodes.CONNECTION_ERROR
    category = "network"

    def __init__(self, url: str, reason: str, attempts: int = 1):
        self.url = url
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"Request to {url} failed after {attempts} attempt(s): {reason}")


class PackageNotFound(PaktError):
    """Raised when the registry has no such package."""

    exit_code = ExitCodes.CONNECTION_ERROR
    category = "not_found"

    def __init__(self, name: str, detail: str = ""):
        self.name = name
        message = f"Package not found: {name}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidConstraint(PaktError):
    """Raised when a version constraint cannot be parsed or is unsupported."""

    exit_code = ExitCodes.RESOLUTION_ERROR
    category = "invalid_constraint"

    def __init__(self, name: str, constraint: str, reason: str = ""):
        self.name = name
        self.constraint = constraint
        message = f"Invalid version constraint for {name}: '{constraint}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


Edge = Tuple[str, str, str]


class UnresolvableConstraint(PaktError):
    """Raised when the resolver exhausts its search space.

    ``edges`` holds ``(requester, dependency, constraint)`` triples for the
    dependency edges that could not be satisfied.
    """

    exit_code = ExitCodes.RESOLUTION_ERROR
    category = "unresolvable"

    def __init__(self, edges: Iterable[Edge], reason: str = ""):
        self.edges: Sequence[Edge] = tuple(edges)
        self.reason = reason
        described = ", ".join(f"{req} -> {dep}@{con}" for req, dep, con in self.edges)
        message = "Unable to satisfy dependency constraints"
        if reason:
            message = f"{message}: {reason}"
        if described:
            message = f"{message} [{described}]"
        super().__init__(message)


class IntegrityViolation(PaktError):
    """Raised when downloaded content does not match its expected digest."""

    exit_code = ExitCodes.INTEGRITY_ERROR
    category = "integrity"

    def __init__(self, package: str, expected: str, actual: str):
        self.package = package
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Integrity check failed for {package}: expected {expected}, got {actual}"
        )


class PathTraversal(PaktError):
    """Raised when a tarball entry would escape the extraction root."""

    exit_code = ExitCodes.EXTRACTION_ERROR
    category = "path_traversal"

    def __init__(self, package: str, path: str):
        self.package = package
        self.path = path
        super().__init__(f"Path traversal detected in package {package}: {path!r}")


class LockfileTampered(PaktError):
    """Raised when a lockfile's stored digest disagrees with its contents."""

    exit_code = ExitCodes.LOCKFILE_ERROR
    category = "lockfile_tampered"

    def __init__(self, path: str, expected: Optional[str], actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Lockfile {path} failed its integrity check: stored {expected}, computed {actual}"
        )


class PermissionDenied(PaktError):
    """Raised when a package declares a capability outside the allow-list."""

    exit_code = ExitCodes.PERMISSION_ERROR
    category = "permission"

    def __init__(self, package: str, capability: str):
        self.package = package
        self.capability = capability
        super().__init__(f"Permission denied: {capability} for package {package}")


class WorkspaceCycle(PaktError):
    """Raised when local workspace packages depend on each other in a cycle."""

    exit_code = ExitCodes.CONFIG_ERROR
    category = "workspace_cycle"

    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__("Circular dependency detected in workspace: " + " -> ".join(self.cycle))


class DownloadFailed(PaktError):
    """Raised when a tarball download exhausts its retries."""

    exit_code = ExitCodes.CONNECTION_ERROR
    category = "download"

    def __init__(self, package: str, reason: str):
        self.package = package
        self.reason = reason
        super().__init__(f"Download failed for {package}: {reason}")


class CacheMiss(PaktError):
    """Raised when a digest is not present in the content store."""

    category = "cache_miss"

    def __init__(self, digest: str, kind: str = "blob"):
        self.digest = digest
        self.kind = kind
        super().__init__(f"No cached {kind} for digest {digest}")


class CorruptArchive(PaktError):
    """Raised when a verified tarball cannot be unpacked."""

    exit_code = ExitCodes.EXTRACTION_ERROR
    category = "corrupt_archive"

    def __init__(self, package: str, reason: str):
        self.package = package
        self.reason = reason
        super().__init__(f"Unable to extract package {package}: {reason}")
