"""Install-time security policy: lifecycle scripts and declared capabilities."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from config import SecurityConfig
from constants import Capability
from common.errors import PermissionDenied
from common.logging_utils import extra_context
from versioning.models import package_scope

logger = logging.getLogger(__name__)


def _normalize_scope(scope: str) -> str:
    return scope if scope.startswith("@") else f"@{scope}"


def is_trusted(name: str, config: SecurityConfig) -> bool:
    """Return True when ``name`` is a trusted package or lives in a trusted scope."""
    if name in config.trusted_packages:
        return True
    scope = package_scope(name)
    if scope is None:
        return False
    return scope in {_normalize_scope(s) for s in config.trusted_scopes}


@dataclass(frozen=True)
class ScriptDecision:
    """Outcome of the script policy for one package."""

    package: str
    allowed: bool
    reason: str


class ScriptPolicy:
    """Default-deny policy for install lifecycle scripts."""

    def __init__(self, config: SecurityConfig):
        self._config = config

    def decide(self, name: str) -> ScriptDecision:
        """Decide whether ``name`` may run its install scripts."""
        if self._config.allow_scripts:
            return ScriptDecision(name, True, "scripts allowed globally")
        if name in self._config.trusted_packages:
            return ScriptDecision(name, True, "trusted package")
        if is_trusted(name, self._config):
            return ScriptDecision(name, True, f"trusted scope {package_scope(name)}")
        return ScriptDecision(name, False, "install scripts are blocked by default")


class PermissionManager:
    """Checks declared capabilities against the configured allow-lists.

    ``security.permissions`` maps a capability name to package patterns
    (``fnmatch`` syntax, so ``@scope/*`` covers a scope). Trusted packages
    and scopes hold every capability. The ``scripts`` capability is decided
    by ``ScriptPolicy``: a blocked script never runs, so it needs no grant.
    """

    def __init__(self, config: SecurityConfig):
        self._config = config

    def is_allowed(self, name: str, capability: Capability) -> bool:
        if is_trusted(name, self._config):
            return True
        if capability == Capability.SCRIPTS:
            return True
        patterns = self._config.permissions.get(capability.value) or []
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)

    def check(self, name: str, capabilities: Iterable[str]) -> List[str]:
        """Check every declared capability of ``name``.

        Returns:
            Warning messages for denied capabilities (non-strict mode).

        Raises:
            PermissionDenied: a capability is denied and
                ``security.strict_permissions`` is set.
        """
        warnings: List[str] = []
        for value in sorted(set(capabilities)):
            capability = _capability(value)
            if capability is None or self.is_allowed(name, capability):
                continue
            if self._config.strict_permissions:
                logger.error(
                    "Capability %s denied for %s",
                    capability.value,
                    name,
                    extra=extra_context(
                        event="permission_denied",
                        component="security",
                        package=name,
                        capability=capability.value,
                        outcome="denied",
                    ),
                )
                raise PermissionDenied(name, capability.value)
            message = f"{name} declares the '{capability.value}' capability, which is not granted"
            logger.warning(message)
            warnings.append(message)
        return warnings


def _capability(value: str) -> Optional[Capability]:
    try:
        return Capability(value)
    except ValueError:
        return None
