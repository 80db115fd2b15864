"""Runtime configuration for pakt.

Layered sources, lowest precedence first: built-in defaults, the user config
(~/.config/pakt/config.yaml), the project config (pakt.yaml), environment
variables, and finally an explicit overrides mapping supplied by the caller.
YAML files use the same section names as the dataclasses below.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from common.errors import ConfigError
from constants import Constants, DefaultNetwork

logger = logging.getLogger(__name__)


@dataclass
class RegistryConfig:
    """Registry endpoints and credentials."""

    url: str = Constants.REGISTRY_URL_NPM
    scopes: Dict[str, str] = field(default_factory=dict)
    auth_tokens: Dict[str, str] = field(default_factory=dict)

    def url_for(self, package_name: str) -> str:
        """Return the registry base URL serving ``package_name``."""
        if package_name.startswith("@") and "/" in package_name:
            scope = package_name.split("/", 1)[0]
            override = self.scopes.get(scope) or self.scopes.get(scope.lstrip("@"))
            if override:
                return override.rstrip("/") + "/"
        return self.url.rstrip("/") + "/"


@dataclass
class CacheConfig:
    """Shared content cache location and metadata freshness."""

    dir: Optional[str] = None
    metadata_ttl: int = Constants.METADATA_TTL_SEC
    offline: bool = False

    def resolved_dir(self) -> Path:
        """Return the cache directory, expanding ``~``."""
        return Path(os.path.expanduser(self.dir or Constants.DEFAULT_CACHE_DIR))


@dataclass
class SecurityConfig:
    """Integrity, script and permission policy."""

    require_integrity: bool = True
    allow_scripts: bool = False
    trusted_scopes: List[str] = field(default_factory=list)
    trusted_packages: List[str] = field(default_factory=list)
    strict_permissions: bool = False
    permissions: Dict[str, List[str]] = field(default_factory=dict)
    strict_paths: bool = True
    lockfile_tamper: str = "error"
    dependency_confusion_warnings: bool = True


@dataclass
class NetworkConfig:
    """Timeouts, concurrency and retry tunables."""

    timeout: float = float(DefaultNetwork.TIMEOUT_SEC.value)
    concurrency: int = DefaultNetwork.CONCURRENCY.value
    retries: int = DefaultNetwork.RETRIES.value
    retry_base_delay: float = DefaultNetwork.RETRY_BASE_DELAY_SEC.value
    cpu_workers: int = 4


@dataclass
class WorkspaceConfig:
    """Workspace discovery and layout flags."""

    packages: List[str] = field(default_factory=list)
    hoist: bool = True
    shared_lockfile: bool = True


@dataclass
class ResolverConfig:
    """Resolver search bounds."""

    max_steps: int = Constants.RESOLVER_MAX_STEPS


@dataclass
class PaktConfig:
    """Complete configuration handed to every component."""

    registry: RegistryConfig = field(default_factory=RegistryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)

    def validate(self) -> "PaktConfig":
        """Reject values no component can work with."""
        if self.network.concurrency < 1:
            raise ConfigError("network.concurrency must be at least 1")
        if self.network.retries < 0:
            raise ConfigError("network.retries must not be negative")
        if self.network.timeout <= 0:
            raise ConfigError("network.timeout must be positive")
        if self.network.cpu_workers < 1:
            raise ConfigError("network.cpu_workers must be at least 1")
        if self.cache.metadata_ttl < 0:
            raise ConfigError("cache.metadata_ttl must not be negative")
        if self.resolver.max_steps < 1:
            raise ConfigError("resolver.max_steps must be at least 1")
        if self.security.lockfile_tamper not in ("error", "warn"):
            raise ConfigError("security.lockfile_tamper must be 'error' or 'warn'")
        if not self.workspace.shared_lockfile:
            raise ConfigError("workspace.shared_lockfile = false is not supported")
        for capability in self.security.permissions:
            if capability not in ("filesystem", "network", "scripts", "environment"):
                raise ConfigError(f"Unknown capability in security.permissions: {capability}")
        self.security.permissions = {
            capability: _pattern_list(patterns, f"security.permissions.{capability}")
            for capability, patterns in self.security.permissions.items()
        }
        return self


def _pattern_list(value: Any, dotted: str) -> List[str]:
    """Normalize a permission grant to a list of package patterns."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f"{dotted}: expected a package pattern or a list of patterns, got {value!r}")


_ENV_OVERRIDES = {
    "PAKT_REGISTRY": ("registry", "url"),
    "PAKT_CACHE_DIR": ("cache", "dir"),
    "PAKT_OFFLINE": ("cache", "offline"),
    "PAKT_METADATA_TTL": ("cache", "metadata_ttl"),
    "PAKT_CONCURRENCY": ("network", "concurrency"),
    "PAKT_TIMEOUT": ("network", "timeout"),
    "PAKT_RETRIES": ("network", "retries"),
    "PAKT_ALLOW_SCRIPTS": ("security", "allow_scripts"),
    "PAKT_STRICT_PERMISSIONS": ("security", "strict_permissions"),
}


def _coerce(value: Any, current: Any, dotted: str) -> Any:
    """Coerce ``value`` to the type of the field's current value."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off", ""):
            return False
        raise ConfigError(f"{dotted}: expected a boolean, got {value!r}")
    if isinstance(current, int) and not isinstance(current, bool):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{dotted}: expected an integer, got {value!r}") from exc
    if isinstance(current, float):
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{dotted}: expected a number, got {value!r}") from exc
    if isinstance(current, list):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, list):
            raise ConfigError(f"{dotted}: expected a list, got {value!r}")
        return [str(v) for v in value]
    if isinstance(current, dict):
        if not isinstance(value, dict):
            raise ConfigError(f"{dotted}: expected a mapping, got {value!r}")
        return dict(value)
    return None if value is None else str(value)


def _apply_section(target: Any, data: Mapping[str, Any], prefix: str) -> None:
    """Copy known keys from ``data`` onto dataclass ``target``."""
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if key not in known:
            logger.warning("Ignoring unknown configuration key: %s", dotted)
            continue
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"{dotted}: expected a mapping")
            _apply_section(current, value, f"{dotted}.")
            continue
        setattr(target, key, _coerce(value, current, dotted))


def _load_yaml_config(path: Path) -> Dict[str, Any]:
    """Read a YAML config file; missing files yield an empty mapping."""
    if not path.is_file():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to read configuration file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    logger.debug("Loaded configuration from %s", path)
    return data


def _apply_env(config: PaktConfig, environ: Mapping[str, str]) -> None:
    """Apply PAKT_* environment overrides."""
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        _apply_section(getattr(config, section), {key: raw}, f"{section}.")


def load_config(
    project_dir: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    user_config: Optional[Path] = None,
) -> PaktConfig:
    """Build a validated PaktConfig from every configuration source.

    Args:
        project_dir: Project root holding an optional pakt.yaml.
        overrides: Nested mapping applied last (e.g. from the CLI layer).
        environ: Environment mapping; defaults to os.environ.
        user_config: User-level YAML file; defaults to ~/.config/pakt/config.yaml.

    Returns:
        PaktConfig: Merged configuration.
    """
    config = PaktConfig()
    user_path = user_config or Path(os.path.expanduser(Constants.USER_CONFIG_FILE))
    _apply_section(config, _load_yaml_config(user_path), "")
    if project_dir is not None:
        _apply_section(config, _load_yaml_config(Path(project_dir) / Constants.PROJECT_CONFIG_FILE), "")
    _apply_env(config, os.environ if environ is None else environ)
    if overrides:
        _apply_section(config, overrides, "")
    return config.validate()
