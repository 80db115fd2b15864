"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    GENERAL_ERROR = 1
    CONNECTION_ERROR = 2
    INTEGRITY_ERROR = 3
    PERMISSION_ERROR = 4
    RESOLUTION_ERROR = 5
    LOCKFILE_ERROR = 6
    CONFIG_ERROR = 7
    EXTRACTION_ERROR = 8


class Capability(Enum):
    """Capabilities a package may declare.

    Args:
        Enum (string): Capability names as they appear in package manifests.
    """

    FILESYSTEM = "filesystem"
    NETWORK = "network"
    SCRIPTS = "scripts"
    ENVIRONMENT = "environment"


class DefaultNetwork(Enum):
    """Default network tunables.

    Args:
        Enum (int|float): Default network tunables.
    """

    TIMEOUT_SEC = 30
    CONCURRENCY = 16
    RETRIES = 3
    RETRY_BASE_DELAY_SEC = 0.3


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_NPM = "https://registry.npmjs.org/"
    NPM_INSTALL_ACCEPT = (
        "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"
    )
    USER_AGENT = "pakt/0.1"
    PACKAGE_JSON_FILE = "package.json"
    LOCKFILE_NAME = "pakt-lock.json"
    LOCKFILE_VERSION = 1
    STATE_FILE_NAME = ".pakt-state.json"
    NODE_MODULES = "node_modules"
    BIN_DIR = ".bin"
    PROJECT_CONFIG_FILE = "pakt.yaml"
    USER_CONFIG_FILE = "~/.config/pakt/config.yaml"
    DEFAULT_CACHE_DIR = "~/.cache/pakt"
    METADATA_TTL_SEC = 300
    RESOLVER_MAX_STEPS = 100000
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "PAKT_LOG_LEVEL"
    ENV_LOG_FORMAT = "PAKT_LOG_FORMAT"

    # npm lifecycle scripts that run during install
    INSTALL_SCRIPTS = ("preinstall", "install", "postinstall")
