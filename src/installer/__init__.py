"""Install pipeline.

- downloader.py: bounded, verified tarball downloads into the store
- extractor.py: traversal-safe extraction, once per digest
- linker.py: hardlinking into node_modules, .bin shims, pruning
- installer.py: applies an install plan and records installed state
"""

from .downloader import Downloader, FetchResult
from .extractor import Extractor, extract_tarball
from .installer import InstallReport, Installer

__all__ = [
    "Downloader",
    "Extractor",
    "FetchResult",
    "InstallReport",
    "Installer",
    "extract_tarball",
]
