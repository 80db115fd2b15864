"""Subresource Integrity (SRI) parsing and verification.

Registries publish ``dist.integrity`` as one or more space-separated
``<algo>-<base64>`` hashes and, for older packages, a hex sha1 ``shasum``.
Verification always uses the strongest supported algorithm present.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional

from common.errors import IntegrityViolation

logger = logging.getLogger(__name__)

# Strongest first.
SUPPORTED_ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")


@dataclass(frozen=True)
class IntegrityHash:
    """One ``<algorithm>-<base64>`` hash."""

    algorithm: str
    digest_b64: str

    @property
    def sri(self) -> str:
        return f"{self.algorithm}-{self.digest_b64}"

    @property
    def hex(self) -> str:
        return base64.b64decode(self.digest_b64).hex()


def parse_integrity(text: Optional[str]) -> List[IntegrityHash]:
    """Parse an SRI string into supported hashes, strongest first.

    Unknown algorithms and malformed entries are ignored; ``?options``
    suffixes are stripped.
    """
    hashes: List[IntegrityHash] = []
    for token in (text or "").split():
        algorithm, sep, value = token.partition("-")
        algorithm = algorithm.lower()
        if not sep or algorithm not in SUPPORTED_ALGORITHMS:
            logger.debug("Ignoring unsupported integrity entry %r", token)
            continue
        value = value.split("?", 1)[0]
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Ignoring malformed integrity entry %r", token)
            continue
        hashes.append(IntegrityHash(algorithm, value))
    hashes.sort(key=lambda h: SUPPORTED_ALGORITHMS.index(h.algorithm))
    return hashes


def shasum_to_integrity(shasum: Optional[str]) -> Optional[str]:
    """Convert a hex sha1 ``shasum`` to an SRI string."""
    if not shasum:
        return None
    try:
        raw = bytes.fromhex(shasum.strip())
    except ValueError:
        return None
    if len(raw) != hashlib.sha1().digest_size:
        return None
    return "sha1-" + base64.b64encode(raw).decode("ascii")


def expected_integrity(integrity: Optional[str], shasum: Optional[str]) -> Optional[str]:
    """Pick the expected integrity for a tarball: SRI first, then ``shasum``."""
    if parse_integrity(integrity):
        return integrity
    return shasum_to_integrity(shasum)


def strongest(text: Optional[str]) -> Optional[IntegrityHash]:
    hashes = parse_integrity(text)
    return hashes[0] if hashes else None


def compute_integrity(data: bytes, algorithm: str = "sha512") -> str:
    """Return the SRI string of ``data`` for ``algorithm``."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported integrity algorithm: {algorithm}")
    digest = hashlib.new(algorithm, data).digest()
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"


def verify(
    data: bytes,
    expected: Optional[str],
    package: str,
    require: bool = True,
) -> Optional[IntegrityHash]:
    """Verify ``data`` against ``expected`` using its strongest hash.

    Returns the hash that was checked, or None when nothing was expected
    and ``require`` is False.

    Raises:
        IntegrityViolation: digest mismatch, or no usable expected digest
            while ``require`` is set.
    """
    target = strongest(expected)
    if target is None:
        if require:
            raise IntegrityViolation(package, expected or "<none>", compute_integrity(data))
        logger.warning("No integrity published for %s; accepting unverified content", package)
        return None
    actual = compute_integrity(data, target.algorithm)
    if actual != target.sri:
        raise IntegrityViolation(package, target.sri, actual)
    return target
