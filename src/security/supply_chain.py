"""Heuristic supply-chain warnings: dependency confusion and typosquatting.

Findings are advisory only; nothing here blocks an install.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

POPULAR_PACKAGES = (
    "angular", "anthropic", "axios", "babel", "chai", "cypress", "date-fns",
    "dayjs", "drizzle", "esbuild", "eslint", "ethers", "express", "fastify",
    "got", "hardhat", "hono", "jest", "koa", "ky", "langchain", "lodash",
    "mocha", "moment", "mongoose", "nanoid", "nestjs", "next", "openai",
    "parcel", "pinecone", "playwright", "prettier", "prisma", "ramda",
    "react", "react-dom", "rollup", "sequelize", "svelte", "turbo",
    "typeorm", "typescript", "underscore", "uuid", "viem", "vite", "vitest",
    "vue", "wagmi", "web3", "webpack",
)

SUSPICIOUS_PATTERNS = (
    "-internal",
    "-private",
    "-corp",
    "-company",
    "-test",
    "-dev",
    "-debug",
    "-backup",
    "copy-of-",
    "fork-of-",
    "-clone",
)

# Names shorter than this only match popular names at distance 1.
_MIN_LEN_FOR_DISTANCE_TWO = 5


@dataclass(frozen=True)
class SupplyChainWarning:
    package: str
    kind: str
    detail: str

    def message(self) -> str:
        return f"{self.package}: {self.detail}"


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def check_typosquat(name: str) -> Optional[SupplyChainWarning]:
    """Flag names one or two edits away from a popular package."""
    normalized = name.lower()
    if normalized in POPULAR_PACKAGES or normalized.startswith("@"):
        return None
    best = None
    for popular in POPULAR_PACKAGES:
        limit = 2 if len(popular) >= _MIN_LEN_FOR_DISTANCE_TWO else 1
        distance = levenshtein(normalized, popular)
        if 0 < distance <= limit and (best is None or distance < best[0]):
            best = (distance, popular)
    if best is None:
        return None
    distance, popular = best
    return SupplyChainWarning(
        name,
        "typosquat",
        f"name is {distance} edit(s) away from popular package '{popular}'",
    )


def check_suspicious_name(name: str) -> Optional[SupplyChainWarning]:
    """Flag names using patterns common in dependency confusion attacks."""
    normalized = name.lower()
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern in normalized:
            return SupplyChainWarning(
                name,
                "dependency_confusion",
                f"name contains '{pattern}', a pattern common in dependency confusion attacks",
            )
    return None


def analyze(name: str) -> List[SupplyChainWarning]:
    """Return every supply-chain finding for ``name``."""
    findings = [check_typosquat(name), check_suspicious_name(name)]
    return [f for f in findings if f is not None]
