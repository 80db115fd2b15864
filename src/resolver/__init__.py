"""Dependency resolution.

Turns declared dependencies into a ``DependencyGraph`` with a concrete
``node_modules`` layout, backtracking over candidate versions when a
choice leads to an unsatisfiable constraint.
"""

from .graph import DependencyGraph, ResolvedNode, Scope
from .resolver import Resolver

__all__ = [
    "DependencyGraph",
    "ResolvedNode",
    "Resolver",
    "Scope",
]
