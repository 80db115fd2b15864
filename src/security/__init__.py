"""Integrity verification, install policy and supply-chain heuristics."""
