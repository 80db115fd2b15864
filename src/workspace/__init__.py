"""Workspace (monorepo) discovery and ordering."""
