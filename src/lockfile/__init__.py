"""Lockfile reading, writing and install planning."""
