"""Content-addressable package store."""
