"""Shared helpers: error taxonomy, logging and HTTP retries."""
