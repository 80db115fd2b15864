"""Centralized logging helpers.

Every module logs through ``logging.getLogger(__name__)``. Structured fields
travel in ``extra=extra_context(...)`` so the JSON formatter can emit them
and the text formatter can ignore them. Debug payloads are built only when
``is_debug_enabled`` says someone will read them.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_CONTEXT_KEY = "pakt"
_SENSITIVE_PARAMS = re.compile(r"(?i)(token|auth|key|secret|password|signature)")
_BEARER = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-~+/]+=*")


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping carrying structured log fields.

    None values are dropped so call sites can pass optional context freely.
    """
    return {_CONTEXT_KEY: {k: v for k, v in fields.items() if v is not None}}


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records from ``logger`` would be emitted."""
    return logger.isEnabledFor(logging.DEBUG)


def redact(text: str) -> str:
    """Mask bearer tokens embedded in free text."""
    if not text:
        return text
    return _BEARER.sub(r"\1[REDACTED]", text)


def safe_url(url: str) -> str:
    """Strip credentials and sensitive query parameters from a URL."""
    if not url:
        return url
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
        query = "&".join(
            f"{k}=[REDACTED]" if _SENSITIVE_PARAMS.search(k) else f"{k}={v}"
            for k, v in pairs
        )
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring wall-clock duration in milliseconds."""

    def __init__(self) -> None:
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds; still running timers report time so far."""
        if self._start is None:
            return 0
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, structured context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        context = getattr(record, _CONTEXT_KEY, None)
        if isinstance(context, dict):
            payload.update(context)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure the root logger once.

    Level comes from the argument, then PAKT_LOG_LEVEL, then INFO. Format is
    ``text`` (default) or ``json``, from the argument or PAKT_LOG_FORMAT.
    """
    level_name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    fmt_name = (fmt or os.environ.get(Constants.ENV_LOG_FORMAT) or "text").lower()

    root = logging.getLogger()
    handler = logging.StreamHandler()
    if fmt_name == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))

    for existing in list(root.handlers):
        if getattr(existing, "_pakt_handler", False):
            root.removeHandler(existing)
    handler._pakt_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level_value)
