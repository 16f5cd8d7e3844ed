"""Structured JSON logging with redaction of credentials and bulky note bodies."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, MutableMapping, Optional

LOGGER_NAME = "zotero_analysis_mcp"
SERVICE_NAME = "zotero-analysis-mcp"
REDACTED = "[REDACTED]"
MAX_FIELD_CHARS = 500

_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "zotero_analysis_mcp_correlation_id",
    default=None,
)

_SENSITIVE_KEYS = {
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "set-cookie",
    "secret",
    "password",
    "token",
    "zotero-api-key",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _is_sensitive_key(key: str) -> bool:
    return key.lower().replace(" ", "_") in _SENSITIVE_KEYS


def _scrub_string(value: str, secrets: Optional[Iterable[str]]) -> str:
    if secrets and any(secret and secret in value for secret in secrets):
        return REDACTED
    if len(value) > MAX_FIELD_CHARS:
        return f"{value[:MAX_FIELD_CHARS]}...[{len(value) - MAX_FIELD_CHARS} more chars]"
    return value


def redact(value: Any, *, secrets: Optional[Iterable[str]] = None) -> Any:
    """Return a copy of ``value`` that is safe to write to the log stream.

    Mapping keys that name credentials are replaced wholesale, strings that
    contain one of ``secrets`` are replaced, and long strings are truncated.
    """
    if isinstance(value, Mapping):
        output: MutableMapping[str, Any] = {}
        for key, item in value.items():
            key_str = str(key)
            output[key_str] = REDACTED if _is_sensitive_key(key_str) else redact(item, secrets=secrets)
        return output
    if isinstance(value, (list, tuple, set)):
        return [redact(item, secrets=secrets) for item in value]
    if isinstance(value, str):
        return _scrub_string(value, secrets)
    return value


def configure_logging() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger

    level_name = os.getenv("ZOTERO_MCP_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)

    # stdout carries the MCP stdio stream, so logs must go to stderr.
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers = [handler]
    logger.propagate = False
    logger._configured = True  # type: ignore[attr-defined]
    return logger


def log_event(
    logger: logging.Logger,
    *,
    level: int,
    event: str,
    secrets: Optional[Iterable[str]] = None,
    **fields: Any,
) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = {
        "ts": _utc_now_iso(),
        "level": logging.getLevelName(level),
        "event": event,
        "service": SERVICE_NAME,
    }
    correlation_id = _correlation_id_var.get()
    if correlation_id:
        payload["correlation_id"] = correlation_id
    payload.update(fields)
    logger.log(level, json.dumps(redact(payload, secrets=secrets), separators=(",", ":"), default=str))


class Timer:
    def __init__(self) -> None:
        self._start = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)


@contextlib.contextmanager
def correlation_id_scope(value: Optional[str]):
    token = _correlation_id_var.set(value)
    try:
        yield
    finally:
        _correlation_id_var.reset(token)
