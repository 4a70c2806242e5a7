"""
Structured JSON logging for builder and relay processes (stdlib-only).

Every line is one JSON object carrying:
  - service, env, version
  - correlation_id (one per build / relay call, see `bind_correlation_id`)
  - event_type, severity
  - any `extra` fields (order ids, makers, hashes)

Relay values need care on the way out:
  - bytes render as 0x hex
  - ints beyond 2^53 render as decimal strings so JSON consumers keep full uint256 precision
  - value objects with `to_dict()` (signatures, receipts) render through it
  - fields that look like key material are masked
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional

_CORRELATION_ID: ContextVar[Optional[str]] = ContextVar("optionrelay_correlation_id", default=None)

# Attributes every LogRecord has; anything else on a record came from `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}
_ENVELOPE_KEYS: frozenset[str] = frozenset(
    {"timestamp", "severity", "service", "env", "version", "correlation_id", "event_type", "logger"}
)

_SECRET_MARKERS = ("private_key", "privkey", "secret", "mnemonic", "seed_phrase")
_JSON_SAFE_INT = 1 << 53

_SEVERITIES = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _clean_text(v: Any, *, max_len: int = 2000) -> str:
    s = "" if v is None else str(v)
    s = s.replace("\n", " ").replace("\r", " ").strip()
    if len(s) > max_len:
        s = s[: max_len - 1] + "…"
    return s


def _first_env(*names: str, default: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _clean_text(v, max_len=128)
    return default


def default_service_name() -> str:
    return _first_env("SERVICE_NAME", "SERVICE", default="optionrelay")


def default_env_name() -> str:
    return _first_env("ENVIRONMENT", "ENV", default="unknown")


def default_version() -> str:
    return _first_env("APP_VERSION", "VERSION", "GIT_SHA", default="unknown")


def _normalize_severity(level: str | int | None) -> str:
    if isinstance(level, int):
        level = logging.getLevelName(level)
    s = _clean_text(level or "INFO", max_len=16).upper()
    if s == "WARN":
        return "WARNING"
    if s == "FATAL":
        return "CRITICAL"
    return s if s in _SEVERITIES else "INFO"


def _is_secret(key: str) -> bool:
    k = key.lower()
    return any(marker in k for marker in _SECRET_MARKERS)


def _render(value: Any) -> Any:
    """
    Make an extra field JSON-safe without losing uint256 precision.
    """
    if isinstance(value, bool) or value is None or isinstance(value, (str, float)):
        return value
    if isinstance(value, int):
        return value if -_JSON_SAFE_INT < value < _JSON_SAFE_INT else str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, Enum):
        return _render(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): "[redacted]" if _is_secret(str(k)) else _render(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_render(v) for v in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _render(to_dict())
    return str(value)


def get_correlation_id() -> Optional[str]:
    return _CORRELATION_ID.get()


@contextmanager
def bind_correlation_id(*, correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation id for the current task. Nested binds keep the outer id.
    """
    existing = _CORRELATION_ID.get()
    cid = _clean_text(correlation_id or "", max_len=128) or existing or uuid.uuid4().hex
    token = _CORRELATION_ID.set(cid)
    try:
        yield cid
    finally:
        _CORRELATION_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None = None, env: str | None = None, version: str | None = None) -> None:
        super().__init__()
        self._service = _clean_text(service, max_len=128) or default_service_name()
        self._env = _clean_text(env, max_len=64) or default_env_name()
        self._version = _clean_text(version, max_len=128) or default_version()

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (format required by logging)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": _normalize_severity(getattr(record, "severity", None) or record.levelno),
            "service": self._service,
            "env": self._env,
            "version": self._version,
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "event_type": _clean_text(getattr(record, "event_type", None), max_len=128) or "log",
            "message": _clean_text(record.getMessage(), max_len=4000),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in _ENVELOPE_KEYS or key.startswith("_"):
                continue
            payload[key] = "[redacted]" if _is_secret(key) else _render(value)

        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]
        elif record.stack_info:
            payload["stack"] = _clean_text(record.stack_info, max_len=8000)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    version: str | None = None,
    level: str | int | None = None,
) -> None:
    """
    Route the root logger to stdout as JSON lines. Safe to call repeatedly (last call wins).
    """
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(lvl)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(lvl)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version))
    root.handlers = [handler]

    logging.captureWarnings(True)


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    **fields: Any,
) -> None:
    """
    Emit a semantic event with a stable `event_type`; `fields` become top-level JSON keys.
    """
    lvl = logging.getLevelName(_normalize_severity(severity))
    logger.log(lvl, message or event_type, extra={"event_type": event_type, **fields})
