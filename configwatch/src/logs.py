from __future__ import annotations

import json
import logging
import re
from collections.abc import MutableMapping
from typing import Any

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)
_RESERVED_FIELDS = frozenset({"ts", "level", "logger", "msg", "error"})


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    Fields bound through :func:`bind_logger` are emitted next to ``msg``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            for key, value in context.items():
                if key not in _RESERVED_FIELDS:
                    log_entry[key] = redact_sensitive_text(str(value))
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter attaching a fixed set of key/value fields to every record."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        context = dict(self.extra or {})
        context.update(extra.pop("context", {}))
        extra["context"] = context
        kwargs["extra"] = extra
        return msg, kwargs


def bind_logger(logger: logging.Logger | logging.LoggerAdapter, **fields: Any) -> ContextAdapter:
    """Return an adapter over *logger* that tags records with *fields*.

    Binding on top of an existing :class:`ContextAdapter` merges the fields.
    """
    if isinstance(logger, ContextAdapter):
        merged = {**(logger.extra or {}), **fields}
        return ContextAdapter(logger.logger, merged)
    if isinstance(logger, logging.LoggerAdapter):
        return ContextAdapter(logger.logger, fields)
    return ContextAdapter(logger, fields)


def configure_logging(level_name: str) -> None:
    """Install the JSON handler on the root logger. Called once by the entrypoint."""
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
