"""
JSON-lines logging for ledger processes.

Every line is one JSON object carrying:
- identity of the process: service, env, version, sha
- the record: timestamp, severity, logger, message
- event_type ("log" for plain records) plus any `extra=` fields

Ledger events go through `log_event(logger, "ledger.trade_applied", ...)`.
Library modules only call `logging.getLogger(__name__)`; entrypoints call
`init_structured_logging()` once.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

_PAYLOAD_KEYS: frozenset[str] = frozenset(
    {"timestamp", "severity", "service", "env", "version", "sha", "event_type", "message", "logger"}
)

_SEVERITY_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}
_SEVERITIES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _one_line(v: Any, limit: int) -> str:
    s = "" if v is None else str(v)
    s = " ".join(s.splitlines()).strip()
    return s if len(s) <= limit else s[: limit - 1] + "…"


def _first_env(*names: str, default: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return v
    return default


def _severity(level: str | int | None) -> str:
    s = logging.getLevelName(level) if isinstance(level, int) else str(level or "INFO")
    s = _SEVERITY_ALIASES.get(s.upper(), s.upper())
    return s if s in _SEVERITIES else "INFO"


def _json_default(v: Any) -> Any:
    # Amounts keep their exact digits.
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, datetime):
        return v.isoformat()
    return str(v)


@dataclass(frozen=True, slots=True)
class ProcessIdentity:
    service: str
    env: str
    version: str
    sha: str

    @classmethod
    def resolve(
        cls,
        *,
        service: str | None = None,
        env: str | None = None,
        version: str | None = None,
        sha: str | None = None,
    ) -> "ProcessIdentity":
        """Explicit values win; otherwise the usual deployment env vars are consulted."""
        return cls(
            service=_one_line(service or _first_env("SERVICE_NAME", default="paperledger"), 128),
            env=_one_line(env or _first_env("ENV", "ENVIRONMENT", default="local"), 64),
            version=_one_line(version or _first_env("APP_VERSION", "VERSION", default="unknown"), 128),
            sha=_one_line(sha or _first_env("GIT_SHA", "COMMIT_SHA", default="unknown"), 64),
        )


class JsonLogFormatter(logging.Formatter):
    def __init__(
        self,
        *,
        service: str | None = None,
        env: str | None = None,
        version: str | None = None,
        sha: str | None = None,
    ) -> None:
        super().__init__()
        self.identity = ProcessIdentity.resolve(service=service, env=env, version=version, sha=sha)

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        ident = self.identity
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": _severity(record.levelno),
            "service": ident.service,
            "env": ident.env,
            "version": ident.version,
            "sha": ident.sha,
            "event_type": _one_line(getattr(record, "event_type", None), 128) or "log",
            "message": _one_line(record.getMessage(), 4000),
            "logger": record.name,
        }
        for k, v in record.__dict__.items():
            if k in _RECORD_ATTRS or k in _PAYLOAD_KEYS or k.startswith("_"):
                continue
            payload[k] = v

        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]
        elif record.stack_info:
            payload["stack"] = record.stack_info[-8000:]

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    version: str | None = None,
    sha: str | None = None,
    level: str | int | None = None,
) -> None:
    """
    Route the root logger to stdout as JSON lines.

    Replaces existing root handlers, so repeated calls do not duplicate output.
    """
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, version=version, sha=sha))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
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
    Emit a semantic event with a stable `event_type`.

    Field names that clash with LogRecord attributes (e.g. `created`, `name`)
    are logged with a `field_` prefix instead of breaking the call.
    """
    extra: dict[str, Any] = {"event_type": _one_line(event_type, 128)}
    for k, v in fields.items():
        extra[f"field_{k}" if k in _RECORD_ATTRS or k in _PAYLOAD_KEYS else k] = v
    logger.log(getattr(logging, _severity(severity)), message or event_type, extra=extra)
