"""Structured logging for the gateway.

Every line is one JSON object. Records that belong to a tenant carry ``tenant_id``
at the top level so a single tenant's session history can be grepped out of the stream.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            context = dict(context)
            tenant_id = context.pop("tenant_id", None)
            if tenant_id is not None:
                entry["tenant_id"] = tenant_id
            if context:
                entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", *, sql_echo: bool = False) -> None:
    """Route everything through a single stdout handler with JSON output."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"wa_gateway.{name}")


class TenantLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the tenant; per-call ``context=`` is merged on top."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context: Optional[dict] = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs
