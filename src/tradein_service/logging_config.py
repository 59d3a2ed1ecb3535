from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Iterable

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Client libraries that log every request or reconnect attempt at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "aiokafka", "asyncio")


def new_correlation_id(incoming: str | None = None) -> str:
    """Bind the request's correlation id (or a fresh one) to the current context."""
    cid = (incoming or "").strip()[:64] or uuid.uuid4().hex[:12]
    correlation_id.set(cid)
    return cid


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    ``valuation_id`` and ``extra_data`` passed through ``extra=`` are copied
    into the entry; the latter lands under ``data``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": correlation_id.get(""),
        }
        valuation_id = getattr(record, "valuation_id", None)
        if valuation_id:
            entry["valuation_id"] = valuation_id
        if hasattr(record, "extra_data"):
            entry["data"] = record.extra_data
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("") or "-"
        if not getattr(record, "valuation_id", None):
            record.valuation_id = "-"
        return True


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.addFilter(_ContextFilter())
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s cid=%(correlation_id)s valuation=%(valuation_id)s %(message)s"
        ))
    root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
