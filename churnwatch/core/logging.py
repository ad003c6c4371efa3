"""ChurnWatch — Structured JSON Logging.

Every line is one JSON object. Fields bound with `log_context` (the run
name and processing date while a pipeline run is active) are attached to
every line logged inside the block, including lines from concurrent
extraction tasks started within it.
"""

import logging
import json
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from churnwatch.config import settings

EXTRA_FIELDS = ("account_id", "metric", "month", "step", "duration_ms")

_run_context: ContextVar[Dict[str, Any]] = ContextVar("run_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach `fields` to every log line emitted inside the block."""
    token = _run_context.set({**_run_context.get(), **fields})
    try:
        yield
    finally:
        _run_context.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record for the batch job's log sink."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_run_context.get())
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Named logger under `churnwatch.` with the JSON handler attached once."""
    logger = logging.getLogger(f"churnwatch.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
