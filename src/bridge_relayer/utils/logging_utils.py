"""
Structured logging for the bridge relayer.

Every record is emitted as one JSON object per line with the fields
``timestamp``, ``level``, ``action`` and, when present, ``data`` and
``error``. Call sites log an action name as the message and pass context
through ``extra``::

    logger.info("mint.submitted", extra={"data": {"nonce": 42, "txHash": tx}})
    logger.error("mint.failed", extra={"data": {"nonce": 42}, "error": reason})
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any


class JsonLogFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "action": record.getMessage(),
        }

        if data := getattr(record, "data", None):
            entry["data"] = data

        error = getattr(record, "error", None)
        if record.exc_info:
            trace = self.formatException(record.exc_info)
            error = f"{error}\n{trace}" if error else trace
        if error:
            entry["error"] = str(error)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger to emit JSON lines on stderr.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    logging.basicConfig(level=log_level, handlers=[handler], force=True)

    # web3 and httpx are chatty at DEBUG; keep them at WARNING unless asked.
    for noisy in ("web3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))
