"""Structured logging helpers for SemanticDocs.

Components log through ``logging.getLogger(__name__)`` and attach structured
fields as ``extra={"event": {...}}``. :class:`JSONFormatter` flattens that
payload into one JSON object per line; :func:`setup_logging` wires a console
handler and an optional rotating JSONL file under ``log_dir``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Mapping, Optional

__all__ = ["JSONFormatter", "mask_secrets", "setup_logging"]

_ROOT_LOGGER = "SemanticDocs"
_SECRET_KEYS = re.compile(
    r"^(api[_-]?key|authorization|(access|auth|bearer)[_-]?token|secret|password)$", re.IGNORECASE
)
_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+")


def mask_secrets(payload: Any) -> Any:
    """Return ``payload`` with credential-looking values replaced by ``***``."""

    if isinstance(payload, Mapping):
        return {
            key: "***" if _SECRET_KEYS.search(str(key)) and value else mask_secrets(value)
            for key, value in payload.items()
        }
    if isinstance(payload, (list, tuple)):
        return [mask_secrets(item) for item in payload]
    if isinstance(payload, str):
        return _BEARER.sub(r"\1***", payload)
    return payload


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if isinstance(event, Mapping):
            payload.update(event)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_secrets(payload), default=str)


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    json_console: bool = False,
    max_log_size_mb: int = 50,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the ``SemanticDocs`` logger.

    Args:
        level: Logging level name.
        log_dir: Directory for rotating JSONL logs. Falls back to
            ``$SEMANTICDOCS_LOG_DIR``; no file handler when neither is set.
        json_console: Emit JSON on the console instead of plain text.
        max_log_size_mb: Rotation threshold for the JSONL file.
        propagate: Whether records also reach the root logger.

    Returns:
        The configured logger. Calling again replaces previously managed handlers.
    """

    if log_dir is None:
        env_value = os.environ.get("SEMANTICDOCS_LOG_DIR", "").strip()
        log_dir = Path(env_value) if env_value else None

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_semanticdocs_managed", False):
            logger.removeHandler(handler)
            if getattr(handler, "stream", None) not in (sys.stdout, sys.stderr):
                handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        JSONFormatter() if json_console else logging.Formatter("%(levelname)s: %(message)s")
    )
    stream_handler._semanticdocs_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"semanticdocs-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._semanticdocs_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
