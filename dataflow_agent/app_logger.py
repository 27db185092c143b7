"""
dataflow_agent/app_logger.py

One JSON object per line for everything under the `dataflow` logger.

Line keys: ts (UTC), lvl, event, cid (conversation id), msg, and when set
payload, phase, model. Component loggers (`dataflow.store`, `dataflow.model`,
...) propagate here and share the format.

Environment: LOG_DIR (logs), LOG_FILE (app.jsonl), LOG_LEVEL (INFO),
LOG_STDOUT (true; mirrors INFO and above).
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from dataflow_agent.config import _to_bool

LOGGER_NAME = "dataflow"

_setup_lock = threading.Lock()
_ready = False


class JsonLineFormatter(logging.Formatter):
    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%SZ"),
            "lvl": record.levelname,
            "event": getattr(record, "event", None),
            "cid": getattr(record, "correlation_id", None),
            "msg": record.getMessage() or None,
        }
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict) and payload:
            line["payload"] = payload
        for key in ("phase", "model"):
            value = getattr(record, key, None)
            if value is not None:
                line[key] = value
        return json.dumps(line, ensure_ascii=False, separators=(",", ":"), default=str)


def _logger() -> logging.Logger:
    global _ready
    logger = logging.getLogger(LOGGER_NAME)
    if _ready:
        return logger
    with _setup_lock:
        if _ready:
            return logger
        log_dir = Path(os.getenv("LOG_DIR", "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

        logger.setLevel(level)
        logger.propagate = False
        fmt = JsonLineFormatter()

        fh = logging.FileHandler(log_dir / os.getenv("LOG_FILE", "app.jsonl"), encoding="utf-8")
        fh.setFormatter(fmt)
        logger.addHandler(fh)

        if _to_bool(os.getenv("LOG_STDOUT"), default=True):
            sh = logging.StreamHandler()
            sh.setLevel(logging.INFO)
            sh.setFormatter(fmt)
            logger.addHandler(sh)
        _ready = True
    return logger


def log_file_path() -> Optional[str]:
    for h in _logger().handlers:
        if isinstance(h, logging.FileHandler):
            return h.baseFilename
    return None


def log_event(
    event: str,
    payload: Dict[str, Any],
    *,
    correlation_id: Optional[str] = None,
    level: int = logging.INFO,
    phase: Optional[str] = None,
    model: Optional[str] = None,
) -> None:
    _logger().log(
        level,
        event,
        extra={"event": event, "payload": payload, "correlation_id": correlation_id, "phase": phase, "model": model},
    )


def log_error_event(event: str, error_obj: Dict[str, Any], *, correlation_id: Optional[str] = None) -> None:
    """Log a make_error() envelope at ERROR."""
    log_event(
        event,
        error_obj,
        correlation_id=correlation_id or error_obj.get("correlation_id"),
        level=logging.ERROR,
    )


def log_orchestrator_event(event: str, payload: Dict[str, Any], **kwargs: Any) -> None:
    """`Orchestrator.<event>`; kwargs as for log_event."""
    log_event(f"Orchestrator.{event}", payload, **kwargs)
