"""Logging and telemetry for the edge chat gateway.

Emits structured log records to stdout and, when a log file is configured,
appends them to an append-only file for local review.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("gateway")


def setup_logging(log_file: Optional[str] = None) -> None:
    """Configure the gateway logger with stdout and optional file handlers.

    Args:
        log_file: Path to the append-only log file, or None for stdout only.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        if log_file:
            log_path = Path(log_file)
            os.makedirs(log_path.parent, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(stdout_fmt)
            logger.addHandler(file_handler)


def log_request(
    *,
    request_id: str,
    caller: Optional[str],
    outcome: str,
    status: int,
    messages: Optional[int] = None,
    model: Optional[str] = None,
    error: Optional[str] = None
) -> None:
    """Log a single request event as one JSON line.

    Args:
        request_id: Gateway-assigned request ID.
        caller: The caller identity, or None for anonymous traffic.
        outcome: Short outcome label (e.g. "success", "rate_limited").
        status: HTTP status returned to the caller.
        messages: Number of messages in the request, if it was parsed.
        model: The model forwarded upstream, if any.
        error: Error detail for operators. Never sent to the caller.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "caller": caller or "anonymous",
        "outcome": outcome,
        "status": status,
    }

    if messages is not None:
        record["messages"] = messages

    if model:
        record["model"] = model

    if error:
        record["error"] = error

    logger.info(json.dumps(record))
