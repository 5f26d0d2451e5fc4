"""Logging and telemetry for the unified chat gateway.

Emits structured log records to stdout and appends them to an append-only
log file for local review.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("gateway")


def setup_logging(log_file: str) -> None:
    """Configure the gateway logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
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

        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(stdout_fmt)
        logger.addHandler(file_handler)


def log_request(
    *,
    request_id: Optional[str],
    backend: Optional[str],
    model: Optional[str],
    outcome: str,
    stream: Optional[bool] = None,
    usage: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> None:
    """Log a single request event as one JSON line.

    Args:
        request_id: The completion id assigned to the response.
        backend: The selected backend name (None if no backend was chosen).
        model: The model requested by the client, if any.
        outcome: Short outcome label (e.g. "success", "backend_error").
        stream: Whether the client asked for a streamed response.
        usage: Length-based usage dict if available.
        error: Error message if the request failed.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "backend": backend,
        "model": model,
        "outcome": outcome,
    }

    if stream is not None:
        record["stream"] = stream

    if usage:
        record["usage"] = usage

    if error:
        record["error"] = error

    logger.info(json.dumps(record))
