"""Logging setup for queue processes."""

import os
import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | worker={extra[worker_id]} | {message}"


def setup_logger(log_level: str = "INFO", worker_id: Optional[str] = None, log_path: Optional[str] = None):
    """Replace loguru's sinks and return a logger bound to ``worker_id``.

    Calling it again swaps the sinks, so a CLI invocation and the worker
    processes it spawns can each pick their own level.
    """
    resolved_worker_id = worker_id or os.getenv("CRAWLQUEUE_WORKER_ID") or str(os.getpid())

    logger.remove()
    logger.configure(extra={"worker_id": resolved_worker_id})
    logger.add(sys.stderr, level=log_level, format=LOG_FORMAT, colorize=True)
    if log_path:
        directory = os.path.dirname(log_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        logger.add(log_path, rotation="10 MB", retention="7 days", level=log_level, format=LOG_FORMAT)

    return logger.bind(worker_id=resolved_worker_id)
