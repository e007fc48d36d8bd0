"""Logging configuration for voicebill."""

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    """Configure root logging with a console handler and an optional file.

    Args:
        level: Logging level name (e.g. "INFO").
        log_file: File to append log records to, if any.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # The SDK logs every request at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
