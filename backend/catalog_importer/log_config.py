"""
Logging Configuration

Configures logging for the API process and the Celery workers.
Output goes to stderr so worker stdout stays clean.
"""

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the package logger.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ...). Unknown names fall back to INFO.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )

    logger = logging.getLogger("catalog_importer")
    logger.setLevel(resolved)

    # Avoid duplicate handlers if called multiple times
    logger.handlers.clear()
    logger.addHandler(handler)
