"""
Logging setup shared by the Lambda handlers, the HTTP app and the CLI.
Modules call ``get_logger(__name__)``.
"""

import logging
import sys

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = LOG_LEVEL) -> None:
    # no-op when the host (Lambda runtime, uvicorn, pytest) already set up handlers
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
    )


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
