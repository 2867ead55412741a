"""
Logging setup shared by the API server and the dashboard clients
"""

import logging

from gocab.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once; later calls are no-ops."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)

    # httpx logs every request at INFO, which drowns the poll loop
    logging.getLogger("httpx").setLevel(logging.WARNING)
