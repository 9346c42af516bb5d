"""Logging setup shared by the API process and background jobs."""

import logging
import sys

from grade_engine.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_configured = False


def setup_logging(level: str | None = None) -> None:
    """Configure the root ``grade_engine`` logger once per process."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("grade_engine")
    root.setLevel((level or settings.log_level).upper())
    root.addHandler(handler)
    # SQLAlchemy echoes are noisy outside development
    if settings.environment == "production":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True
