import logging
import os
import sys

from app.core.config import settings

# Third-party loggers that drown out billing events at INFO
_NOISY = ("uvicorn.access", "sqlalchemy.engine", "stripe", "urllib3")


def configure_logging() -> None:
    """Send all API logs to stdout in a single line format.

    DEBUG=1 turns on verbose output for everything; LOG_LEVEL overrides the
    level of the app's own loggers.
    """
    level_name = os.getenv("LOG_LEVEL", "DEBUG" if settings.debug else "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    ))
    root.addHandler(handler)
    root.setLevel(level)

    if not settings.debug:
        for noisy in _NOISY:
            logging.getLogger(noisy).setLevel(logging.WARNING)
