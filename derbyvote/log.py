"""Logging setup for the command line and embedding applications."""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a console handler to the ``derbyvote`` logger.

    Modules log through ``logging.getLogger(__name__)`` and inherit this
    configuration. Calling it again only changes the level.
    """
    logger = logging.getLogger("derbyvote")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    return logger
