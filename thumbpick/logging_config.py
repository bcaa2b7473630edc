from __future__ import annotations

import logging

from thumbpick.config import LoggingSettings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Install the process-wide handler; unknown level names fall back to INFO."""

    requested = settings.level.strip().upper()
    level = logging.getLevelName(requested)
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    if level == logging.INFO and requested != "INFO":
        logging.getLogger(__name__).warning("Unknown log level %r; using INFO.", settings.level)
