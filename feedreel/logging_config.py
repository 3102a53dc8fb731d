from __future__ import annotations

import logging

from feedreel.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "PIL")


def configure_logging(settings: LoggingSettings, debug: bool = False) -> None:
    """Configure process-wide logging once at startup."""

    level = logging.DEBUG if debug else getattr(logging, settings.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
