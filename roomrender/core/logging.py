from __future__ import annotations

import logging

from roomrender.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "google_genai", "urllib3")


def configure_logging() -> None:
    # Configure root logging once; repeated calls only adjust the level.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
