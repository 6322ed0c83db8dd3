from __future__ import annotations

import logging

from ghpolicies.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Apply one root configuration for API and worker processes.
    settings = get_settings()
    level = logging.getLevelName(str(settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # Keep per-request transport chatter out of the compliance event stream.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
