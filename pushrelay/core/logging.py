from __future__ import annotations

import logging

from pushrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Apply one process-wide format so script and worker logs read the same.
    settings = get_settings()
    resolved = (level or settings.log_level).upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger("pushrelay").setLevel(resolved)
    # httpx logs every request at INFO; keep delivery noise out of default logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
