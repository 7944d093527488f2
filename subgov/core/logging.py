from __future__ import annotations

import logging

from subgov.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; worker entry points call this before starting loops.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT, force=True)
    # httpx logs every request at INFO which drowns provider call summaries.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLevelName(resolved)))
