from __future__ import annotations

import logging

from sisfo_identity.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_HANDLER_NAME = "sisfo_identity"


def configure_logging() -> None:
    # Install a single root handler; repeated calls only refresh the level.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(getattr(handler, "name", None) == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Keep HTTP client chatter out of request logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
