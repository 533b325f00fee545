from __future__ import annotations

import logging
import sys

from plugingate.core.config import get_settings


_HANDLER_NAME = "plugingate"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install one stream handler on the root logger; safe to call once per app instance.
    settings = get_settings()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    # SQL echo is noisy at INFO; keep it opt-in via LOG_LEVEL=DEBUG.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
