# ------------------------------------------------------------------------
# File: logging_config.py
# Location: dealsign/log_utils/logging_config.py
# Description:
#     Shared logger factory for the signature service. Every module asks
#     for a named logger here so handlers, format and level are set once.
# ------------------------------------------------------------------------

import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = set()


def _resolve_level(level):
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def configure_logging(name: str, logfile: str = "dealsign.log", level=None) -> logging.Logger:
    """
    Return a logger called `name`. Handlers (stderr and LOG_DIR/logfile) live
    on the top-level package logger only; `dealsign.<area>` loggers propagate
    to it, so each record is written once.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    owner_name = name.split(".")[0]
    if owner_name in _configured:
        return logger

    owner = logging.getLogger(owner_name)
    if owner is not logger:
        owner.setLevel(_resolve_level(level))
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    owner.addHandler(stream_handler)

    log_dir = os.getenv("LOG_DIR", "logs")
    if logfile and os.getenv("LOG_TO_FILE", "true").lower() != "false":
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, logfile), maxBytes=5 * 1024 * 1024, backupCount=5
            )
            file_handler.setFormatter(formatter)
            owner.addHandler(file_handler)
        except OSError as e:
            owner.warning("File logging disabled, cannot write to %s: %s", log_dir, e)

    _configured.add(owner_name)
    return logger
