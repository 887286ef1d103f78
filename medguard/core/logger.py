from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from medguard.core.config.models import LoggingConfig


LOGGER_NAME = "medguard"
_FILE_HANDLER = "medguard.file"
_CONSOLE_HANDLER = "medguard.console"


def setup_logging(cfg: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure the "medguard" logger from `cfg`. Calling it again re-applies the
    level and leaves existing handlers in place.
    """
    cfg = cfg if cfg is not None else LoggingConfig()
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))
    logger.propagate = False
    present = {h.get_name() for h in logger.handlers}

    if _FILE_HANDLER not in present:
        os.makedirs(cfg.log_dir, exist_ok=True)
        fh = RotatingFileHandler(
            os.path.join(cfg.log_dir, f"{LOGGER_NAME}.log"),
            maxBytes=cfg.max_bytes,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        )
        fh.set_name(_FILE_HANDLER)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(fh)

    if cfg.console and _CONSOLE_HANDLER not in present:
        ch = logging.StreamHandler()
        ch.set_name(_CONSOLE_HANDLER)
        ch.setFormatter(logging.Formatter("%(levelname)-7s %(message)s"))
        logger.addHandler(ch)

    return logger
