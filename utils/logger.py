import logging
import os
from logging.handlers import RotatingFileHandler

from config import LOG_LEVEL, LOG_ROTATION_MB, LOG_BACKUPS, LOG_DIR, LOG_TO_FILE

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    """
    Named logger with console output and one rotating file per component.

    get_logger("API_MONITOR") → data/logs/api_monitor.log
    """
    logger = logging.getLogger(name)

    # Already configured (module imported twice, tests, ...)
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL)
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if LOG_TO_FILE:
        os.makedirs(LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, f"{name.lower()}.log"),
            maxBytes=LOG_ROTATION_MB * 1024 * 1024,
            backupCount=LOG_BACKUPS,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
