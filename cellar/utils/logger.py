import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from cellar.config.constants import DEFAULT_ROOT

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logger(name="cellar", log_file="cellar.log", level=logging.INFO):
    """
    Sets up a logger with console and rotating file handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Prevent adding handlers multiple times
    if logger.hasHandlers():
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    set_log_dir(os.path.join(str(DEFAULT_ROOT), "logs"), logger=logger, log_file=log_file)
    return logger


def set_log_dir(log_dir, logger=None, log_file="cellar.log"):
    """
    Point the rotating file handler of ``logger`` at ``log_dir/log_file``.

    Any previous file handler is closed and replaced. Called again once the
    configured cellar root is known.
    """
    logger = logger or log
    log_path = os.path.abspath(os.path.join(str(log_dir), log_file))

    for handler in list(logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            if handler.baseFilename == log_path:
                return
            logger.removeHandler(handler)
            handler.close()

    try:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
    except OSError as e:
        print(f"Failed to setup file logging: {e}", file=sys.stderr)

log = setup_logger()
