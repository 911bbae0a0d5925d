import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.1.0'

LOGGER_NAME = 'backup_companion'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def configure_logging(level='info', log_file=None):
    """
    Configure logging for the backup run and return the package logger.

    The returned logger is handed to the executor explicitly; nothing else in
    the package reads logging configuration from module state.
    """
    log_level = LOG_LEVELS.get(str(level).lower())
    if log_level is None:
        raise ValueError(f"Invalid log level: {level}. Valid options: {sorted(LOG_LEVELS)}")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    logger.propagate = False

    # Drop handlers from a previous call (the CLI may be invoked repeatedly in-process)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
