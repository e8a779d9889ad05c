import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


def configure_logging(log_file=None, level='INFO'):
    """
    Configure logging to the terminal and, if given, an append-only log file.

    Args:
        log_file: Path of the log file (directory is created if missing)
        level: Log level name (e.g. 'INFO', 'DEBUG')

    Returns:
        The package logger
    """
    log_level = logging.getLevelName(str(level).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            mode='a',
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure package logger
    logger = logging.getLogger('pgbackup')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(log_level)

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
