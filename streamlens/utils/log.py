"""
Default logging interface for the indexer
"""

import logging
import os


_LOG_FORMATTER = logging.Formatter(
    "[%(asctime)s][%(threadName)s][%(levelname)s]:%(message)s"
)


def get_default_logger(name: str) -> logging.Logger:
    """
    Get default logger for a given name.

    :param name: The logger name.
    :return: The logger object.
    """

    # Set Null log handler to avoid "No handlers could be found for logger XXX".
    # The pipeline is also usable as a library,
    # and library users may not configure logging.
    if len(logging.getLogger().handlers) == 0:
        logging.getLogger().addHandler(logging.NullHandler())

    log = logging.getLogger(name)
    log.setLevel(logging.INFO)

    # Add a handler for the log if one isn't present.
    if len(log.handlers) == 0:
        handler = logging.StreamHandler()
        handler.setFormatter(_LOG_FORMATTER)
        log.addHandler(handler)
        log.propagate = False

    return log


def set_package_log_level(level: str = None):
    """
    Set the level of all streamlens loggers created so far.

    :param level: Level name such as "DEBUG".
        If None, read STREAMLENS_LOG_LEVEL and default to INFO.
    """
    if level is None:
        level = os.getenv("STREAMLENS_LOG_LEVEL", "INFO")
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")
    # pylint: disable=no-member
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("streamlens") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric_level)
