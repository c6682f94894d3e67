"""Package wide logger."""

import logging
import os


def get_logger(name="mtnorm", format="%(levelname)s %(message)s"):
    """Return a logger with a single stream handler.

    Parameters
    ----------
    name : str, optional
        Logger name.
    format : str, optional
        Format string of the stream handler.

    Returns
    -------
    logger : logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(format))
        logger.addHandler(handler)
    return logger


def set_log_level(log_level, *, log_file=None):
    """Change the level of the package logger, optionally adding a file sink.

    Parameters
    ----------
    log_level : str or int
        One of 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL' or the
        matching ``logging`` constant.
    log_file : str or Path, optional
        If given, messages are also written to this file. A handler already
        writing to the same file is replaced.
    """
    if isinstance(log_level, str):
        level = logging.getLevelName(log_level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {log_level}")
    else:
        level = log_level
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)
    if log_file is not None:
        path = os.path.abspath(str(log_file))
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == path:
                logger.removeHandler(handler)
                handler.close()
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        )
        logger.addHandler(file_handler)


logger = get_logger()
