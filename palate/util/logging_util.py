"""Logging for the palate CLI: full detail to a rotating file, progress to the console."""
import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FILENAME = "palate.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(message)s"


def _console_handler(logger: logging.Logger):
    for handler in logger.handlers:
        if type(handler) is logging.StreamHandler:
            return handler
    return None


def setup_logging(log_dir: str, console_level: int = logging.INFO) -> str:
    """Attach handlers to the "palate" logger and return the log file path.

    Handlers are attached once per process; later calls only move the
    console threshold, so `-v` still works after an earlier setup.
    """
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, LOG_FILENAME)

    logger = logging.getLogger("palate")
    logger.setLevel(logging.DEBUG)

    console = _console_handler(logger)
    if console is not None:
        console.setLevel(console_level)
        return log_file

    fh = RotatingFileHandler(log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(ch)

    logger.debug("Logging to %s", log_file)
    return log_file
