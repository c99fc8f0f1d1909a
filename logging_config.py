import logging
import sys

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(log_level="INFO", log_file=None):
    """Initialize the root logger once with a stdout handler and an optional file handler.

    Calling it again only adjusts the level, so both the entrypoint and the app
    module can call it safely.
    """
    if isinstance(log_level, int):
        level = log_level
    else:
        name = str(log_level or "INFO").strip().upper()
        level = int(name) if name.isdigit() else _LEVELS.get(name, logging.INFO)

    root = logging.getLogger()
    if not root.handlers:
        formatter = logging.Formatter(LOG_FORMAT)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        logging.captureWarnings(True)
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
