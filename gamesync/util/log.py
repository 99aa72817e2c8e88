"""Utility module for creating an application wide logger."""
import logging
import logging.handlers
import os
import sys

CACHE_DIR = os.path.realpath(
    os.path.join(os.environ.get("XDG_CACHE_HOME") or os.path.expanduser("~/.cache"), "gamesync")
)
if not os.path.isdir(CACHE_DIR):
    os.makedirs(CACHE_DIR)

# Formatters
FILE_FORMATTER = logging.Formatter("[%(levelname)s:%(asctime)s:%(module)s]: %(message)s")

SIMPLE_FORMATTER = logging.Formatter("%(asctime)s: %(message)s")

DEBUG_FORMATTER = logging.Formatter(
    "%(levelname)-8s %(asctime)s [%(module)s.%(funcName)s:%(lineno)s]:%(message)s"
)

# Log file setup
LOG_FILENAME = os.path.join(CACHE_DIR, "gamesync.log")
loghandler = logging.handlers.RotatingFileHandler(LOG_FILENAME, maxBytes=20971520, backupCount=5)
loghandler.setFormatter(FILE_FORMATTER)

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
logger.addHandler(loghandler)

console_handler = logging.StreamHandler(stream=sys.stdout)
console_handler.setFormatter(SIMPLE_FORMATTER)
logger.addHandler(console_handler)
logger.setLevel(logging.INFO)


def set_debug(debug: bool) -> None:
    """Switch the console output to the verbose debug format"""
    if debug:
        console_handler.setFormatter(DEBUG_FORMATTER)
        logger.setLevel(logging.DEBUG)
    else:
        console_handler.setFormatter(SIMPLE_FORMATTER)
        logger.setLevel(logging.INFO)
