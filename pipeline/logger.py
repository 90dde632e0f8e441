"""
Logging setup shared by the pipeline modules, the LLM client and the job workers.

Every logger writes DEBUG and up to <log dir>/pipeline.log and INFO and up to
stdout. The log dir defaults to ./logs; XLIFF_PIPELINE_LOG_DIR overrides it.
"""
import logging
import os
import sys
import threading

LOG_DIR = os.environ.get("XLIFF_PIPELINE_LOG_DIR", os.path.join(os.getcwd(), "logs"))
LOG_FILE = os.path.join(LOG_DIR, "pipeline.log")

# Thread name tells job and unit workers apart
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
_setup_lock = threading.Lock()
_file_handler = None


def _shared_file_handler() -> logging.Handler:
    # One open log file for all module loggers
    global _file_handler
    with _setup_lock:
        if _file_handler is None:
            os.makedirs(LOG_DIR, exist_ok=True)
            _file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
            _file_handler.setLevel(logging.DEBUG)
            _file_handler.setFormatter(_formatter)
        return _file_handler


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` (normally ``__name__``); handlers are attached only once."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(_formatter)

    logger.addHandler(_shared_file_handler())
    logger.addHandler(console)
    return logger
