# marina_scheduler/logging_config.py
#
# Centralized logging configuration for the scheduling service

import logging
import sys
import os

_HANDLER_NAME = "marina_scheduler_console"


def setup_logging(log_level: str = None):
    """
    Setup logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                   Defaults to INFO, or from LOG_LEVEL env var
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # uvicorn reload and repeated app construction must not stack handlers
    if any(h.get_name() == _HANDLER_NAME for h in root_logger.handlers):
        return root_logger

    formatter = logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.set_name(_HANDLER_NAME)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger
