"""Logging utilities for the stem looper."""
import logging
import sys
import os
import threading
from typing import Optional


# Thread-safe lock for logger initialization (the audio callback may log)
_logger_init_lock = threading.Lock()

LOG_LEVEL_ENV = "STEMLOOPER_LOG_LEVEL"


class LooperFormatter(logging.Formatter):
    """Compact formatter for looper logs.

    Format: [{level[0]} {time} {module_basename[:9]}] {message}
    Example: [I 14:23:45.123 engine   ] Engine ready (8/8 loop buffers)
    """

    def format(self, record):
        level_char = record.levelname[0]

        # Module basename, truncated to 9 chars and right-padded
        module_name = record.name.split('.')[-1]
        module_padded = module_name[:9].ljust(9)

        timestamp = self.formatTime(record, "%H:%M:%S")
        msecs = f"{record.msecs:03.0f}"

        prefix = f"[{level_char} {timestamp}.{msecs} {module_padded}]"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"{prefix} {message}"


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get logger for a looper component.

    Args:
        name: Component name (usually the module basename)
        level: Optional level (DEBUG/INFO/WARNING/ERROR)
               Falls back to STEMLOOPER_LOG_LEVEL env var, then INFO

    Returns:
        Configured logger instance

    Example:
        >>> from stemlooper.log import get_logger
        >>> logger = get_logger("engine")
        >>> logger.info("Engine ready")
        [I 14:23:45.123 engine   ] Engine ready
    """
    logger = logging.getLogger(name)

    # Level from: parameter > env var > INFO default
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "INFO")

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    with _logger_init_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(LooperFormatter())
            logger.addHandler(handler)

    return logger
