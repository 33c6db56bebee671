"""
Logging setup for processes embedding the verification engine.

Library modules only create `logging.getLogger(__name__)` loggers; the host
process calls configure_logging() once at startup.
"""

import os
import sys
import logging
import logging.handlers
from typing import Optional

LOG_FORMAT = '[POLOC] %(message)s'
DEFAULT_LOG_FILE = os.path.join(os.path.expanduser("~"), ".poloc", "poloc.log")

# Engine loggers pinned to the configured level
MODULE_LOGGERS = [
    'poloc.core.coordination',
    'poloc.core.filtering',
    'poloc.core.mapping',
    'poloc.core.geometry',
    'poloc.collaborators',
    'poloc.storage',
]


def _create_safe_handler(log_file: Optional[str] = None) -> logging.Handler:
    """Stdout handler, or a rotating file when stdout is unusable (detached/GUI processes)."""
    if log_file is None and sys.stdout is not None and hasattr(sys.stdout, 'write'):
        try:
            sys.stdout.write('')
            sys.stdout.flush()
            return logging.StreamHandler(sys.stdout)
        except (AttributeError, OSError, ValueError):
            pass

    log_file = log_file or DEFAULT_LOG_FILE
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    # Rotate logs - keep last 5MB
    return logging.handlers.RotatingFileHandler(log_file, maxBytes=5*1024*1024, backupCount=2, encoding='utf-8')


def configure_logging(level=logging.INFO, log_file: Optional[str] = None) -> logging.Handler:
    """
    Route all engine logging through a single handler.

    Args:
        level: Level for the root logger and the engine module loggers
               (int or name such as "DEBUG")
        log_file: Write to this rotating file instead of stdout

    Returns:
        The installed handler
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    # Clear any existing handlers first to prevent duplicates
    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(level)

    handler = _create_safe_handler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)

    for module in MODULE_LOGGERS:
        module_logger = logging.getLogger(module)
        module_logger.setLevel(level)
        module_logger.propagate = True

    return handler
