"""
Shared logging utilities for the PII protection core

This module contains common logging helpers used by multiple components
to avoid code duplication.

SECURITY: Anything derived from user input must pass through
sanitize_for_logging before it reaches a log line.
"""

import logging
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def sanitize_for_logging(text: str, max_length: int = 500) -> str:
    """Sanitize text for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: Text to sanitize
        max_length: Maximum length of the returned string

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:max_length] if len(sanitized) > max_length else sanitized


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
    fmt: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
) -> None:
    """Configure root logging handlers

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        log_file: Optional path of a log file
        console: Also log to stderr
        fmt: Log record format
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(fmt)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    logger.debug(f"Logging configured at level {level}")
