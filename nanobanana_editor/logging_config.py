"""
Logging Configuration
Sets up the package logger for the editor backend.
"""
import logging
import os
import sys
from typing import Optional, Union


def setup_logging(level: Optional[Union[int, str]] = None) -> None:
    """
    Configures the logger for the 'nanobanana_editor' namespace.

    Args:
        level: Logging level (e.g. logging.DEBUG or "DEBUG"). Defaults to the
            LOG_LEVEL environment variable, then INFO.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    logger = logging.getLogger("nanobanana_editor")
    logger.setLevel(level)

    # Uvicorn reload imports the app twice
    if logger.handlers:
        logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    # Format: Time - Module - Level - Message
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.debug("Logging initialized.")
