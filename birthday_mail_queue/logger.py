"""Logging helpers for the birthday mail queue."""

import logging


def get_logger(name: str = "BirthdayMailQueue") -> logging.Logger:
    """Return the named :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the main entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
