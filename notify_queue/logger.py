"""Logging helpers for the notification queue."""

import logging


def get_logger(name: str = "NotifyQueue") -> logging.Logger:
    """Return a :class:`logging.Logger` for the queue components.

    Note: handlers and format are configured once via logging.basicConfig()
    in the entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
