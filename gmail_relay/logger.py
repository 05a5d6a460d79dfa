"""Logging helpers for the Gmail relay."""

import logging


def get_logger(name: str = "GmailRelay") -> logging.Logger:
    """Return a configured :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the entry point (main.py, cli.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger with the service log format."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
