# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail scheduler.

The actual logging setup (level, handlers, format) is done once by the entry
points through :func:`configure_logging`. Library modules only call
:func:`get_logger`.

Example:
    Typical usage in a module::

        from mail_scheduler.logger import get_logger

        logger = get_logger("MailScheduler.poller")
        logger.info("Poll completed")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailScheduler") -> logging.Logger:
    """Retrieve a logger instance.

    It does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "MailScheduler".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    """Configure the root logger for an entry point.

    Unknown level names fall back to ``INFO``.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # Avoid duplicate handlers on reconfiguration
    )
