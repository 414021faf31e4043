"""Process-wide logging setup for the command-line entry point."""

from __future__ import annotations

import logging

from tracas_guard.services.audit import AUDIT_LOGGER_NAME

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a stream handler on the root logger.

    Embedding applications usually own logging themselves and should not call
    this; audit events still reach them through the ``tracas_guard.audit``
    logger.
    """
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger(AUDIT_LOGGER_NAME).setLevel(logging.INFO)
