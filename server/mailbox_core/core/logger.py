"""Logging helpers.

Modules only ask for a named logger here; handlers, level and format are
configured once by ``configure_logging`` from the application entry point.
"""

import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str = "mailbox_core") -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_FORMAT)
