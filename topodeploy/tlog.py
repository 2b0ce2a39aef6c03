"""Small printf-style logging adapter used across the deployer."""

from __future__ import annotations

import logging

_NULL_LOGGER_NAME = "topodeploy.null"


class LogAdapter:
    """Routes normal and debug messages to two separate loggers."""

    def __init__(self, log: logging.Logger, debug_log: logging.Logger) -> None:
        self.log = log
        self.debug_log = debug_log

    def printf(self, fmt: str, *args: object) -> None:
        """Log a %-style formatted message on the main logger."""
        self.log.info(fmt, *args)

    def debugf(self, fmt: str, *args: object) -> None:
        """Log a %-style formatted message on the debug logger."""
        self.debug_log.debug(fmt, *args)


def new_null_log_adapter() -> LogAdapter:
    """Return an adapter whose messages are discarded."""
    null_log = logging.getLogger(_NULL_LOGGER_NAME)
    if not any(isinstance(h, logging.NullHandler) for h in null_log.handlers):
        null_log.addHandler(logging.NullHandler())
    null_log.propagate = False
    return LogAdapter(null_log, null_log)