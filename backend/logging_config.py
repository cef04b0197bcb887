"""Logging setup for the finance tracker backend."""

import logging
import sys

ROOT_LOGGER_NAME = "finance_tracker"

_HANDLER_ATTR = "_finance_tracker_handler"

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class ExtraFieldsFormatter(logging.Formatter):
    """Appends ``extra=`` fields to the message as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not extras:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{base} {rendered}"


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the application namespace."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Install a single stream handler on the application root logger.

    Calling this more than once only updates the level.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    if not any(getattr(handler, _HANDLER_ATTR, False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            ExtraFieldsFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        setattr(handler, _HANDLER_ATTR, True)
        root.addHandler(handler)
        root.propagate = False
    return root
