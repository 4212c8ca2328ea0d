"""Operator logging on loguru.

Every record carries the controller and the object being reconciled
(``extra[controller]`` / ``extra[resource]``), set for the duration of a
reconcile by ``reconcile_context``.  Records from the manager, which logs
through ``logging.getLogger``, and from uvicorn are bridged into loguru and
pick up the same context.
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager

from loguru import logger

OPERATOR_CONTEXT = "operator"
"""``extra[controller]`` for records logged outside a reconcile."""

# uvicorn.access logs every health check and metrics scrape
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncio")

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[controller]}</magenta> "
    "<cyan>{extra[resource]}</cyan> | "
    "<level>{message}</level>"
)


class _StdlibBridge(logging.Handler):
    """Forward stdlib records to loguru, keeping the caller's frame and logger name."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(stdlib=record.name).opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def reconcile_context(controller: str, resource: str) -> AbstractContextManager[None]:
    """Tag every record logged inside the block with the controller and object key."""
    return logger.contextualize(controller=controller, resource=resource)


def setup_logging(level: str = "INFO", *, json: bool = False) -> None:
    """Install loguru as the only sink.

    ``json`` switches stderr to one serialized record per line, extras
    included.  Call once at process startup, before the manager or uvicorn
    start.
    """
    level = level.upper()

    logger.remove()
    logger.configure(extra={"controller": OPERATOR_CONTEXT, "resource": "-"})
    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=TEXT_FORMAT)

    logging.basicConfig(handlers=[_StdlibBridge()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, json={})", level, json)
