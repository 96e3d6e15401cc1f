"""
Logging Configuration
=====================
Library modules only create child loggers (``logging.getLogger(__name__)``);
handlers are attached here by the embedding application.

Face and solid meshing run on worker threads, so every record carries the
name of the thread that emitted it.
"""
import logging
import sys
from typing import Optional, Union

PACKAGE_LOGGER = "brepmesh"
LOG_FORMAT = "%(asctime)s [%(threadName)s] %(name)s %(levelname)s: %(message)s"
# Handlers installed by setup_logging carry this name prefix
_HANDLER_PREFIX = "brepmesh."


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """
    Send the package's records to stderr and, optionally, to ``log_file``.

    Calling it again replaces the handlers it installed before; handlers
    added by anyone else are left alone.

    Args:
        level: A logging level or its name ("DEBUG", "info", ...).
        log_file: Optional path; the file is overwritten.
    """
    if isinstance(level, str):
        try:
            level = logging.getLevelNamesMapping()[level.upper()]
        except KeyError:
            raise ValueError(f"Unknown log level: {level!r}") from None

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if (handler.get_name() or "").startswith(_HANDLER_PREFIX):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    handlers = [("console", logging.StreamHandler(sys.stderr))]
    if log_file:
        handlers.append(("file", logging.FileHandler(log_file, mode="w", encoding="utf-8")))
    for name, handler in handlers:
        handler.set_name(_HANDLER_PREFIX + name)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug(f"Logging to {', '.join(name for name, _ in handlers)} at {logging.getLevelName(level)}.")
    return logger
