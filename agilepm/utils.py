"""
Logging helpers shared by every module.
"""
import logging
import sys

from agilepm.core import config

_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
    )
    root = logging.getLogger("agilepm")
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
    # Let pytest's caplog and host applications see the records too
    root.propagate = True

    # Keep the SQL engine quiet unless echo is requested
    if not config.SQL_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger under the ``agilepm`` namespace.

    Usage:
        from agilepm.utils import get_logger

        log = get_logger(__name__)
        log.info("Granted %s", code)
    """
    _configure_root()
    if not name.startswith("agilepm"):
        name = f"agilepm.{name}"
    return logging.getLogger(name)
