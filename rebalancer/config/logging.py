import logging
import sys
import traceback
from datetime import datetime

from rebalancer.core.models import AppLog

# settings may be unavailable (bad env), fall back to INFO
try:
    from rebalancer.config.settings import settings
    LOG_LEVEL = settings.LOG_LEVEL.upper() if settings else "INFO"
except Exception:
    LOG_LEVEL = "INFO"

APP_LOGGER_NAME = "rebalancer"


def setup_logging(name: str = APP_LOGGER_NAME) -> logging.Logger:
    """
    Unified logging setup.
    Console (stdout) only, so container runtimes can collect it.
    """
    logger = logging.getLogger(name)

    # Guard against duplicate handlers
    if logger.handlers:
        return logger

    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)
    return logger


def get_logger(tag: str) -> logging.Logger:
    """Child logger of the app logger; the tag shows up in stored log entries."""
    return logging.getLogger(f"{APP_LOGGER_NAME}.{tag}")


class JournalLogHandler(logging.Handler):
    """
    Mirrors log records into an in-process log store so they can be
    queried and exported later.
    """

    def __init__(self, store, level=logging.DEBUG):
        super().__init__(level)
        self.store = store

    def emit(self, record: logging.LogRecord):
        try:
            tag = record.name.rsplit(".", 1)[-1] if "." in record.name else "System"
            details = None
            if record.exc_info:
                details = "".join(traceback.format_exception(*record.exc_info))
            self.store.append(AppLog(
                timestamp=datetime.fromtimestamp(record.created),
                level="WARNING" if record.levelname == "WARN" else record.levelname,
                tag=tag,
                message=record.getMessage(),
                details=details,
            ))
        except Exception:
            self.handleError(record)


def attach_journal(store, name: str = APP_LOGGER_NAME) -> JournalLogHandler:
    logger = logging.getLogger(name)
    for handler in logger.handlers:
        if isinstance(handler, JournalLogHandler) and handler.store is store:
            return handler
    handler = JournalLogHandler(store)
    logger.addHandler(handler)
    return handler


# Default Logger
logger = setup_logging()
