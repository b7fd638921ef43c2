"""Logging for the tickets service.

Everything logs through the ``tickets`` logger: stdout, a rotating file under
``LOGS_DIR`` and, when a source token is configured, Betterstack.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from logtail import LogtailHandler

import settings

LOGGER_NAME = "tickets"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE = "app.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# chatty per-request loggers of the HTTP client
QUIET_LOGGERS = ("httpx", "httpcore")


def _handlers() -> list:
    handlers = [
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            settings.LOGS_DIR / LOG_FILE,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        ),
    ]
    if settings.BETTERSTACK_SOURCE_TOKEN:
        kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
        if settings.BETTERSTACK_INGEST_HOST:
            kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
        handlers.append(LogtailHandler(**kwargs))
    return handlers


def setup_logging() -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    log.propagate = False
    for old in list(log.handlers):
        log.removeHandler(old)
        old.close()

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in _handlers():
        handler.setFormatter(formatter)
        log.addHandler(handler)

    if settings.BETTERSTACK_SOURCE_TOKEN:
        log.info(f"Betterstack logging enabled (host: {settings.BETTERSTACK_INGEST_HOST or 'default'})")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log


logger = setup_logging()
