# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Usage logger contract and the default JSON-lines key event log.

Event sinks are fire-and-forget: emit() must not block, and a failing sink
never undoes or interrupts the state change that produced the event.
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union

from .types import KeyEvent

lib_logger = logging.getLogger("key_rotator")

EVENT_LOGGER_NAME = "key_rotator.events"


class UsageLogger(Protocol):
    def emit(self, event: KeyEvent) -> None: ...


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        payload = getattr(record, "event", None)
        if payload:
            log_record.update(payload)
        return json.dumps(log_record, default=str)


def get_log_dir() -> Path:
    return Path(os.getenv("LOG_DIR", "logs"))


def setup_event_logger(log_dir: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Sets up a dedicated JSON logger for key lifecycle events."""
    directory = Path(log_dir) if log_dir is not None else get_log_dir()
    directory.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(EVENT_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    # Use a rotating file handler to keep log files from growing too large
    handler = RotatingFileHandler(
        directory / "keys.log",
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=2,
    )
    handler.setFormatter(JsonFormatter())

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(handler)
    else:
        handler.close()

    return logger


class LoggingUsageLogger:
    """Writes key events through the ``key_rotator.events`` logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger(EVENT_LOGGER_NAME)

    def emit(self, event: KeyEvent) -> None:
        self._logger.info(event.type.value, extra={"event": event.to_dict()})


class FanOutUsageLogger:
    """Forwards each event to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Iterable[UsageLogger]):
        self._sinks = list(sinks)

    def emit(self, event: KeyEvent) -> None:
        for sink in self._sinks:
            emit_safely(sink, event)


def emit_safely(sink: Optional[UsageLogger], event: KeyEvent) -> None:
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        lib_logger.warning(f"Usage logger failed for {event.type.value} event: {e}")
