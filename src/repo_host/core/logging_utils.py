import collections
import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, OrderedDict

from .config import LogConfig

_MAX_CACHED_LOGGERS = 64
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()

# Attribute carried on records emitted by ``log_event``.
EVENT_FIELDS_ATTR = "event_fields"


class EventFormatter(logging.Formatter):
    """Line formatter that renders ``log_event`` records as one JSON object.

    Plain records keep their message; event records replace it with the
    serialized fields, after the usual timestamp and level prefix.
    """

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        fields = getattr(record, EVENT_FIELDS_ATTR, None)
        if fields is not None:
            record.message = json.dumps(fields, default=str, ensure_ascii=False)
        return super().formatMessage(record)


def _build_handler(log_config: LogConfig) -> RotatingFileHandler:
    log_config.path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_config.path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(EventFormatter())
    return handler


def _writes_to(logger: logging.Logger, log_config: LogConfig) -> bool:
    target = os.path.abspath(log_config.path)
    return any(
        isinstance(handler, RotatingFileHandler) and handler.baseFilename == target
        for handler in logger.handlers
    )


def _close_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_rotating_logger(name: str, log_config: LogConfig) -> logging.Logger:
    """Return the logger for ``name``, writing only to ``log_config.path``.

    Loggers are cached by name. Asking again with a different path swaps the
    handler; the least recently used loggers beyond the cache bound are closed.
    """
    logger = _LOGGER_CACHE.get(name)
    if logger is not None and _writes_to(logger, log_config):
        _LOGGER_CACHE.move_to_end(name)
        return logger

    logger = logging.getLogger(name)
    _close_handlers(logger)
    logger.addHandler(_build_handler(log_config))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        _close_handlers(evicted)
    return logger


def safe_log(
    logger: logging.Logger,
    level: int,
    message: str,
    *args: Any,
    exc: Optional[BaseException] = None,
) -> None:
    """Log ``message`` without raising, even when ``args`` do not fit the format."""
    try:
        text = message % args if args else message
    except (TypeError, ValueError):
        text = " ".join([message, *(str(arg) for arg in args)])
    if exc is not None:
        text = f"{text}: {exc}"
    try:
        logger.log(level, text)
    except Exception:
        pass


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one structured event.

    The record's message is the event name, so handlers without an
    ``EventFormatter`` still log something readable; the full payload travels
    in the ``event_fields`` record attribute.
    """
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event, **fields}
    if exc is not None:
        payload["error"] = str(exc) or exc.__class__.__name__
        payload["error_type"] = exc.__class__.__name__
    logger.log(level, event, extra={EVENT_FIELDS_ATTR: payload})


__all__ = ["EventFormatter", "log_event", "safe_log", "setup_rotating_logger"]
