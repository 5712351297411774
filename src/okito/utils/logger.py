"""
Logging setup shared by the engine and its adapters.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from okito.utils.trace_context import get_operation_id

LOG_DIR = Path("logs")
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(operation_id)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
EVENTS_LOGGER = "okito.events"

MAX_LOG_SIZE_MB = 10
BACKUP_COUNT = 5

_loggers: Dict[str, logging.Logger] = {}
_file_handler_added = False


class OperationIdFilter(logging.Filter):
    """Adds operation_id of the active OperationTrace to log records."""
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'operation_id'):
            record.operation_id = get_operation_id() or '-'
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for lifecycle events."""

    _EXTRA_FIELDS = ("event_type", "operation", "operation_id", "batch_index", "transaction_id", "data")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        for key in self._EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


_operation_filter = OperationIdFilter()


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Get or create a logger."""
    if name in _loggers:
        return _loggers[name]
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.addFilter(_operation_filter)
    _loggers[name] = logger
    return logger


def _log_path(filename: str) -> Path:
    path = Path(filename)
    if path.parent == Path("."):
        LOG_DIR.mkdir(exist_ok=True)
        return LOG_DIR / path.name
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def setup_file_logging(
    filename: str = "okito.log",
    level: int = logging.INFO,
    use_rotation: bool = True
) -> None:
    """Set up file logging on the root logger once per process."""
    global _file_handler_added

    if _file_handler_added:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    log_path = _log_path(filename)

    if use_rotation:
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=MAX_LOG_SIZE_MB * 1024 * 1024,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
    else:
        file_handler = logging.FileHandler(str(log_path), encoding='utf-8')

    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_operation_filter)
    root_logger.addHandler(file_handler)

    _file_handler_added = True


def setup_console_logging(level: int = logging.INFO) -> None:
    """Set up console logging."""
    root_logger = logging.getLogger()

    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
            return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_operation_filter)
    root_logger.addHandler(console_handler)


def setup_json_logging(filename: str = "operation_events.jsonl") -> logging.Logger:
    """Set up the JSON lines logger for lifecycle events."""
    json_logger = logging.getLogger(EVENTS_LOGGER)
    json_logger.setLevel(logging.INFO)
    json_logger.propagate = False

    for handler in json_logger.handlers:
        if isinstance(handler, logging.FileHandler):
            return json_logger

    json_handler = logging.handlers.RotatingFileHandler(
        str(_log_path(filename)),
        maxBytes=MAX_LOG_SIZE_MB * 1024 * 1024,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    json_handler.setFormatter(JSONFormatter())
    json_logger.addHandler(json_handler)
    return json_logger


def log_operation_event(
    event_type: str,
    operation: str,
    batch_index: Optional[int] = None,
    transaction_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
) -> None:
    """
    Emit a structured lifecycle event.

    Goes to the events logger; it only reaches a file once
    ``setup_json_logging`` has been called.
    """
    json_logger = logging.getLogger(EVENTS_LOGGER)
    if not json_logger.isEnabledFor(logging.INFO):
        return
    record = json_logger.makeRecord(
        name=EVENTS_LOGGER,
        level=logging.INFO,
        fn="", lno=0,
        msg=f"{event_type}: {operation}" + (f" batch {batch_index}" if batch_index is not None else ""),
        args=(), exc_info=None
    )
    record.event_type = event_type
    record.operation = operation
    record.operation_id = get_operation_id() or '-'
    if batch_index is not None:
        record.batch_index = batch_index
    if transaction_id is not None:
        record.transaction_id = transaction_id
    if extra:
        record.data = extra
    json_logger.handle(record)
