"""
Centralized logging manager for the ceremony engine.

Loki handling:
- When ``LOKI_ENABLED`` is off (the default) logs go to the console and,
  if ``LOG_DIR`` is set, to a per-worker log file.
- When Loki is enabled but its handler cannot be attached, records are
  written as JSON lines to a local buffer file instead.
- ``ping_loki_and_flush_if_available()`` checks Loki's ready endpoint and,
  when Loki answers, replays the buffer file into the Loki handler.

Usage:
- Use get_logger() to obtain a logger instance.
"""

import json
import logging
import os
import socket
import sys
import threading
import traceback
from typing import Optional

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler
import requests

from fido2_ceremony.config import settings

LOKI_URL: str = settings.LOKI_URL
LOKI_HEALTH_URL: str = os.getenv("LOKI_HEALTH_URL", LOKI_URL.replace("/loki/api/v1/push", "/ready"))
LOKI_TAGS: dict[str, str] = {"app": settings.APP_NAME, "env": settings.ENV}
LOG_LEVEL: str = settings.LOG_LEVEL
BUFFER_LOCK = threading.Lock()
DEFAULT_LOGGER_NAME = "FIDO2_Ceremony"

_formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def get_buffer_file() -> str:
    if settings.LOG_DIR:
        return os.path.join(settings.LOG_DIR, settings.LOKI_BUFFER_FILE)
    return settings.LOKI_BUFFER_FILE


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def _ensure_worker_file_handler(logger: logging.Logger, formatter: logging.Formatter) -> None:
    if not settings.LOG_DIR:
        return
    log_filename = os.path.join(settings.LOG_DIR, f"worker_{os.getpid()}.log")
    os.makedirs(settings.LOG_DIR, exist_ok=True)
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_filename)
        for h in logger.handlers
    ):
        return
    file_handler = logging.FileHandler(log_filename)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def _write_to_buffer(record: logging.LogRecord) -> None:
    """
    Append a log record to the buffer file as one JSON line.

    Consecutive duplicate lines are skipped.
    """
    log_dict = {
        "ts": record.created,
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
        "process": record.process,
        "filename": record.filename,
        "funcName": record.funcName,
        "lineno": record.lineno,
        "host": socket.gethostname(),
        "app": settings.APP_NAME,
        "env": settings.ENV,
        "exception": None,
    }
    if record.exc_info:
        log_dict["exception"] = "".join(traceback.format_exception(*record.exc_info))
    log_line = json.dumps(log_dict, ensure_ascii=False, default=str)
    buffer_file = get_buffer_file()
    try:
        with BUFFER_LOCK:
            last_line = None
            if os.path.exists(buffer_file):
                with open(buffer_file, "r", encoding="utf-8") as f:
                    lines = f.readlines()
                    if lines:
                        last_line = lines[-1].rstrip("\n")
            if last_line == log_line:
                return
            directory = os.path.dirname(buffer_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(buffer_file, "a", encoding="utf-8") as f:
                f.write(log_line + "\n")
    except OSError as e:
        logging.getLogger(DEFAULT_LOGGER_NAME).error(
            "[LoggingManager] Failed to write log to buffer file '%s': %s", buffer_file, e
        )


class BufferHandler(logging.Handler):
    """Handler used while Loki is unreachable."""

    def emit(self, record: logging.LogRecord) -> None:
        _write_to_buffer(record)


def flush_buffer_to_loki(loki_handler: logging.Handler, logger: logging.Logger) -> int:
    """
    Replay buffered JSON lines into the Loki handler.

    Lines that cannot be parsed or sent stay in the buffer file; the file is
    removed once everything has been sent.

    Returns:
        int: number of records sent
    """
    buffer_file = get_buffer_file()
    if not os.path.exists(buffer_file):
        return 0

    sent = 0
    with BUFFER_LOCK:
        with open(buffer_file, "r", encoding="utf-8") as f:
            lines = f.readlines()

        failed_lines = []
        for idx, line in enumerate(lines):
            try:
                entry = json.loads(line)
                record = logging.LogRecord(
                    name=entry.get("logger", DEFAULT_LOGGER_NAME),
                    level=getattr(logging, entry.get("level", "INFO"), logging.INFO),
                    pathname="(buffered)",
                    lineno=0,
                    msg=entry.get("msg", ""),
                    args=None,
                    exc_info=None,
                )
                if entry.get("ts") is not None:
                    record.created = float(entry["ts"])
                loki_handler.emit(record)
                sent += 1
            except (ValueError, TypeError, OSError) as e:
                logger.error("[LoggingManager] Failed to resend buffered log (line %d): %s", idx, e)
                failed_lines.append(line)

        if failed_lines:
            with open(buffer_file, "w", encoding="utf-8") as f:
                f.writelines(failed_lines)
            logger.warning(
                "[LoggingManager] %d/%d buffered logs could not be resent and were kept",
                len(failed_lines),
                len(lines),
            )
        else:
            os.remove(buffer_file)
            logger.info("[LoggingManager] Flushed %d buffered logs to Loki", sent)
    return sent


def _create_loki_handler() -> logging.Handler:
    return LokiLoggerHandler(
        url=LOKI_URL,
        labels=LOKI_TAGS,
        auth=None,
        compressed=settings.LOKI_COMPRESS,
    )


def ping_loki_and_flush_if_available(logger: Optional[logging.Logger] = None) -> bool:
    """
    Ping Loki's health endpoint and replay the buffer when it is up.

    Returns:
        bool: True if Loki answered and the buffer was flushed
    """
    logger = logger or get_logger()
    if not settings.LOKI_ENABLED:
        logger.debug("[LoggingManager] Loki disabled, skipping health check")
        return False
    try:
        resp = requests.get(LOKI_HEALTH_URL, timeout=(2, 3), headers={"Connection": "close"})
    except requests.exceptions.RequestException as e:
        logger.warning("[LoggingManager] Loki health check connection failed: %s", e)
        return False

    if resp.status_code != 200:
        logger.warning("[LoggingManager] Loki health check failed: status %s", resp.status_code)
        return False

    loki_handler = next((h for h in logger.handlers if isinstance(h, LokiLoggerHandler)), None)
    if loki_handler is None:
        loki_handler = _create_loki_handler()
        logger.addHandler(loki_handler)
        for handler in [h for h in logger.handlers if isinstance(h, BufferHandler)]:
            logger.removeHandler(handler)
    flush_buffer_to_loki(loki_handler, logger)
    return True


class PrefixFilter(logging.Filter):
    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def get_logger(name: str = DEFAULT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Get a configured logger.

    Args:
        name: Logger name; loggers sharing a name share handlers.
        add_loki: Attach the Loki handler when Loki is enabled in settings.
        prefix: Text prepended to every message of this logger.
    """
    if prefix:
        name = f"{name}.{prefix.strip('[]').replace(' ', '_')}"
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.propagate = False

    _ensure_console_handler(logger, _formatter)
    _ensure_worker_file_handler(logger, _formatter)

    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))

    if add_loki and settings.LOKI_ENABLED:
        handler_types = [type(h) for h in logger.handlers]
        if LokiLoggerHandler not in handler_types and BufferHandler not in handler_types:
            try:
                logger.addHandler(_create_loki_handler())
            except (OSError, ValueError) as e:
                logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s. Using buffer file.", e)
                logger.addHandler(BufferHandler())
    return logger
