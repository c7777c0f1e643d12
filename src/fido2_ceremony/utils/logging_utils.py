"""Logging utilities for ceremony, security and database events.

Decorators and helpers that add timing, security context and error context
to log output. Sensitive values are redacted before they are logged.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fido2_ceremony.managers.logging_manager import get_logger

SLOW_OPERATION_SECONDS = 2.0
SLOW_DB_OPERATION_SECONDS = 1.0

SENSITIVE_ARG_KEYS = {
    "password",
    "token",
    "secret",
    "key",
    "auth",
    "credential",
    "private",
    "signature",
    "hash",
}

SENSITIVE_DETAIL_KEYS = {
    "password",
    "token",
    "secret",
    "key",
    "hash",
    "signature",
    "private_key",
    "public_key",
    "attestation",
}


@dataclass
class SecurityContext:
    """Security event context for logging."""

    event_type: str
    user_id: Optional[str] = None
    success: bool = True
    details: Optional[Dict[str, Any]] = None


class SecurityLogger:
    """Specialized logger for security events."""

    def __init__(self, prefix: str = "[SECURITY]"):
        self.logger = get_logger(name="FIDO2_Ceremony_Security", prefix=prefix)

    def log_event(self, context: SecurityContext):
        """Log a security event with full context."""
        event_data = {
            "event": "security_event",
            "event_type": context.event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "success": context.success,
            "user_id": context.user_id or "anonymous",
            "details": _sanitize_security_details(context.details) if context.details else None,
            "process": os.getpid(),
            "status": "SUCCESS" if context.success else "FAILURE",
        }
        self.logger.info(event_data)


def log_auth_success(
    event_type: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Log successful authentication events."""
    SecurityLogger().log_event(SecurityContext(event_type=event_type, user_id=user_id, success=True, details=details))


def log_auth_failure(
    event_type: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Log failed authentication events."""
    SecurityLogger().log_event(SecurityContext(event_type=event_type, user_id=user_id, success=False, details=details))


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator for logging function/method performance with timing.

    Args:
        operation_name: Name of the operation for logging
        log_args: Whether to log function arguments (sanitized)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="FIDO2_Ceremony_Performance", prefix="[PERFORMANCE]")

        def _start(args, kwargs) -> str:
            operation_id = str(uuid.uuid4())[:8]
            if log_args and (args or kwargs):
                logger.debug(
                    "[%s] Starting %s with args: %s", operation_id, operation_name, _sanitize_args(args, kwargs)
                )
            else:
                logger.debug("[%s] Starting %s", operation_id, operation_name)
            return operation_id

        def _done(operation_id: str, start_time: float):
            duration = time.time() - start_time
            logger.debug("[%s] Completed %s in %.3fs", operation_id, operation_name, duration)
            if duration > SLOW_OPERATION_SECONDS:
                logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)

        def _failed(operation_id: str, start_time: float, error: Exception):
            duration = time.time() - start_time
            logger.error("[%s] Failed %s after %.3fs: %s", operation_id, operation_name, duration, str(error))

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _failed(operation_id, start_time, e)
                raise
            _done(operation_id, start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _failed(operation_id, start_time, e)
                raise
            _done(operation_id, start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def log_database_operation(collection_name: str, operation_type: str):
    """
    Decorator for logging database operations with performance metrics.

    The affected record count is read from motor results (``inserted_id``,
    ``modified_count``, ``deleted_count``) or list lengths.

    Args:
        collection_name: Name of the MongoDB collection
        operation_type: Type of operation (find, insert, update, delete, etc.)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="FIDO2_Ceremony_DB_Operations", prefix="[DATABASE]")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = str(uuid.uuid4())[:8]
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "[%s] DB %s on %s failed after %.3fs: %s",
                    operation_id,
                    operation_type,
                    collection_name,
                    time.time() - start_time,
                    str(e),
                )
                raise

            duration = time.time() - start_time
            logger.debug(
                "[%s] DB %s on %s completed in %.3fs - %s records affected",
                operation_id,
                operation_type,
                collection_name,
                duration,
                _result_count(result),
            )
            if duration > SLOW_DB_OPERATION_SECONDS:
                logger.warning(
                    "[%s] SLOW DB OPERATION: %s on %s took %.3fs",
                    operation_id,
                    operation_type,
                    collection_name,
                    duration,
                )
            return result

        return async_wrapper

    return decorator


def _result_count(result: Any) -> Optional[int]:
    if hasattr(result, "inserted_id"):
        return 1
    if hasattr(result, "modified_count"):
        return result.modified_count
    if hasattr(result, "deleted_count"):
        return result.deleted_count
    if isinstance(result, list):
        return len(result)
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    return None


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log security-related events with proper context.

    Args:
        event_type: Type of security event
        user_id: Principal identifier if available
        success: Whether the security event was successful
        details: Additional event details
    """
    logger = get_logger(name="FIDO2_Ceremony_Security", prefix="[SECURITY]")

    event_data = {
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "success": success,
        "user_id": user_id or "anonymous",
    }
    if details:
        event_data["details"] = _sanitize_security_details(details)

    status = "SUCCESS" if success else "FAILURE"
    logger.info("SECURITY EVENT [%s]: %s - %s", status, event_type, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log errors with full context and stack trace.

    Args:
        error: The exception that occurred
        context: Additional context information
        operation: Name of the operation that failed
    """
    logger = get_logger(name="FIDO2_Ceremony_Errors", prefix="[ERROR]")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = _sanitize_args((), context)

    logger.error("ERROR OCCURRED: %s", error_data)


def _sanitize_args(args: tuple, kwargs: dict) -> dict:
    """
    Sanitize function arguments to avoid logging sensitive data.

    Returns:
        Sanitized arguments dictionary
    """
    sanitized: Dict[str, Any] = {}

    if args:
        sanitized["args"] = [
            (
                "<REDACTED>"
                if any(key in str(arg).lower() for key in SENSITIVE_ARG_KEYS)
                else str(arg)[:100] + ("..." if len(str(arg)) > 100 else "")
            )
            for arg in args
        ]

    if kwargs:
        sanitized["kwargs"] = {}
        for key, value in kwargs.items():
            if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_ARG_KEYS):
                sanitized["kwargs"][key] = "<REDACTED>"
            else:
                str_value = str(value)
                sanitized["kwargs"][key] = str_value[:100] + ("..." if len(str_value) > 100 else "")

    return sanitized


def _sanitize_security_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Redact sensitive keys from security event details."""
    sanitized = {}
    for key, value in details.items():
        if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_DETAIL_KEYS):
            sanitized[key] = "<REDACTED>"
        else:
            sanitized[key] = value
    return sanitized
