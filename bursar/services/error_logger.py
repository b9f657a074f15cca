"""Error capture: persists unexpected exceptions and logs them.

Usage:
    from bursar.services.error_logger import log_error
    try:
        ...
    except Exception as e:
        await log_error(e, db=db, module="api.ledgers", function_name="assess")

Domain errors (``BursarError``) are expected outcomes and are never logged
here; the API's exception handler turns them into responses.
"""

from __future__ import annotations

import logging
import traceback as tb_module
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bursar.models.error_log import ErrorLog, ErrorSeverity

logger = logging.getLogger("bursar.errors")


def _sanitize_text(value: object, *, max_len: Optional[int] = None) -> str:
    """Replace control characters before persisting text."""
    text = str(value)
    text = "".join(ch if (ch >= " " or ch in "\n\r\t") else " " for ch in text)
    if max_len is not None:
        return text[:max_len]
    return text


def _origin(exc: Exception) -> tuple[str | None, str | None, int | None]:
    """File, function and line of the innermost traceback frame."""
    frame = exc.__traceback__
    if frame is None:
        return None, None, None
    while frame.tb_next:
        frame = frame.tb_next
    code = frame.tb_frame.f_code
    return code.co_filename, code.co_name, frame.tb_lineno


async def log_error(
    exc: Exception,
    *,
    db: Optional[AsyncSession] = None,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    request_method: Optional[str] = None,
    request_path: Optional[str] = None,
    status_code: Optional[int] = None,
    response_time_ms: Optional[float] = None,
    user_id: Optional[int] = None,
) -> Optional[ErrorLog]:
    """Log an exception to the Python logger and, given a session, the database.

    Returns the created ErrorLog row, or None when no row was written.
    """
    error_type = type(exc).__name__
    message = _sanitize_text(exc, max_len=2000)
    traceback_str = _sanitize_text(
        "".join(tb_module.format_exception(type(exc), exc, exc.__traceback__)),
        max_len=10000,
    )

    line_number = None
    if not module:
        module, detected_function, line_number = _origin(exc)
        function_name = function_name or detected_function

    prefix = f"{request_method or '?'} {request_path} -> " if request_path else ""
    logger.error(
        "%s[%s] %s: %s", prefix, severity.value.upper(), error_type, message, exc_info=exc
    )

    if db is None:
        return None

    try:
        entry = ErrorLog(
            severity=severity,
            error_type=error_type,
            message=message,
            traceback=traceback_str,
            module=_sanitize_text(module, max_len=300) if module else None,
            function_name=_sanitize_text(function_name, max_len=200) if function_name else None,
            line_number=line_number,
            request_method=request_method,
            request_path=_sanitize_text(request_path, max_len=500) if request_path else None,
            status_code=status_code,
            response_time_ms=response_time_ms,
            user_id=user_id,
        )
        db.add(entry)
        await db.flush()
        return entry
    except Exception as db_err:
        # Persisting the log must not mask the original failure
        logger.warning("Failed to persist error log to DB: %s", db_err)
        return None


async def log_error_standalone(exc: Exception, **kwargs) -> Optional[ErrorLog]:
    """Log an error through its own session, outside any failed transaction."""
    from bursar.database import async_session

    try:
        async with async_session() as db:
            entry = await log_error(exc, db=db, **kwargs)
            await db.commit()
            return entry
    except Exception as db_err:
        logger.warning("Failed standalone error log: %s", db_err)
        return None
