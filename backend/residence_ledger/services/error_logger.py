"""Persisted error log for ledger jobs and endpoints.

Each captured exception goes to the ``residence_ledger.errors`` logger and
to an ``error_logs`` row tagged with the entity it was working on (a lease
application, a posting batch, an HTTP request).  Ledger data problems such
as an unbalanced reversal are recorded as warnings; anything else is an
error unless the caller says otherwise.

    try:
        ...
    except Exception as e:
        await log_error(e, db=db, module="api.accruals", function_name="run_monthly")

After a rollback the failing session is unusable, so use
``log_error_standalone`` which writes through a fresh session.
"""

from __future__ import annotations

import logging
import traceback
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from residence_ledger.models.error_log import ErrorLog, ErrorSeverity
from residence_ledger.services.ledger.journal import LedgerError

logger = logging.getLogger("residence_ledger.errors")

MESSAGE_LIMIT = 2000
TRACEBACK_LIMIT = 10000


def _clip(value: object, limit: int) -> str:
    """Printable text of *value*, control characters blanked, cut to *limit*."""
    text = str(value)
    return "".join(c if c.isprintable() or c in "\n\t" else " " for c in text)[:limit]


def _column_limit(column_name: str) -> int:
    return ErrorLog.__table__.c[column_name].type.length


def severity_for(exc: BaseException) -> ErrorSeverity:
    """Ledger data problems are warnings; everything else is an error."""
    if isinstance(exc, LedgerError):
        return ErrorSeverity.WARNING
    return ErrorSeverity.ERROR


def raise_site(exc: BaseException) -> tuple[Optional[str], Optional[str], Optional[int]]:
    """(file, function, line) of the innermost frame that raised *exc*."""
    frame = exc.__traceback__
    if frame is None:
        return None, None, None
    while frame.tb_next is not None:
        frame = frame.tb_next
    code = frame.tb_frame.f_code
    return code.co_filename, code.co_name, frame.tb_lineno


def build_error_row(
    exc: BaseException,
    *,
    severity: ErrorSeverity,
    module: Optional[str],
    function_name: Optional[str],
    line_number: Optional[int],
    entity_type: Optional[str],
    entity_id: Optional[str],
    user_id: Optional[str],
) -> ErrorLog:
    return ErrorLog(
        severity=severity,
        error_type=type(exc).__name__,
        message=_clip(exc, MESSAGE_LIMIT),
        traceback=_clip(
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            TRACEBACK_LIMIT,
        ),
        module=_clip(module, _column_limit("module")) if module else None,
        function_name=_clip(function_name, _column_limit("function_name")) if function_name else None,
        line_number=line_number,
        entity_type=_clip(entity_type, _column_limit("entity_type")) if entity_type else None,
        entity_id=_clip(entity_id, _column_limit("entity_id")) if entity_id else None,
        user_id=_clip(user_id, _column_limit("user_id")) if user_id else None,
    )


async def log_error(
    exc: Exception,
    *,
    db: Optional[AsyncSession] = None,
    severity: Optional[ErrorSeverity] = None,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    line_number: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Optional[ErrorLog]:
    """Log *exc* and stage an ErrorLog row on *db*.

    Without a session only the Python logger is written.  Returns the row,
    or None when nothing was persisted.
    """
    severity = severity or severity_for(exc)
    if not module:
        module, site_function, site_line = raise_site(exc)
        function_name = function_name or site_function
        line_number = line_number or site_line

    subject = f"{entity_type}:{entity_id or '?'} " if entity_type else ""
    logger.error(
        "%s[%s] %s: %s", subject, severity.value.upper(), type(exc).__name__,
        _clip(exc, MESSAGE_LIMIT), exc_info=exc,
    )

    if db is None:
        return None

    row = build_error_row(
        exc,
        severity=severity,
        module=module,
        function_name=function_name,
        line_number=line_number,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
    )
    try:
        db.add(row)
        await db.flush()
    except Exception as db_err:
        logger.warning("Failed to persist error log to DB: %s", db_err)
        return None
    return row


async def log_error_standalone(
    exc: Exception,
    *,
    severity: Optional[ErrorSeverity] = None,
    module: Optional[str] = None,
    function_name: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Optional[ErrorLog]:
    """Same as ``log_error`` but commits through its own session."""
    from residence_ledger.database import async_session

    try:
        async with async_session() as db:
            row = await log_error(
                exc,
                db=db,
                severity=severity,
                module=module,
                function_name=function_name,
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
            )
            await db.commit()
            return row
    except Exception as db_err:
        logger.warning("Failed standalone error log: %s", db_err)
        return None
