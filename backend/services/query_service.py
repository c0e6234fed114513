"""
Parameterized query execution

Runs a raw SQL string with positional parameters on the current connection
pool. Parameters use the driver's "?" placeholders (pyodbc and sqlite both
accept them). Results come back as a list of row dicts, or a summary for
statements that return no rows.

Database errors are wrapped in QueryError, which carries the diagnostic
fields SQL Server reports (message, state, line number, procedure, server).
"""

import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Optional, Sequence

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

# pyodbc messages look like "[42S02] [Microsoft][ODBC Driver 17 for SQL Server][SQL Server]Invalid object name 'X'. (208)"
_ODBC_BRACKETS = re.compile(r"^(\[[^\]]*\]\s*)+")
_ODBC_SERVER = re.compile(r"\[SQL Server\]|\[Microsoft\]")


@dataclass(eq=False)
class QueryError(Exception):
    message: str
    state: Optional[str] = None
    line_number: Optional[int] = None
    procedure: Optional[str] = None
    server: Optional[str] = None

    def __str__(self):
        return self.message

    def to_detail(self) -> dict:
        return asdict(self)

    @classmethod
    def from_exception(cls, exc: Exception) -> "QueryError":
        """Pull driver diagnostics out of an SQLAlchemy or DBAPI exception."""
        orig = exc.orig if isinstance(exc, DBAPIError) and exc.orig is not None else exc
        args = getattr(orig, "args", ())

        state = None
        message = str(orig)
        # pyodbc errors carry (sqlstate, message)
        if len(args) >= 2 and isinstance(args[0], str) and isinstance(args[1], str):
            state, message = args[0], args[1]

        server = None
        if _ODBC_SERVER.search(message):
            server = "SQL Server"
        message = _ODBC_BRACKETS.sub("", message).strip() or str(orig)

        return cls(
            message=message,
            state=state or getattr(orig, "sqlstate", None),
            line_number=getattr(orig, "lineno", None),
            procedure=getattr(orig, "procname", None),
            server=server,
        )


def _clean_params(params: Optional[Sequence[Any]]) -> tuple:
    cleaned = []
    for index, value in enumerate(params or []):
        if isinstance(value, (dict, list)):
            logger.warning(f"Parameter {index} is not a scalar, passing it as text")
            value = str(value)
        cleaned.append(value)
    return tuple(cleaned)


async def run_query(engine: AsyncEngine, query: str, params: Optional[Sequence[Any]] = None):
    """
    Execute a query and return rows or an execution summary.

    Returns:
        list[dict] for row-returning statements, otherwise
        {"success": True, "rowsAffected": n} or {"success": True, "message": ...}

    Raises:
        QueryError: the database rejected the statement or could not be reached
    """
    bound = _clean_params(params)
    logger.debug(f"Executing query: {query!r} with {len(bound)} parameter(s)")

    try:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql(query, bound)
            if result.returns_rows:
                return [dict(row) for row in result.mappings().all()]
            rows_affected = result.rowcount
    except SQLAlchemyError as e:
        error = QueryError.from_exception(e)
        logger.error(f"Database error: {error.message} (state={error.state})")
        raise error from e

    if rows_affected and rows_affected > 0:
        return {"success": True, "rowsAffected": rows_affected}
    return {"success": True, "message": "Query executed successfully"}
