from __future__ import annotations

from sqlalchemy.exc import DBAPIError, SQLAlchemyError


# Postgres SQLSTATE for "relation does not exist".
UNDEFINED_TABLE_SQLSTATE = "42P01"


def is_missing_relation(exc: SQLAlchemyError) -> bool:
    """Return True when ``exc`` means a table has not been created yet.

    asyncpg exposes the SQLSTATE as ``sqlstate`` on the wrapped driver error,
    psycopg as ``pgcode``; SQLite only reports it in the message.
    """
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    for attr in ("sqlstate", "pgcode"):
        if getattr(orig, attr, None) == UNDEFINED_TABLE_SQLSTATE:
            return True
    cause = getattr(orig, "__cause__", None)
    if getattr(cause, "sqlstate", None) == UNDEFINED_TABLE_SQLSTATE:
        return True
    message = str(orig).lower()
    return "no such table" in message or ("relation" in message and "does not exist" in message)
