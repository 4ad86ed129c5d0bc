"""Low-level escape hatch: run a caller-supplied statement and return JSON-like rows.

The denylist is a plain substring check on the statement text. It stops
accidents, not a determined caller (comments, string concatenation and
equivalent statements all get through), so access to this gateway has to be
restricted by whoever exposes it.
"""

from __future__ import annotations

import enum
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from . import db as dbmod
from .config import DEFAULT_DENYLIST
from .errors import MalformedInput, RejectedStatement
from .models import parse_timestamp

Value = Union[str, int, float, bytes, None]

READ_KEYWORDS = frozenset({"SELECT", "WITH", "VALUES", "PRAGMA", "EXPLAIN"})
AFFECTED_ROWS_KEY = "affected_rows"

_WHITESPACE = re.compile(r"\s+")
_LEADING_KEYWORD = re.compile(r"^\s*\(*\s*([A-Za-z]+)")


class ColumnKind(enum.Enum):
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    REAL = "REAL"
    BLOB = "BLOB"
    DATETIME = "DATETIME"
    NULL = "NULL"
    UNKNOWN = "UNKNOWN"


def column_kind(value: Any) -> ColumnKind:
    # StoredTimestamp subclasses str, so it must be checked first.
    if value is None:
        return ColumnKind.NULL
    if isinstance(value, dbmod.StoredTimestamp):
        return ColumnKind.DATETIME
    if isinstance(value, str):
        return ColumnKind.TEXT
    if isinstance(value, bool):
        return ColumnKind.UNKNOWN
    if isinstance(value, int):
        return ColumnKind.INTEGER
    if isinstance(value, float):
        return ColumnKind.REAL
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ColumnKind.BLOB
    return ColumnKind.UNKNOWN


def coerce(kind: ColumnKind, value: Any) -> Value:
    if kind is ColumnKind.TEXT:
        return str(value)
    if kind is ColumnKind.INTEGER:
        return int(value)
    if kind is ColumnKind.REAL:
        return float(value)
    if kind is ColumnKind.BLOB:
        return bytes(value)
    if kind is ColumnKind.DATETIME:
        parsed = parse_timestamp(value)
        return parsed.isoformat() if parsed else ""
    return None


def coerce_row(columns: Sequence[str], row: Sequence[Any]) -> Dict[str, Value]:
    out: Dict[str, Value] = {}
    for name, value in zip(columns, row):
        out[name] = coerce(column_kind(value), value)
    return out


def find_denied(statement: str, denylist: Iterable[str] = DEFAULT_DENYLIST) -> Optional[str]:
    """Return the first denylist entry found in *statement*, ignoring case and spacing."""
    normalized = _WHITESPACE.sub(" ", statement).upper()
    for entry in denylist:
        needle = _WHITESPACE.sub(" ", entry.strip()).upper()
        if needle and needle in normalized:
            return entry
    return None


def is_read_statement(statement: str) -> bool:
    match = _LEADING_KEYWORD.match(statement)
    return bool(match) and match.group(1).upper() in READ_KEYWORDS


async def execute_raw_query(
    db_path: str,
    statement: str,
    *,
    denylist: Iterable[str] = DEFAULT_DENYLIST,
) -> List[Dict[str, Value]]:
    if not statement or not statement.strip():
        raise MalformedInput("Statement is empty")
    denied = find_denied(statement, denylist)
    if denied is not None:
        logging.warning("Rejected raw statement containing %r", denied)
        raise RejectedStatement(f"Destructive commands are not allowed ({denied.strip().upper()})")

    result = await dbmod.execute_statement(db_path, statement)
    if is_read_statement(statement):
        return [coerce_row(result.columns, row) for row in result.rows]
    return [{AFFECTED_ROWS_KEY: max(result.rowcount, 0)}]
