from __future__ import annotations

from typing import Any, Iterable, List

from . import db as dbmod
from .models import Item

_ORDER_NEWEST_FIRST = " ORDER BY added DESC, id DESC"


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so *term* matches literally (used with ESCAPE '\\')."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_search_query(term: str) -> dbmod.SQLQuery:
    """Ids of items whose title or path contains *term*, newest first.

    An empty term selects every item; any other term, whitespace included,
    is matched literally. Matching uses SQLite ``LIKE``, which is
    case-insensitive for ASCII.
    """
    if not term:
        return dbmod.SQLQuery("SELECT id FROM items" + _ORDER_NEWEST_FIRST, ())
    pattern = f"%{escape_like(term)}%"
    return dbmod.SQLQuery(
        "SELECT id FROM items "
        "WHERE title LIKE ? ESCAPE '\\' OR path LIKE ? ESCAPE '\\'"
        + _ORDER_NEWEST_FIRST,
        (pattern, pattern),
    )


async def search_items(db_path: str, term: str) -> List[int]:
    query = build_search_query(term)
    ids = await dbmod.fetch_scalars(db_path, query.text, query.params)
    return [int(i) for i in ids]


async def fetch_item_details(db_path: str, ids: Iterable[Any]) -> List[Item]:
    unique_ids = dbmod.normalize_ids(ids)
    if not unique_ids:
        return []
    rows = await dbmod.fetch_item_rows(db_path, unique_ids)
    items = [Item.from_row(row) for row in rows]
    items.sort(key=lambda item: item.id)
    return items
