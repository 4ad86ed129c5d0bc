from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from . import db as dbmod
from .errors import CatalogError, MalformedInput

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class IngestError:
    path: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "error": self.error}


@dataclass
class IngestResult:
    success: List[int] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    errors: List[IngestError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": list(self.success),
            "duplicates": list(self.duplicates),
            "errors": [e.to_dict() for e in self.errors],
        }


def display_path(path: Optional[PathLike]) -> str:
    if path is None:
        return ""
    return os.fsdecode(path)


def is_storable(path: str) -> bool:
    """False for names carrying lone surrogates, which SQLite TEXT cannot hold."""
    try:
        path.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def derive_title_and_extension(path: str) -> Tuple[str, str]:
    """Split the final path component into (title, extension).

    Both ``/`` and ``\\`` separate components. The extension has no leading
    dot; a name that only starts with a dot (``.bashrc``) has none.
    """
    name = path.rstrip("/\\")
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    title, ext = os.path.splitext(name)
    return title, ext[1:] if ext else ""


async def add_items(db_path: str, candidate_paths: Optional[Sequence[Optional[PathLike]]]) -> IngestResult:
    """Insert every new path, classifying each candidate as success, duplicate or error.

    Paths are inserted one by one with no surrounding transaction, so a
    failure on one path never undoes another. The duplicate pre-check is an
    optimisation only; the UNIQUE constraint on ``items.path`` is what
    actually rejects a repeat, and a repeat that slips past the pre-check
    (same path twice in one batch, or a concurrent caller) is reported in
    ``errors``.
    """
    result = IngestResult()
    if not candidate_paths:
        return result

    start = time.time()
    paths = [display_path(p) for p in candidate_paths]

    try:
        existing = await dbmod.fetch_existing_paths(db_path, [p for p in paths if is_storable(p)])
    except CatalogError as exc:
        logging.error("Duplicate lookup failed; rejecting batch of %d paths", len(paths), exc_info=True)
        result.errors.extend(IngestError(p, str(exc)) for p in paths)
        return result

    for path in paths:
        if path in existing:
            result.duplicates.append(path)
            continue
        try:
            if not path.strip():
                raise MalformedInput("empty path")
            if not is_storable(path):
                raise MalformedInput("path is not valid UTF-8")
            title, extension = derive_title_and_extension(path)
            item_id = await dbmod.insert_item(db_path, path=path, title=title, extension=extension)
        except CatalogError as exc:
            logging.debug("Failed to add %r: %s", path, exc)
            result.errors.append(IngestError(path, str(exc)))
            continue
        logging.debug("Added %s as item %d", path, item_id)
        result.success.append(item_id)

    logging.info(
        "add_items",
        extra={
            "operation": "ingest",
            "candidates": len(paths),
            "added": len(result.success),
            "duplicates": len(result.duplicates),
            "errors": len(result.errors),
            "duration_ms": int((time.time() - start) * 1000),
        },
    )
    return result
