from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime.

    Accepts ISO-8601 text (with or without offset, ``T`` or space separator),
    unix seconds, or a datetime. Naive values are taken to be UTC. Returns
    None when the value cannot be interpreted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Item:
    id: int
    path: str
    title: str
    extension: str
    description: Optional[str]
    thumbnail: Optional[str]
    added: datetime
    last_verified: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Item":
        return cls(
            id=int(row["id"]),
            path=str(row["path"]),
            title=str(row["title"] or ""),
            extension=str(row["extension"] or ""),
            description=row.get("description"),
            thumbnail=row.get("thumbnail"),
            added=parse_timestamp(row.get("added")) or EPOCH,
            last_verified=parse_timestamp(row.get("last_verified")) or EPOCH,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Boundary shape: camelCase keys, timestamps as unix seconds."""
        return {
            "id": self.id,
            "path": self.path,
            "title": self.title,
            "extension": self.extension,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "added": int(self.added.timestamp()),
            "lastVerified": int(self.last_verified.timestamp()),
        }


@dataclass(frozen=True)
class TagCategory:
    id: int
    name: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TagCategory":
        return cls(id=int(row["id"]), name=str(row["name"]))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class Tag:
    id: int
    name: str
    category: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Tag":
        return cls(id=int(row["id"]), name=str(row["name"]), category=int(row["category"]))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "category": self.category}
