from __future__ import annotations


class CatalogError(Exception):
    """Base class for every failure raised by the catalog core."""


class StoreUnavailable(CatalogError):
    """Raised when a pooled connection cannot be opened or acquired."""


class SchemaSetupError(StoreUnavailable):
    """Raised when the schema cannot be brought to the expected migration level."""


class QueryFailed(CatalogError):
    """Raised when the store rejects a statement."""


class ConstraintViolation(QueryFailed):
    """Raised on uniqueness or foreign key violations."""


class RejectedStatement(CatalogError):
    """Raised when a raw statement matches the destructive-statement denylist."""


class MalformedInput(CatalogError, ValueError):
    """Raised for caller input that can never succeed (empty path, non-integer id)."""
