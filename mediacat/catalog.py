from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import db as dbmod
from . import ingest, raw_query, search
from .config import CatalogConfig
from .models import Item


class Catalog:
    """Entry points of the catalog, bound to one configured database file.

    The schema is set up on first use; every call after that is a fresh
    round trip through the shared connection pool.
    """

    def __init__(self, cfg: CatalogConfig) -> None:
        self._cfg = cfg
        self._db_path = cfg.db_path
        self._ready = False
        self._ready_lock: Optional[asyncio.Lock] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def open(self) -> None:
        if self._ready:
            return
        if self._ready_lock is None:
            self._ready_lock = asyncio.Lock()
        async with self._ready_lock:
            if self._ready:
                return
            await dbmod.init_db(
                self._db_path,
                pool_size=int(self._cfg.pool_size),
                timeout_s=float(self._cfg.pool_timeout_s),
            )
            self._ready = True

    async def close(self) -> None:
        await dbmod.close_db_pool(self._db_path)
        self._ready = False
        self._ready_lock = None

    async def add_items(self, candidate_paths: Optional[Sequence[Any]]) -> ingest.IngestResult:
        if not candidate_paths:
            return ingest.IngestResult()
        await self.open()
        return await ingest.add_items(self._db_path, candidate_paths)

    async def delete_items(self, ids: Iterable[Any]) -> List[int]:
        await self.open()
        return await dbmod.delete_items(self._db_path, ids)

    async def search_items(self, term: str = "") -> List[int]:
        await self.open()
        return await search.search_items(self._db_path, term)

    async def get_item_details(self, ids: Iterable[Any]) -> List[Item]:
        await self.open()
        return await search.fetch_item_details(self._db_path, ids)

    async def execute_raw_query(self, statement: str) -> List[Dict[str, raw_query.Value]]:
        # Empty or denied statements never reach the store, not even to open it.
        denied = raw_query.find_denied(statement or "", self._cfg.raw_query_denylist)
        if statement and statement.strip() and denied is None:
            await self.open()
        return await raw_query.execute_raw_query(
            self._db_path, statement, denylist=self._cfg.raw_query_denylist
        )
