from __future__ import annotations

import atexit
import asyncio
import logging
import signal
from typing import Any, Dict, List, Union

from fastmcp import FastMCP

from mediacat.catalog import Catalog
from mediacat.config import load_config
from mediacat.errors import CatalogError, SchemaSetupError
from mediacat import db as dbmod


cfg = load_config()

mcp = FastMCP(name="Media Catalog")

catalog = Catalog(cfg)


def _error(exc: Exception) -> str:
    return f"❌ {exc}"


def _jsonable(value: Any) -> Any:
    # JSON has no bytes type; blobs travel as arrays of byte values.
    if isinstance(value, (bytes, bytearray)):
        return list(value)
    return value


async def _startup_tasks() -> None:
    await catalog.open()
    logging.info("Storage: db=%s pool_size=%s", catalog.db_path, cfg.pool_size)
    # The pool is bound to the loop that created it; tools reopen it on the serving loop.
    await catalog.close()


_shutdown_started = False


async def _shutdown(reason: str) -> None:
    global _shutdown_started
    if _shutdown_started:
        return
    _shutdown_started = True
    logging.info("Shutdown initiated (%s)", reason)
    try:
        await asyncio.wait_for(dbmod.close_db_pool(), timeout=5.0)
    except Exception:
        logging.warning("Shutdown cleanup failed", exc_info=True)


def _sync_cleanup() -> None:
    """Best-effort close of pooled connections on exit."""
    try:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop and loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(_shutdown("atexit"), loop)
            try:
                fut.result(timeout=10.0)
            except Exception:
                logging.warning("Shutdown cleanup timed out", exc_info=True)
        else:
            asyncio.run(_shutdown("atexit"))
    except Exception:
        logging.warning("Shutdown cleanup failed", exc_info=True)


atexit.register(_sync_cleanup)

_original_sigterm = signal.getsignal(signal.SIGTERM)


def _sigterm_handler(sig: int, frame: Any) -> None:
    _sync_cleanup()
    if callable(_original_sigterm):
        _original_sigterm(sig, frame)  # type: ignore[arg-type]
    else:
        raise SystemExit(0)


signal.signal(signal.SIGTERM, _sigterm_handler)


@mcp.tool
async def add_items(paths: List[str]) -> Union[Dict[str, Any], str]:
    """Add files to the catalog. Returns new ids, already-catalogued paths and per-path errors."""
    try:
        result = await catalog.add_items(paths)
    except CatalogError as e:
        return _error(e)
    return result.to_dict()


@mcp.tool
async def delete_items(ids: List[int]) -> Union[List[int], str]:
    """Delete items by id. Returns the ids that were actually removed."""
    try:
        return await catalog.delete_items(ids)
    except CatalogError as e:
        return _error(e)


@mcp.tool
async def search_items(term: str = "") -> Union[List[int], str]:
    """Ids of items whose title or path contains the term (all items, newest first, when empty)."""
    try:
        return await catalog.search_items(term)
    except CatalogError as e:
        return _error(e)


@mcp.tool
async def get_item_details(ids: List[int]) -> Union[List[Dict[str, Any]], str]:
    """Full records for the given ids, ordered by id. Unknown ids are skipped."""
    try:
        items = await catalog.get_item_details(ids)
    except CatalogError as e:
        return _error(e)
    return [item.to_dict() for item in items]


@mcp.tool
async def execute_raw_query(statement: str) -> Union[List[Dict[str, Any]], str]:
    """Run a raw SQL statement. DROP TABLE and ALTER TABLE are refused."""
    try:
        rows = await catalog.execute_raw_query(statement)
    except CatalogError as e:
        return _error(e)
    return [{key: _jsonable(value) for key, value in row.items()} for row in rows]


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(_startup_tasks())
    except SchemaSetupError:
        logging.critical("Database could not be initialised; exiting.", exc_info=True)
        raise SystemExit(1)
    mcp.run()


if __name__ == "__main__":
    # Stdio transport by default
    main()
