import pytest

pytest.importorskip("aiosqlite")
pytest_asyncio = pytest.importorskip("pytest_asyncio")

from mediacat.catalog import Catalog
from mediacat.config import CatalogConfig


@pytest.fixture
def cfg(tmp_path):
    return CatalogConfig(data_dir=str(tmp_path / "app_data"))


@pytest_asyncio.fixture
async def catalog(cfg):
    cat = Catalog(cfg)
    await cat.open()
    try:
        yield cat
    finally:
        await cat.close()
