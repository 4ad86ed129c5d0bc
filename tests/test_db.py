import os

import pytest

pytest.importorskip("aiosqlite")

from mediacat import db as dbmod
from mediacat.errors import ConstraintViolation, MalformedInput, SchemaSetupError
from mediacat.models import Tag, TagCategory


def test_build_in_query_binds_every_value():
    query = dbmod.build_in_query("SELECT id FROM items WHERE id IN ", [3, 1, 2], " ORDER BY id")
    assert query.text == "SELECT id FROM items WHERE id IN (?,?,?) ORDER BY id"
    assert query.params == (3, 1, 2)


def test_iter_batches_splits_large_inputs():
    batches = list(dbmod.iter_batches(list(range(2000))))
    assert [len(b) for b in batches] == [900, 900, 200]


def test_normalize_ids_dedupes_and_sorts():
    assert dbmod.normalize_ids([5, 1, 5, 3, 1]) == [1, 3, 5]
    assert dbmod.normalize_ids([]) == []


def test_normalize_ids_drops_out_of_range_values():
    assert dbmod.normalize_ids([2**70, -(2**70), 2**63]) == []
    assert dbmod.normalize_ids([2**63 - 1, -(2**63), 7]) == [-(2**63), 7, 2**63 - 1]


def test_translate_errors_maps_unencodable_text():
    with pytest.raises(MalformedInput, match="UTF-8"):
        with dbmod.translate_errors():
            "\udcff".encode("utf-8")


@pytest.mark.parametrize("bad", ["1", 1.5, True, None])
def test_normalize_ids_rejects_non_integers(bad):
    with pytest.raises(MalformedInput):
        dbmod.normalize_ids([1, bad])


@pytest.mark.asyncio
async def test_init_creates_directory_and_applies_migrations(tmp_path):
    db_path = str(tmp_path / "nested" / "dir" / "database.db")
    try:
        await dbmod.init_db(db_path)
        assert os.path.exists(db_path)
        applied = await dbmod.list_applied_migrations(db_path)
        assert applied == [m.name for m in dbmod.MIGRATIONS]

        # Running again is a no-op.
        await dbmod.init_db(db_path)
        assert await dbmod.list_applied_migrations(db_path) == applied

        tables = await dbmod.fetch_scalars(
            db_path, "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        )
        assert {"items", "tags", "tag_categories", "schema_migrations"} <= set(tables)
    finally:
        await dbmod.close_db_pool(db_path)


@pytest.mark.asyncio
async def test_journal_mode_is_wal(catalog):
    modes = await dbmod.fetch_scalars(catalog.db_path, "PRAGMA journal_mode")
    assert [m.lower() for m in modes] == ["wal"]


@pytest.mark.skipif(os.name == "nt", reason="Windows permissions differ")
def test_db_permissions(tmp_path):
    db_path = tmp_path / "sub" / "database.db"
    dbmod.ensure_db_permissions(str(db_path))
    mode = db_path.stat().st_mode & 0o777
    assert mode == 0o600


@pytest.mark.asyncio
async def test_init_failure_raises_schema_setup_error(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    with pytest.raises(SchemaSetupError):
        await dbmod.init_db(str(blocker / "database.db"))


@pytest.mark.asyncio
async def test_unique_path_is_enforced(catalog):
    await dbmod.insert_item(catalog.db_path, path="/a/x.mp4", title="x", extension="mp4")
    with pytest.raises(ConstraintViolation):
        await dbmod.insert_item(catalog.db_path, path="/a/x.mp4", title="x", extension="mp4")


@pytest.mark.asyncio
async def test_ids_are_not_reused_after_delete(catalog):
    first = await dbmod.insert_item(catalog.db_path, path="/a/one.txt", title="one", extension="txt")
    assert await dbmod.delete_items(catalog.db_path, [first]) == [first]
    second = await dbmod.insert_item(catalog.db_path, path="/a/two.txt", title="two", extension="txt")
    assert second > first


@pytest.mark.asyncio
async def test_tag_rows_round_through_models(catalog):
    await dbmod.execute(catalog.db_path, "INSERT INTO tag_categories(name) VALUES(?)", ("genre",))
    category = TagCategory.from_row(
        (await dbmod.fetch_rows(catalog.db_path, "SELECT id, name FROM tag_categories"))[0]
    )
    await dbmod.execute(
        catalog.db_path,
        "INSERT INTO tags(name, category) VALUES(?, ?)",
        ("documentary", category.id),
    )
    tag = Tag.from_row((await dbmod.fetch_rows(catalog.db_path, "SELECT id, name, category FROM tags"))[0])

    assert category.to_dict() == {"id": category.id, "name": "genre"}
    assert tag.category == category.id
    assert tag.to_dict()["name"] == "documentary"


@pytest.mark.asyncio
async def test_tag_category_foreign_key_is_enforced(catalog):
    with pytest.raises(ConstraintViolation):
        await dbmod.execute(
            catalog.db_path, "INSERT INTO tags(name, category) VALUES(?, ?)", ("orphan", 999)
        )
