from datetime import datetime, timezone

import pytest

pytest.importorskip("aiosqlite")

from mediacat.errors import MalformedInput
from mediacat.models import Item, parse_timestamp
from mediacat.search import build_search_query, escape_like


def test_empty_term_selects_everything_newest_first():
    query = build_search_query("")
    assert "WHERE" not in query.text
    assert query.text.endswith("ORDER BY added DESC, id DESC")
    assert query.params == ()


def test_whitespace_term_is_matched_literally():
    query = build_search_query("   ")
    assert "WHERE" in query.text
    assert query.params == ("%   %", "%   %")


def test_term_is_bound_not_interpolated():
    query = build_search_query("o'brien")
    assert "o'brien" not in query.text
    assert query.params == ("%o'brien%", "%o'brien%")


def test_escape_like():
    assert escape_like("100%_a\\b") == "100\\%\\_a\\\\b"


def test_parse_timestamp_variants():
    expected = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-02T03:04:05Z") == expected
    assert parse_timestamp("2024-01-02 03:04:05") == expected
    assert parse_timestamp(int(expected.timestamp())) == expected
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


@pytest.mark.asyncio
async def test_empty_store_returns_empty_results(catalog):
    assert await catalog.search_items("") == []
    assert await catalog.search_items("anything") == []
    assert await catalog.get_item_details([1, 2, 3]) == []


@pytest.mark.asyncio
async def test_unfiltered_search_is_newest_first(catalog):
    ids = []
    for name in ("first", "second", "third"):
        result = await catalog.add_items([f"/media/{name}.mp4"])
        ids.extend(result.success)

    assert await catalog.search_items("") == list(reversed(ids))


@pytest.mark.asyncio
async def test_unfiltered_search_matches_all_rows(catalog):
    result = await catalog.add_items(["/a/1.mp3", "/a/2.mp3", "/b/3.flac"])
    all_ids = await catalog.search_items("")
    items = await catalog.get_item_details(all_ids)
    assert {item.id for item in items} == set(all_ids) == set(result.success)


@pytest.mark.asyncio
async def test_search_is_case_insensitive_over_title_and_path(catalog):
    result = await catalog.add_items(["/Movies/Holiday.mp4", "/music/track.mp3", "/docs/holiday-plan.txt"])
    holiday, track, plan = result.success

    assert set(await catalog.search_items("HOLIDAY")) == {holiday, plan}
    # Directory names only appear in the path.
    assert await catalog.search_items("movies") == [holiday]
    assert await catalog.search_items("nothing-like-this") == []
    assert track not in await catalog.search_items("holiday")


@pytest.mark.asyncio
async def test_like_wildcards_match_literally(catalog):
    result = await catalog.add_items(["/a/100%.txt", "/a/plain.txt", "/a/snake_case.txt", "/a/snakeXcase.txt"])
    percent, _plain, underscore, _x = result.success

    assert await catalog.search_items("%") == [percent]
    assert await catalog.search_items("e_c") == [underscore]


@pytest.mark.asyncio
async def test_details_dedupes_skips_unknown_and_sorts(catalog):
    result = await catalog.add_items(["/a/x.mkv", "/a/y.mkv"])
    x_id, y_id = result.success

    items = await catalog.get_item_details([y_id, 999, x_id, y_id])

    assert [item.id for item in items] == sorted([x_id, y_id])
    assert len(items) <= len({y_id, 999, x_id})
    assert all(isinstance(item, Item) for item in items)


@pytest.mark.asyncio
async def test_details_empty_input(catalog):
    assert await catalog.get_item_details([]) == []


@pytest.mark.asyncio
async def test_details_rejects_non_integer_ids(catalog):
    with pytest.raises(MalformedInput):
        await catalog.get_item_details(["1 OR 1=1"])


@pytest.mark.asyncio
async def test_item_boundary_shape(catalog):
    result = await catalog.add_items(["/a/clip.mov"])
    [item] = await catalog.get_item_details(result.success)

    data = item.to_dict()
    assert set(data) == {
        "id", "path", "title", "extension", "description", "thumbnail", "added", "lastVerified",
    }
    assert data["title"] == "clip"
    assert isinstance(data["added"], int)
    now = datetime.now(timezone.utc).timestamp()
    assert abs(data["added"] - now) < 300
    assert item.added.tzinfo is not None


@pytest.mark.asyncio
async def test_space_term_matches_only_paths_with_a_space(catalog):
    result = await catalog.add_items(["/a/with space.mp4", "/a/nospace.mp4"])
    spaced, _ = result.success

    assert await catalog.search_items(" ") == [spaced]


@pytest.mark.asyncio
async def test_details_skip_ids_outside_integer_range(catalog):
    result = await catalog.add_items(["/a/clip.mov"])

    assert await catalog.get_item_details([2**70]) == []
    assert [i.id for i in await catalog.get_item_details([2**70, -(2**70), *result.success])] == result.success
