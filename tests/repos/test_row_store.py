"""InMemoryRowStore behaviour: upsert merge rules, filters, delete.

PgRowStore expresses the same merge rules as COALESCE / GREATEST in an
ON CONFLICT clause; these tests pin down the semantics both must share.
"""

from __future__ import annotations

import asyncio

import pytest

from lms_progress.repos.row_store import InMemoryRowStore, parse_filter

_KEY = ("user_id", "unit_id")


def _store_with(*rows: dict) -> InMemoryRowStore:
    store = InMemoryRowStore()

    async def _seed() -> None:
        for row in rows:
            await store.upsert("t", row, _KEY)

    asyncio.run(_seed())
    return store


def test_upsert_inserts_then_updates_supplied_columns() -> None:
    store = _store_with({"user_id": "u1", "unit_id": "a", "completed": False, "note": "x"})
    asyncio.run(store.upsert("t", {"user_id": "u1", "unit_id": "a", "completed": True}, _KEY))
    rows = asyncio.run(store.select("t"))
    assert rows == [{"user_id": "u1", "unit_id": "a", "completed": True, "note": "x"}]


def test_merge_first_keeps_existing_value() -> None:
    store = _store_with({"user_id": "u1", "unit_id": "a", "completed_at": 100})
    row = asyncio.run(
        store.upsert(
            "t",
            {"user_id": "u1", "unit_id": "a", "completed_at": 200},
            _KEY,
            merge={"completed_at": "first"},
        )
    )
    assert row["completed_at"] == 100


def test_merge_first_fills_null() -> None:
    store = _store_with({"user_id": "u1", "unit_id": "a", "completed_at": None})
    row = asyncio.run(
        store.upsert(
            "t",
            {"user_id": "u1", "unit_id": "a", "completed_at": 200},
            _KEY,
            merge={"completed_at": "first"},
        )
    )
    assert row["completed_at"] == 200


def test_merge_max_never_regresses() -> None:
    store = _store_with({"user_id": "u1", "unit_id": "a", "score": 80})
    merge = {"score": "max"}
    lower = asyncio.run(
        store.upsert("t", {"user_id": "u1", "unit_id": "a", "score": 60}, _KEY, merge)
    )
    assert lower["score"] == 80
    higher = asyncio.run(
        store.upsert("t", {"user_id": "u1", "unit_id": "a", "score": 90}, _KEY, merge)
    )
    assert higher["score"] == 90


def test_repeated_upsert_is_a_no_op() -> None:
    row = {"user_id": "u1", "unit_id": "a", "completed": True, "completed_at": 100}
    store = _store_with(row)
    asyncio.run(store.upsert("t", row, _KEY, merge={"completed_at": "first"}))
    assert asyncio.run(store.select("t")) == [row]


def test_upsert_requires_key_columns() -> None:
    store = InMemoryRowStore()
    with pytest.raises(ValueError, match="missing key columns"):
        asyncio.run(store.upsert("t", {"user_id": "u1"}, _KEY))


def test_select_returns_copies() -> None:
    store = _store_with({"user_id": "u1", "unit_id": "a", "completed": False})
    rows = asyncio.run(store.select("t"))
    rows[0]["completed"] = True
    assert asyncio.run(store.select("t"))[0]["completed"] is False


def test_select_filters() -> None:
    store = _store_with(
        {"user_id": "u1", "unit_id": "a", "score": 10},
        {"user_id": "u1", "unit_id": "b", "score": 50},
        {"user_id": "u2", "unit_id": "a", "score": 90},
    )
    by_list = asyncio.run(store.select("t", {"unit_id": ["a"]}))
    assert {r["user_id"] for r in by_list} == {"u1", "u2"}
    by_gte = asyncio.run(store.select("t", {"score__gte": 50}))
    assert {(r["user_id"], r["unit_id"]) for r in by_gte} == {("u1", "b"), ("u2", "a")}
    by_ne = asyncio.run(store.select("t", {"user_id__ne": "u1"}))
    assert [r["user_id"] for r in by_ne] == ["u2"]


def test_select_unknown_table_is_empty() -> None:
    assert asyncio.run(InMemoryRowStore().select("nope")) == []


def test_delete_returns_count() -> None:
    store = _store_with(
        {"user_id": "u1", "unit_id": "a"},
        {"user_id": "u1", "unit_id": "b"},
        {"user_id": "u2", "unit_id": "a"},
    )
    assert asyncio.run(store.delete("t", {"user_id": "u1"})) == 2
    assert len(asyncio.run(store.select("t"))) == 1


def test_parse_filter_rejects_unknown_operator() -> None:
    with pytest.raises(ValueError, match="unsupported filter operator"):
        parse_filter({"score__like": "x"})


def test_parse_filter_membership_for_collections() -> None:
    assert parse_filter({"id": ("a", "b"), "n__lt": 3}) == [
        ("id", "in", ("a", "b")),
        ("n", "lt", 3),
    ]
