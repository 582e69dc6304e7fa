"""
tests/test_sql.py
"""
from __future__ import annotations

import pytest

from microlight import sql
from microlight.sql import (
    ColumnDefinition,
    ColumnType,
    Escape,
    ForeignKeyRef,
    InvalidIdentifier,
    Op,
    Predicate,
    UnsafeBulkOperation,
)


# ───────────────────────── WHERE ──────────────────────────────────────
def test_where_empty_list_has_no_clause():
    assert sql.where([]) == ("", [])


def test_where_binds_every_value():
    evil = "x'; DROP TABLE post; --"
    preds = [
        Predicate("slug", evil),
        Predicate("id", 3, Op.GT),
        Predicate("name", "%hi%", Op.LIKE),
    ]
    clause, params = sql.where(preds)

    assert clause == " WHERE `slug` = ? AND `id` > ? AND `name` LIKE ?"
    assert params == [evil, 3, "%hi%"]
    assert clause.count("?") == len(preds)
    assert evil not in clause


@pytest.mark.parametrize("column", ["slug; --", "id1", "", "na-me", "post.slug"])
def test_where_rejects_bad_column(column):
    with pytest.raises(InvalidIdentifier) as err:
        sql.where([Predicate(column, "x")])
    assert err.value.value == column


def test_escape_modes_normalise_value_only():
    clause, params = sql.where(
        [
            Predicate("slug", "Hello, World!", escape=Escape.SLUG),
            Predicate("tags", "#Open Source", Op.LIKE, Escape.TAG),
        ]
    )
    assert clause == " WHERE `slug` = ? AND `tags` LIKE ?"
    assert params == ["hello-world", "%open-source%"]


def test_slugify():
    assert sql.slugify("  My First  Post ") == "my-first-post"
    assert sql.slugify("snake_case--thing") == "snake-case-thing"
    assert sql.slugify("") == ""


# ───────────────────────── LIMIT ──────────────────────────────────────
def test_limit_unbounded_drops_offset():
    assert sql.limit_clause(-1, 10) == ("", [])


def test_limit_is_bound():
    assert sql.limit_clause(5, 10) == (" LIMIT ? OFFSET ?", [5, 10])
    assert sql.limit_clause(0) == (" LIMIT ? OFFSET ?", [0, 0])


@pytest.mark.parametrize("limit,offset", [(-2, 0), (1, -1), ("5", 0), (True, 0)])
def test_limit_rejects_garbage(limit, offset):
    with pytest.raises(ValueError):
        sql.limit_clause(limit, offset)


# ───────────────────────── CREATE ─────────────────────────────────────
def test_create_table():
    stmt = sql.create(
        "relme",
        [
            ColumnDefinition("id", ColumnType.PRIMARY_KEY),
            ColumnDefinition("name"),
            ColumnDefinition("url", "text", nullable=False),
            ColumnDefinition("identity_id", ColumnType.INTEGER),
        ],
        [ForeignKeyRef("identity_id", "identity", "id")],
    )
    assert stmt == (
        "CREATE TABLE IF NOT EXISTS `relme` (`id` INTEGER PRIMARY KEY, "
        "`name` TEXT, `url` TEXT NOT NULL, `identity_id` INTEGER, "
        "FOREIGN KEY(`identity_id`) REFERENCES `identity`(`id`));"
    )


def test_create_unique_column():
    stmt = sql.create("post", [ColumnDefinition("slug", nullable=False, unique=True)])
    assert "`slug` TEXT NOT NULL UNIQUE" in stmt


@pytest.mark.parametrize(
    "table,columns,fks",
    [
        ("post;", [ColumnDefinition("id")], None),
        ("post", [ColumnDefinition("i d")], None),
        ("post", [ColumnDefinition("id", "TEXT); DROP TABLE x")], None),
        ("post", [ColumnDefinition("id", "varchar(10)")], None),
        ("post", [ColumnDefinition("id")], [ForeignKeyRef("id", "iden tity", "id")]),
        ("post", [ColumnDefinition("id")], [ForeignKeyRef("id", "identity", "id--")]),
    ],
)
def test_create_rejects_bad_identifiers(table, columns, fks):
    with pytest.raises(InvalidIdentifier):
        sql.create(table, columns, fks)


# ───────────────────────── statements ─────────────────────────────────
def test_select_combines_where_and_limit():
    stmt, params = sql.select("post", [Predicate("type", "note")], 2, 4)
    assert stmt == "SELECT * FROM `post` WHERE `type` = ? LIMIT ? OFFSET ?"
    assert params == ["note", 2, 4]


def test_insert_and_update():
    stmt, params = sql.insert("identity", {"name": "Jane", "email": None})
    assert stmt == "INSERT INTO `identity` (`name`, `email`) VALUES (?, ?)"
    assert params == ["Jane", None]

    stmt, params = sql.update("identity", {"note": "hi"}, [Predicate("id", 1)])
    assert stmt == "UPDATE `identity` SET `note` = ? WHERE `id` = ?"
    assert params == ["hi", 1]


def test_bulk_delete_and_update_refused():
    with pytest.raises(UnsafeBulkOperation):
        sql.delete("post", [])
    with pytest.raises(UnsafeBulkOperation):
        sql.update("post", {"name": "x"}, [])
