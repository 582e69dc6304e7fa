"""
Data access: one sqlite3 connection per request scope, a generic repository
and the entity descriptors for identity / relme / post.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from . import sql
from .sql import (
    ColumnDefinition,
    ColumnType,
    ForeignKeyRef,
    Predicate,
    UnsafeBulkOperation,
)

log = logging.getLogger(__name__)

__all__ = [
    "DB",
    "DataCorruption",
    "Entity",
    "IDENTITY",
    "Identity",
    "POST",
    "Post",
    "RELME",
    "RelMe",
    "Repository",
    "StorageUnavailable",
    "UnsafeBulkOperation",
    "init_schema",
]


class StorageUnavailable(RuntimeError):
    """The SQLite file cannot be opened or queried."""


class DataCorruption(RuntimeError):
    """A stored row (or a write) does not fit the table's shape."""


###############################################################################
# Connection
###############################################################################
class DB:
    def __init__(self, path: str):
        self.path = str(path)
        self.conn = None
        self._depth = 0
        try:
            self.conn = sqlite3.connect(self.path)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.Error as exc:
            self.close()
            raise StorageUnavailable(f"cannot open {self.path}: {exc}") from exc
        log.debug("Opened database connection: %s", self.path)

    def execute(self, statement: str, params: Sequence = ()) -> sqlite3.Cursor:
        if self.conn is None:
            raise StorageUnavailable("connection already closed")
        try:
            return self.conn.execute(statement, tuple(params))
        except sqlite3.IntegrityError as exc:
            raise DataCorruption(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StorageUnavailable(str(exc)) from exc

    @contextmanager
    def transaction(self):
        """
        Commit on success, roll back on *any* exception.

        Nested blocks join the outermost one: only that block commits or
        rolls back.
        """
        self._depth += 1
        try:
            yield self
        except BaseException:
            if self._depth == 1 and self.conn is not None:
                self.conn.rollback()
            raise
        else:
            if self._depth == 1:
                try:
                    self.conn.commit()
                except sqlite3.Error as exc:
                    raise StorageUnavailable(str(exc)) from exc
        finally:
            self._depth -= 1

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


###############################################################################
# Generic repository
###############################################################################
@dataclass(frozen=True)
class Entity:
    """
    Everything the repository needs to know about one table: its columns
    (for ``CREATE TABLE``) and how rows map to records in both directions.
    """

    table: str
    columns: tuple[ColumnDefinition, ...]
    foreign_keys: tuple[ForeignKeyRef, ...] = ()
    from_row: Callable[[sqlite3.Row], Any] = dict
    to_row: Callable[[Any], dict] = dict
    serialize: Callable[[dict], dict] = dict  # partial writes


class Repository:
    def __init__(self, db: DB, entity: Entity):
        self.db = db
        self.entity = entity

    def create_table(self) -> None:
        self.db.execute(
            sql.create(self.entity.table, self.entity.columns, self.entity.foreign_keys)
        )

    def find(
        self, predicates: Iterable[Predicate] = (), limit: int = -1, offset: int = 0
    ) -> list:
        statement, params = sql.select(self.entity.table, predicates, limit, offset)
        rows = self.db.execute(statement, params).fetchall()
        return [self.entity.from_row(r) for r in rows]

    def find_one(self, predicates: Iterable[Predicate] = (), offset: int = 0):
        results = self.find(predicates, 1, offset)
        return results[0] if results else None

    def count(self, predicates: Iterable[Predicate] = ()) -> int:
        statement, params = sql.count(self.entity.table, predicates)
        return self.db.execute(statement, params).fetchone()[0]

    def delete(self, predicates: Sequence[Predicate]) -> int:
        statement, params = sql.delete(self.entity.table, list(predicates))
        with self.db.transaction():
            return self.db.execute(statement, params).rowcount

    def insert(self, record) -> int:
        values = {k: v for k, v in self.entity.to_row(record).items() if k != "id"}
        statement, params = sql.insert(self.entity.table, values)
        with self.db.transaction():
            return self.db.execute(statement, params).lastrowid

    def update(self, values: dict, predicates: Sequence[Predicate]) -> int:
        statement, params = sql.update(
            self.entity.table, self.entity.serialize(values), list(predicates)
        )
        with self.db.transaction():
            return self.db.execute(statement, params).rowcount


###############################################################################
# Records
###############################################################################
def _required_text(row, key: str) -> str:
    val = row[key]
    if not isinstance(val, str) or val == "":
        raise DataCorruption(f"column {key!r} must be non-empty text, got {val!r}")
    return val


def _optional_text(row, key: str) -> str | None:
    val = row[key]
    if val is not None and not isinstance(val, str):
        raise DataCorruption(f"column {key!r} must be text, got {val!r}")
    return val


def _row_id(row, key: str = "id", *, required: bool = True) -> int | None:
    val = row[key]
    if val is None and not required:
        return None
    if isinstance(val, bool) or not isinstance(val, int):
        raise DataCorruption(f"column {key!r} must be an integer, got {val!r}")
    return val


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


def join_tags(tags: Iterable[str]) -> str | None:
    """Tags are stored as given (trimmed); the comma is the separator."""
    if isinstance(tags, str):
        raise ValueError(f"tags must be a sequence of strings, got {tags!r}")
    out: list[str] = []
    for tag in tags:
        tag = str(tag).strip()
        if "," in tag:
            raise ValueError(f"tag may not contain a comma: {tag!r}")
        if tag:
            out.append(tag)
    return ",".join(out) or None


@dataclass
class Identity:
    name: str
    email: str | None = None
    note: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> "Identity":
        return cls(
            id=_row_id(row),
            name=_required_text(row, "name"),
            email=_optional_text(row, "email"),
            note=_optional_text(row, "note"),
        )

    def to_row(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "note": self.note}


@dataclass
class RelMe:
    url: str
    name: str | None = None
    identity_id: int | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> "RelMe":
        return cls(
            id=_row_id(row),
            name=_optional_text(row, "name"),
            url=_required_text(row, "url"),
            identity_id=_row_id(row, "identity_id", required=False),
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "identity_id": self.identity_id,
        }


@dataclass
class Post:
    content: str
    type: str
    slug: str
    published: str  # ISO-8601
    name: str | None = None
    tags: list[str] = field(default_factory=list)
    location: str | None = None  # "lat,long", otherwise an address
    url: str | None = None
    identity_id: int | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> "Post":
        published = _required_text(row, "published")
        try:
            parse_iso(published)
        except ValueError as exc:
            raise DataCorruption(f"bad published timestamp {published!r}") from exc
        return cls(
            id=_row_id(row),
            name=_optional_text(row, "name"),
            content=_required_text(row, "content"),
            type=_required_text(row, "type"),
            slug=_required_text(row, "slug"),
            published=published,
            tags=parse_tags(_optional_text(row, "tags")),
            location=_optional_text(row, "location"),
            url=_optional_text(row, "url"),
            identity_id=_row_id(row, "identity_id", required=False),
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "type": self.type,
            "slug": self.slug,
            "published": self.published,
            "tags": join_tags(self.tags),
            "location": self.location,
            "url": self.url,
            "identity_id": self.identity_id,
        }

    @staticmethod
    def serialize(values: dict) -> dict:
        """Column values for a partial write (``Repository.update``)."""
        out = dict(values)
        if "tags" in out and out["tags"] is not None:
            out["tags"] = join_tags(out["tags"])
        return out


_ID =ColumnDefinition("id", ColumnType.PRIMARY_KEY)
_OWNER = ColumnDefinition("identity_id", ColumnType.INTEGER)
_OWNER_FK = (ForeignKeyRef("identity_id", "identity", "id"),)

IDENTITY = Entity(
    table="identity",
    columns=(
        _ID,
        ColumnDefinition("name", nullable=False),
        ColumnDefinition("email"),
        ColumnDefinition("note"),
    ),
    from_row=Identity.from_row,
    to_row=Identity.to_row,
)

RELME = Entity(
    table="relme",
    columns=(
        _ID,
        ColumnDefinition("name"),
        ColumnDefinition("url", nullable=False),
        _OWNER,
    ),
    foreign_keys=_OWNER_FK,
    from_row=RelMe.from_row,
    to_row=RelMe.to_row,
)

POST = Entity(
    table="post",
    columns=(
        _ID,
        ColumnDefinition("name"),  # title
        ColumnDefinition("content", nullable=False),
        ColumnDefinition("type", nullable=False),
        ColumnDefinition("slug", nullable=False, unique=True),
        ColumnDefinition("published", nullable=False),
        ColumnDefinition("tags"),  # comma separated
        ColumnDefinition("location"),
        ColumnDefinition("url"),
        _OWNER,
    ),
    foreign_keys=_OWNER_FK,
    from_row=Post.from_row,
    to_row=Post.to_row,
    serialize=Post.serialize,
)

ENTITIES = (IDENTITY, RELME, POST)


def init_schema(db: DB) -> None:
    """Create every table if missing; safe to run repeatedly."""
    with db.transaction():
        for entity in ENTITIES:
            Repository(db, entity).create_table()
