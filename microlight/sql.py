"""
SQL helpers: WHERE clauses, LIMIT clauses and CREATE TABLE statements.

Identifiers (tables, columns, types) are checked against a whitelist before
they are placed in SQL text. Values are *always* bound as parameters.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

IDENT_RE = re.compile(r"^[a-zA-Z_]+$")
TYPE_RE = re.compile(r"^[a-zA-Z ]+$")
TAG_CHARS_RE = re.compile(r"[^\w./-]")


class InvalidIdentifier(Exception):
    """A table, column or type name failed the whitelist."""

    def __init__(self, value):
        self.value = value
        super().__init__(f'Value "{value}" invalid')


class UnsafeBulkOperation(RuntimeError):
    """DELETE / UPDATE without a single predicate."""


class Op(Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    LIKE = "LIKE"


class Escape(Enum):
    NONE = "none"
    SLUG = "slug"
    TAG = "tag"


class ColumnType(Enum):
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    PRIMARY_KEY = "INTEGER PRIMARY KEY"


@dataclass(frozen=True)
class Predicate:
    column: str
    value: Any
    op: Op = Op.EQUAL
    escape: Escape = Escape.NONE


@dataclass(frozen=True)
class ColumnDefinition:
    name: str
    type: ColumnType | str = ColumnType.TEXT
    nullable: bool = True
    unique: bool = False


@dataclass(frozen=True)
class ForeignKeyRef:
    column: str  # column in the current table
    table: str  # foreign table
    reference: str  # column in the foreign table


################################################################################
# Validation + value normalisation
################################################################################
def check_identifier(value) -> str:
    if not isinstance(value, str) or not IDENT_RE.match(value):
        raise InvalidIdentifier(value)
    return value


def check_type(value) -> str:
    if isinstance(value, ColumnType):
        value = value.value
    if not isinstance(value, str) or not TYPE_RE.match(value):
        raise InvalidIdentifier(value)
    return value.upper()


def slugify(text: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", str(text or "")).strip().lower()
    slug = re.sub(r"[\s_]+", "-", slug)
    return re.sub(r"-{2,}", "-", slug).strip("-")


def normalize_tag(tag: str) -> str:
    """``"#Open Source"`` → ``"open-source"``"""
    tag = str(tag or "").strip().lstrip("#").strip().lower()
    tag = re.sub(r"\s+", "-", tag)
    return TAG_CHARS_RE.sub("", tag)


def escape_value(value, escape: Escape):
    if escape is Escape.SLUG:
        return slugify(value)
    if escape is Escape.TAG:
        return f"%{normalize_tag(value)}%"
    return value


################################################################################
# Clause builders
################################################################################
def where(predicates: Iterable[Predicate]) -> tuple[str, list]:
    parts: list[str] = []
    params: list = []
    for pred in predicates:
        col = check_identifier(pred.column)
        parts.append(f"`{col}` {Op(pred.op).value} ?")
        params.append(escape_value(pred.value, pred.escape))

    if not parts:
        return "", []
    return " WHERE " + " AND ".join(parts), params


def limit_clause(limit: int = -1, offset: int = 0) -> tuple[str, list]:
    """
    ``limit=-1`` means unbounded: no LIMIT clause, and the offset is dropped.
    """
    for name, val in (("limit", limit), ("offset", offset)):
        if isinstance(val, bool) or not isinstance(val, int):
            raise ValueError(f"{name} must be an integer, got {val!r}")
    if limit < -1:
        raise ValueError(f"limit must be -1 or >= 0, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")

    if limit == -1:
        return "", []
    return " LIMIT ? OFFSET ?", [limit, offset]


def _columns_sql(columns: Sequence[ColumnDefinition]) -> str:
    out = []
    for col in columns:
        name = check_identifier(col.name)
        sql_type = check_type(col.type)
        if not col.nullable:
            sql_type += " NOT NULL"
        if col.unique:
            sql_type += " UNIQUE"
        out.append(f"`{name}` {sql_type}")
    return ", ".join(out)


def _foreign_keys_sql(foreign_keys: Sequence[ForeignKeyRef]) -> str:
    out = ""
    for fk in foreign_keys:
        column = check_identifier(fk.column)
        table = check_identifier(fk.table)
        reference = check_identifier(fk.reference)
        out += f", FOREIGN KEY(`{column}`) REFERENCES `{table}`(`{reference}`)"
    return out


def create(
    table: str,
    columns: Sequence[ColumnDefinition],
    foreign_keys: Sequence[ForeignKeyRef] | None = None,
) -> str:
    table = check_identifier(table)
    if not columns:
        raise ValueError(f"table {table} needs at least one column")
    body = _columns_sql(columns)
    if foreign_keys:
        body += _foreign_keys_sql(foreign_keys)
    return f"CREATE TABLE IF NOT EXISTS `{table}` ({body});"


################################################################################
# Statements
################################################################################
def select(
    table: str,
    predicates: Iterable[Predicate] = (),
    limit: int = -1,
    offset: int = 0,
) -> tuple[str, list]:
    table = check_identifier(table)
    where_sql, params = where(predicates)
    limit_sql, limit_params = limit_clause(limit, offset)
    return f"SELECT * FROM `{table}`{where_sql}{limit_sql}", params + limit_params


def count(table: str, predicates: Iterable[Predicate] = ()) -> tuple[str, list]:
    table = check_identifier(table)
    where_sql, params = where(predicates)
    return f"SELECT COUNT(*) FROM `{table}`{where_sql}", params


def insert(table: str, values: Mapping[str, Any]) -> tuple[str, list]:
    table = check_identifier(table)
    if not values:
        raise ValueError(f"nothing to insert into {table}")
    cols = [check_identifier(c) for c in values]
    col_list = ", ".join(f"`{c}`" for c in cols)
    q_marks = ", ".join("?" * len(cols))
    return (
        f"INSERT INTO `{table}` ({col_list}) VALUES ({q_marks})",
        [values[c] for c in cols],
    )


def update(
    table: str, values: Mapping[str, Any], predicates: Sequence[Predicate]
) -> tuple[str, list]:
    table = check_identifier(table)
    if not values:
        raise ValueError(f"nothing to update in {table}")
    assignments = ", ".join(f"`{check_identifier(c)}` = ?" for c in values)
    where_sql, params = where(predicates)
    if not where_sql:
        raise UnsafeBulkOperation(f"refusing to UPDATE every row of {table}")
    return f"UPDATE `{table}` SET {assignments}{where_sql}", list(values.values()) + params


def delete(table: str, predicates: Sequence[Predicate]) -> tuple[str, list]:
    table = check_identifier(table)
    where_sql, params = where(predicates)
    if not where_sql:
        raise UnsafeBulkOperation(f"refusing to DELETE every row of {table}")
    return f"DELETE FROM `{table}`{where_sql}", params
