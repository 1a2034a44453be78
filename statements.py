"""
Typed statements

One class per statement shape the storage layer supports. The repository
builds these directly; raw SQL handed to the key/value backend goes through
`parse()` first, so anything outside these shapes is rejected up front
instead of being filtered on a best-effort basis.

Supported WHERE clauses are conjunctions of equalities:

    column = ?
    LOWER(column) = ?          (case-insensitive, whitespace-trimmed)
    LOWER(TRIM(column)) = ?
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from errors import UnsupportedStatementError

TABLES = ("users", "cart_items", "favorites", "orders", "order_items")

_IDENT = re.compile(r"^[A-Za-z_]\w*$")


def _check_table(table: str) -> str:
    if table not in TABLES:
        raise UnsupportedStatementError(f"Unknown table: {table}")
    return table


def _check_column(column: str) -> str:
    if not _IDENT.match(column):
        raise UnsupportedStatementError(f"Invalid column name: {column!r}")
    return column


def normalize_email(value: str) -> str:
    return value.strip().lower()


@dataclass(frozen=True)
class Eq:
    column: str
    value: Any
    ignore_case: bool = False

    def __post_init__(self):
        _check_column(self.column)

    @classmethod
    def ci(cls, column: str, value: str) -> "Eq":
        return cls(column, normalize_email(value), ignore_case=True)

    def matches(self, row: Dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.ignore_case:
            return isinstance(actual, str) and isinstance(self.value, str) and normalize_email(actual) == self.value
        return actual == self.value

    def to_sql(self) -> str:
        if self.ignore_case:
            return f"LOWER(TRIM({self.column})) = ?"
        return f"{self.column} = ?"


Where = Tuple[Eq, ...]


def _where_sql(where: Where) -> Tuple[str, List[Any]]:
    if not where:
        return "", []
    return " WHERE " + " AND ".join(c.to_sql() for c in where), [c.value for c in where]


def matches_all(where: Where, row: Dict[str, Any]) -> bool:
    return all(c.matches(row) for c in where)


@dataclass(frozen=True)
class Select:
    table: str
    where: Where = ()
    columns: Tuple[str, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None

    def __post_init__(self):
        _check_table(self.table)
        for c in self.columns:
            _check_column(c)
        if self.order_by is not None:
            _check_column(self.order_by)

    def to_sql(self) -> Tuple[str, List[Any]]:
        cols = ", ".join(self.columns) if self.columns else "*"
        where, params = _where_sql(self.where)
        sql = f"SELECT {cols} FROM {self.table}{where}"
        if self.order_by:
            sql += f" ORDER BY {self.order_by} {'DESC' if self.descending else 'ASC'}"
        if self.limit is not None:
            sql += f" LIMIT {int(self.limit)}"
        return sql, params

    def apply(self, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out = [r for r in rows if matches_all(self.where, r)]
        if self.order_by:
            key = self.order_by
            # None sorts first ascending, like SQLite
            out.sort(key=lambda r: (r.get(key) is not None, r.get(key)), reverse=self.descending)
        if self.limit is not None:
            out = out[: self.limit]
        if self.columns:
            out = [{c: r.get(c) for c in self.columns} for r in out]
        else:
            out = [dict(r) for r in out]
        return out


@dataclass(frozen=True)
class Insert:
    table: str
    values: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _check_table(self.table)
        if not self.values:
            raise UnsupportedStatementError("INSERT without columns")
        for c in self.values:
            _check_column(c)

    def to_sql(self) -> Tuple[str, List[Any]]:
        cols = list(self.values)
        marks = ", ".join("?" for _ in cols)
        return f"INSERT INTO {self.table} ({', '.join(cols)}) VALUES ({marks})", list(self.values.values())


@dataclass(frozen=True)
class Update:
    table: str
    values: Dict[str, Any] = field(default_factory=dict)
    where: Where = ()

    def __post_init__(self):
        _check_table(self.table)
        if not self.values:
            raise UnsupportedStatementError("UPDATE without SET columns")
        for c in self.values:
            _check_column(c)

    def to_sql(self) -> Tuple[str, List[Any]]:
        sets = ", ".join(f"{c} = ?" for c in self.values)
        where, params = _where_sql(self.where)
        return f"UPDATE {self.table} SET {sets}{where}", list(self.values.values()) + params


@dataclass(frozen=True)
class Delete:
    table: str
    where: Where = ()

    def __post_init__(self):
        _check_table(self.table)

    def to_sql(self) -> Tuple[str, List[Any]]:
        where, params = _where_sql(self.where)
        return f"DELETE FROM {self.table}{where}", params


Statement = Union[Select, Insert, Update, Delete]


# ---------------------------------------------------------------------------
# SQL subset interpreter
# ---------------------------------------------------------------------------

_SELECT = re.compile(
    r"^select\s+(?P<cols>.+?)\s+from\s+(?P<table>\w+)"
    r"(?:\s+where\s+(?P<where>.+?))?"
    r"(?:\s+order\s+by\s+(?P<order>\w+)(?:\s+(?P<dir>asc|desc))?)?"
    r"(?:\s+limit\s+(?P<limit>\d+))?$",
    re.IGNORECASE,
)
_INSERT = re.compile(
    r"^insert\s+into\s+(?P<table>\w+)\s*\((?P<cols>[^)]*)\)\s*values\s*\((?P<vals>[^)]*)\)$",
    re.IGNORECASE,
)
_UPDATE = re.compile(
    r"^update\s+(?P<table>\w+)\s+set\s+(?P<set>.+?)(?:\s+where\s+(?P<where>.+))?$",
    re.IGNORECASE,
)
_DELETE = re.compile(r"^delete\s+from\s+(?P<table>\w+)(?:\s+where\s+(?P<where>.+))?$", re.IGNORECASE)

_AND = re.compile(r"\s+and\s+", re.IGNORECASE)
_PLAIN_EQ = re.compile(r"^(\w+)\s*=\s*\?$")
_LOWER_EQ = re.compile(r"^lower\(\s*(?:trim\(\s*(\w+)\s*\)|(\w+))\s*\)\s*=\s*\?$", re.IGNORECASE)


def _split_idents(text: str) -> List[str]:
    parts = [p.strip() for p in text.split(",")]
    for p in parts:
        if not _IDENT.match(p):
            raise UnsupportedStatementError(f"Unsupported column expression: {p!r}")
    return parts


def _parse_where(text: Optional[str], params: List[Any]) -> Where:
    """Consume one parameter per condition from the front of `params`."""
    if not text:
        return ()
    conditions = []
    for part in _AND.split(text.strip()):
        part = part.strip()
        if not params:
            raise UnsupportedStatementError("Not enough parameters for WHERE clause")
        m = _LOWER_EQ.match(part)
        if m:
            value = params.pop(0)
            if not isinstance(value, str):
                raise UnsupportedStatementError(f"LOWER() comparison needs a string parameter, got {value!r}")
            conditions.append(Eq.ci(m.group(1) or m.group(2), value))
            continue
        m = _PLAIN_EQ.match(part)
        if m:
            conditions.append(Eq(m.group(1), params.pop(0)))
            continue
        raise UnsupportedStatementError(f"Unsupported WHERE condition: {part!r}")
    return tuple(conditions)


def parse(sql: str, params: Optional[Sequence[Any]] = None) -> Statement:
    """Turn a raw SQL string in the supported subset into a typed statement."""
    text = " ".join(sql.split()).rstrip(";").strip()
    remaining = list(params or [])

    m = _SELECT.match(text)
    if m:
        cols_text = m.group("cols").strip()
        columns = () if cols_text == "*" else tuple(_split_idents(cols_text))
        where = _parse_where(m.group("where"), remaining)
        stmt: Statement = Select(
            table=m.group("table"),
            where=where,
            columns=columns,
            order_by=m.group("order"),
            descending=(m.group("dir") or "").lower() == "desc",
            limit=int(m.group("limit")) if m.group("limit") else None,
        )
    elif _INSERT.match(text):
        m = _INSERT.match(text)
        cols = _split_idents(m.group("cols"))
        marks = [v.strip() for v in m.group("vals").split(",")]
        if any(v != "?" for v in marks) or len(marks) != len(cols):
            raise UnsupportedStatementError("INSERT values must be one '?' per column")
        if len(remaining) < len(cols):
            raise UnsupportedStatementError(f"INSERT expects {len(cols)} parameters, got {len(remaining)}")
        stmt = Insert(table=m.group("table"), values=dict(zip(cols, remaining)))
        remaining = remaining[len(cols):]
    elif _UPDATE.match(text):
        m = _UPDATE.match(text)
        values: Dict[str, Any] = {}
        for pair in m.group("set").split(","):
            pm = _PLAIN_EQ.match(pair.strip())
            if not pm:
                raise UnsupportedStatementError(f"Unsupported SET clause: {pair.strip()!r}")
            if not remaining:
                raise UnsupportedStatementError("Not enough parameters for SET clause")
            values[pm.group(1)] = remaining.pop(0)
        stmt = Update(table=m.group("table"), values=values, where=_parse_where(m.group("where"), remaining))
    elif _DELETE.match(text):
        m = _DELETE.match(text)
        stmt = Delete(table=m.group("table"), where=_parse_where(m.group("where"), remaining))
    else:
        raise UnsupportedStatementError(f"Unsupported statement: {text[:60]!r}")

    if remaining:
        raise UnsupportedStatementError(f"{len(remaining)} unused parameter(s)")
    return stmt
