"""Schema introspection through ``information_schema``.

All queries run through the ``mysql`` client in batch mode: a header line
followed by tab-separated rows. The header is dropped, rows that are too
short are skipped, and every row is decoded into one of the records below
before it leaves this module.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .client import MysqlClient, quote_literal
from .errors import CommandFailed

log = logging.getLogger(__name__)

MYSQL8_COLLATION = "utf8mb4_0900_ai_ci"
MYSQL5_COLLATION = "utf8mb4_unicode_ci"

CHARACTER_TYPES = ("char", "varchar", "text", "tinytext", "mediumtext", "longtext", "enum", "set")

_BATCH_ESCAPES = {"n": "\n", "t": "\t", "0": "\0", "\\": "\\"}


@dataclass(frozen=True)
class TableCollationInfo:
    table_name: str
    current_collation: str
    size_mb: float


@dataclass(frozen=True)
class ColumnConversionInfo:
    column_name: str
    sql_type: str
    is_nullable: bool
    default_value: Optional[str]
    extra: str
    comment: str
    current_collation: str


@dataclass(frozen=True)
class IndexInfo:
    index_name: str
    non_unique: bool
    index_type: str


@dataclass(frozen=True)
class TableSize:
    name: str
    rows: int
    data_size: int
    index_size: int

    @property
    def total_size(self) -> int:
        return self.data_size + self.index_size


def unescape(value: str) -> str:
    """Undo the escaping ``mysql --batch`` applies to newlines, tabs and backslashes."""
    return re.sub(r"\\(.)", lambda m: _BATCH_ESCAPES.get(m.group(1), m.group(0)), value)


def parse_rows(output: str, min_fields: int) -> List[List[str]]:
    lines = [line for line in output.split("\n") if line.strip()]
    rows: List[List[str]] = []
    for line in lines[1:]:
        parts = line.split("\t")
        if len(parts) < min_fields:
            log.debug("Skipping short row (%d < %d fields): %r", len(parts), min_fields, line)
            continue
        rows.append([unescape(p) for p in parts])
    return rows


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def version_tuple(version: str) -> Tuple[int, ...]:
    m = re.match(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?", version.strip())
    if not m:
        return ()
    return tuple(int(g) for g in m.groups() if g is not None)


class CatalogInspector:
    def __init__(self, client: MysqlClient) -> None:
        self.client = client

    @property
    def schema(self) -> str:
        return quote_literal(self.client.target.database)

    def list_tables(self) -> List[TableCollationInfo]:
        sql = (
            "SELECT TABLE_NAME, TABLE_COLLATION, "
            "ROUND((DATA_LENGTH + INDEX_LENGTH) / 1024 / 1024, 2) AS size_mb "
            "FROM information_schema.TABLES "
            f"WHERE TABLE_SCHEMA = {self.schema} AND TABLE_TYPE = 'BASE TABLE' "
            "ORDER BY TABLE_NAME"
        )
        return [
            TableCollationInfo(table_name=r[0], current_collation=r[1], size_mb=_to_float(r[2]))
            for r in parse_rows(self.client.query(sql), 3)
        ]

    def list_columns_needing_conversion(self, table: str, target_collation: str) -> List[ColumnConversionInfo]:
        types = ", ".join(quote_literal(t) for t in CHARACTER_TYPES)
        sql = (
            "SELECT COLUMN_NAME, COLUMN_TYPE, IS_NULLABLE, COLUMN_DEFAULT, EXTRA, "
            "COLLATION_NAME, COLUMN_COMMENT "
            "FROM information_schema.COLUMNS "
            f"WHERE TABLE_SCHEMA = {self.schema} AND TABLE_NAME = {quote_literal(table)} "
            f"AND DATA_TYPE IN ({types}) "
            "AND COLLATION_NAME IS NOT NULL "
            f"AND COLLATION_NAME != {quote_literal(target_collation)} "
            "ORDER BY ORDINAL_POSITION"
        )
        columns = []
        for r in parse_rows(self.client.query(sql), 6):
            columns.append(
                ColumnConversionInfo(
                    column_name=r[0],
                    sql_type=r[1],
                    is_nullable=r[2] != "NO",
                    default_value=None if r[3] == "NULL" else r[3],
                    extra=r[4],
                    current_collation=r[5],
                    comment=r[6] if len(r) > 6 else "",
                )
            )
        return columns

    def column_collation(self, table: str, column: str) -> Optional[str]:
        sql = (
            "SELECT COLLATION_NAME FROM information_schema.COLUMNS "
            f"WHERE TABLE_SCHEMA = {self.schema} AND TABLE_NAME = {quote_literal(table)} "
            f"AND COLUMN_NAME = {quote_literal(column)}"
        )
        try:
            rows = parse_rows(self.client.query(sql), 1)
        except CommandFailed as e:
            log.warning("Could not read collation of %s.%s: %s", table, column, e)
            return None
        if not rows or rows[0][0] == "NULL":
            return None
        return rows[0][0].strip()

    def list_foreign_key_dependencies(self) -> Dict[str, List[str]]:
        """Map each child table to the parent tables it references (same schema only)."""
        sql = (
            "SELECT TABLE_NAME AS child_table, REFERENCED_TABLE_NAME AS parent_table "
            "FROM information_schema.KEY_COLUMN_USAGE "
            f"WHERE TABLE_SCHEMA = {self.schema} AND REFERENCED_TABLE_SCHEMA = {self.schema} "
            "AND REFERENCED_TABLE_NAME IS NOT NULL "
            "GROUP BY TABLE_NAME, REFERENCED_TABLE_NAME"
        )
        deps: Dict[str, List[str]] = {}
        for child, parent in (r[:2] for r in parse_rows(self.client.query(sql), 2)):
            if not child or not parent:
                continue
            parents = deps.setdefault(child, [])
            if parent not in parents:
                parents.append(parent)
        return deps

    def list_indexes_on_column(self, table: str, column: str) -> List[IndexInfo]:
        sql = (
            "SELECT DISTINCT INDEX_NAME, NON_UNIQUE, INDEX_TYPE "
            "FROM information_schema.STATISTICS "
            f"WHERE TABLE_SCHEMA = {self.schema} AND TABLE_NAME = {quote_literal(table)} "
            f"AND COLUMN_NAME = {quote_literal(column)} AND INDEX_NAME != 'PRIMARY'"
        )
        try:
            output = self.client.query(sql)
        except CommandFailed as e:
            log.debug("Index lookup failed for %s.%s: %s", table, column, e)
            return []
        return [IndexInfo(index_name=r[0], non_unique=r[1] != "0", index_type=r[2]) for r in parse_rows(output, 3)]

    def server_version(self) -> str:
        lines = self.client.query("SELECT VERSION()").strip().split("\n")
        return lines[1].strip() if len(lines) > 1 else ""

    def is_at_least(self, minimum: str) -> bool:
        """True when the server is MySQL ``minimum`` or later. MariaDB never qualifies."""
        try:
            version = self.server_version()
        except CommandFailed as e:
            log.warning("Could not read server version: %s", e)
            return False
        if "mariadb" in version.lower():
            return False
        current = version_tuple(version)
        return bool(current) and current >= version_tuple(minimum)

    def recommended_collation(self) -> str:
        return MYSQL8_COLLATION if self.is_at_least("8.0.0") else MYSQL5_COLLATION

    def table_sizes(self) -> List[TableSize]:
        sql = (
            "SELECT TABLE_NAME, TABLE_ROWS, DATA_LENGTH, INDEX_LENGTH "
            "FROM information_schema.TABLES "
            f"WHERE TABLE_SCHEMA = {self.schema} "
            "ORDER BY (DATA_LENGTH + INDEX_LENGTH) DESC"
        )
        return [
            TableSize(name=r[0], rows=_to_int(r[1]), data_size=_to_int(r[2]), index_size=_to_int(r[3]))
            for r in parse_rows(self.client.query(sql), 4)
        ]
