"""Collation conversion engine.

For every table, in foreign-key order (parents first):

1. convert the table (``ALTER TABLE ... CONVERT TO CHARACTER SET``) unless it
   already uses the target collation;
2. look up the columns that still carry another collation (a table
   conversion fixes most of them, but not columns declared with an explicit
   collation);
3. rewrite each remaining column with a full ``MODIFY COLUMN`` definition and
   read its collation back to verify it.

A failing table or column is recorded in the result and the run moves on.
Progress is reported through a :class:`ConversionObserver`.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from .catalog import CatalogInspector, ColumnConversionInfo, IndexInfo, TableCollationInfo
from .client import MysqlClient, quote_identifier
from .config import DEFAULT_CHARSET, ConvertOptions
from .depsort import sort_tables
from .errors import CommandFailed, ConfigurationError, VerificationMismatch
from .runner import ProcessRunner

log = logging.getLogger(__name__)

FK_INCOMPATIBLE_CODE = "3780"

_FUNCTION_DEFAULT = re.compile(
    r"^(?:NULL|(?:CURRENT_TIMESTAMP|NOW|LOCALTIME|LOCALTIMESTAMP|CURRENT_DATE|CURRENT_TIME)(?:\(\d*\))?)$",
    re.IGNORECASE,
)

# ------------------------------
# Events
# ------------------------------


@dataclass(frozen=True)
class DependenciesDetected:
    count: int


@dataclass(frozen=True)
class CircularDependency:
    tables: Tuple[str, ...]


@dataclass(frozen=True)
class FkTablesNeedConversion:
    tables: Tuple[str, ...]
    suppression_enabled: bool


@dataclass(frozen=True)
class TableStarted:
    table: TableCollationInfo


@dataclass(frozen=True)
class TableSkipped:
    table: TableCollationInfo


@dataclass(frozen=True)
class TableDryRun:
    table: TableCollationInfo
    sql: str


@dataclass(frozen=True)
class TableConverted:
    table: TableCollationInfo
    duration: float


@dataclass(frozen=True)
class TableError:
    table_name: str
    error: str
    is_fk_error: bool


@dataclass(frozen=True)
class ColumnsAllOk:
    table_name: str


@dataclass(frozen=True)
class ColumnsNeedConversion:
    table_name: str
    count: int


@dataclass(frozen=True)
class ColumnStarted:
    table_name: str
    column: ColumnConversionInfo
    indexes: Tuple[IndexInfo, ...]


@dataclass(frozen=True)
class ColumnDryRun:
    table_name: str
    column: ColumnConversionInfo
    sql: str


@dataclass(frozen=True)
class ColumnConverted:
    table_name: str
    column: ColumnConversionInfo
    duration: float


@dataclass(frozen=True)
class ColumnVerificationFailed:
    table_name: str
    column: ColumnConversionInfo
    actual: Optional[str]
    duration: float


@dataclass(frozen=True)
class ColumnError:
    table_name: str
    column: ColumnConversionInfo
    error: str
    sql: str


ConversionEvent = Union[
    DependenciesDetected,
    CircularDependency,
    FkTablesNeedConversion,
    TableStarted,
    TableSkipped,
    TableDryRun,
    TableConverted,
    TableError,
    ColumnsAllOk,
    ColumnsNeedConversion,
    ColumnStarted,
    ColumnDryRun,
    ColumnConverted,
    ColumnVerificationFailed,
    ColumnError,
]


class ConversionObserver:
    """Receives conversion events. The default implementation ignores them."""

    def on_event(self, event: ConversionEvent) -> None:
        pass


class RecordingObserver(ConversionObserver):
    def __init__(self) -> None:
        self.events: List[ConversionEvent] = []

    def on_event(self, event: ConversionEvent) -> None:
        self.events.append(event)


# ------------------------------
# Result
# ------------------------------


@dataclass
class ConversionIssue:
    scope: str
    message: str

    def __str__(self) -> str:
        return f"{self.scope}: {self.message}"


@dataclass
class ConversionResult:
    tables_converted: int = 0
    tables_skipped: int = 0
    columns_converted: int = 0
    columns_skipped: int = 0
    columns_failed_verification: int = 0
    errors: List[ConversionIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, scope: str, message: str) -> None:
        self.errors.append(ConversionIssue(scope, message))


@dataclass(frozen=True)
class TableStatus:
    table: TableCollationInfo
    needs_conversion: bool


# ------------------------------
# SQL builders
# ------------------------------


def escape_literal(value: str) -> str:
    """Escape a string for a single-quoted literal under the default sql_mode."""
    return value.replace("\\", "\\\\").replace("'", "''")


def build_column_definition(column: ColumnConversionInfo, collation: str, charset: str = DEFAULT_CHARSET) -> str:
    """Full column definition keeping type, nullability, default, extra and comment."""
    parts = [
        f"{quote_identifier(column.column_name)} {column.sql_type} CHARACTER SET {charset} COLLATE {collation}",
        "NULL" if column.is_nullable else "NOT NULL",
    ]
    if column.default_value is not None:
        if _FUNCTION_DEFAULT.match(column.default_value.strip()):
            parts.append(f"DEFAULT {column.default_value}")
        else:
            parts.append(f"DEFAULT '{escape_literal(column.default_value)}'")
    if column.extra:
        parts.append(column.extra)
    if column.comment:
        parts.append(f"COMMENT '{escape_literal(column.comment)}'")
    return " ".join(parts)


def with_fk_checks_disabled(sql: str) -> str:
    """Wrap ``sql`` so it runs in the same session as the FK check toggle."""
    return f"SET FOREIGN_KEY_CHECKS=0; {sql}; SET FOREIGN_KEY_CHECKS=1;"


def table_conversion_sql(table: str, charset: str, collation: str) -> str:
    return f"ALTER TABLE {quote_identifier(table)} CONVERT TO CHARACTER SET {charset} COLLATE {collation}"


def column_conversion_sql(table: str, column: ColumnConversionInfo, charset: str, collation: str) -> str:
    definition = build_column_definition(column, collation, charset)
    return f"ALTER TABLE {quote_identifier(table)} MODIFY COLUMN {definition}"


def is_fk_error(message: str) -> bool:
    return FK_INCOMPATIBLE_CODE in message or "foreign key constraint" in message.lower()


# ------------------------------
# Converter
# ------------------------------


class CollationConverter:
    def __init__(self, runner: Optional[ProcessRunner] = None) -> None:
        self.runner = runner or ProcessRunner()

    def _inspector(self, options: ConvertOptions) -> CatalogInspector:
        return CatalogInspector(MysqlClient(options.target, self.runner))

    def recommended_collation(self, options: ConvertOptions) -> str:
        return self._inspector(options).recommended_collation()

    def change_database_collation(self, options: ConvertOptions) -> str:
        """``ALTER DATABASE`` default charset/collation; returns the collation applied."""
        inspector = self._inspector(options)
        collation = options.collation or inspector.recommended_collation()
        sql = (
            f"ALTER DATABASE {quote_identifier(options.target.database)} "
            f"CHARACTER SET {options.charset} COLLATE {collation};"
        )
        inspector.client.execute(sql)
        log.info("Database collation changed: %s -> %s", options.target.database, collation)
        return collation

    def table_status(self, options: ConvertOptions) -> List[TableStatus]:
        inspector = self._inspector(options)
        target = options.collation or inspector.recommended_collation()
        return [TableStatus(t, t.current_collation != target) for t in inspector.list_tables()]

    def convert(self, options: ConvertOptions, observer: Optional[ConversionObserver] = None) -> ConversionResult:
        watched = observer is not None
        observer = observer or ConversionObserver()
        inspector = self._inspector(options)
        client = inspector.client
        target = options.collation or inspector.recommended_collation()
        charset = options.charset
        result = ConversionResult()

        log.info(
            "Starting collation conversion: database=%s collation=%s dry_run=%s",
            options.target.database, target, options.dry_run,
        )

        tables = inspector.list_tables()
        dependencies = {}
        if options.table is not None:
            tables = [t for t in tables if t.table_name == options.table]
            if not tables:
                raise ConfigurationError(f"Table not found: {options.table}")
        else:
            dependencies = inspector.list_foreign_key_dependencies()
            by_name = {t.table_name: t for t in tables}
            ordering = sort_tables([t.table_name for t in tables], dependencies)
            tables = [by_name[name] for name in ordering.order]
            if dependencies:
                observer.on_event(DependenciesDetected(count=len(dependencies)))
            if ordering.has_cycle:
                observer.on_event(CircularDependency(tables=tuple(ordering.cyclic)))

        if not options.dry_run:
            self._prescan_fk_tables(tables, dependencies, target, options, observer)

        for info in tables:
            name = info.table_name
            observer.on_event(TableStarted(info))

            if info.current_collation == target:
                result.tables_skipped += 1
                observer.on_event(TableSkipped(info))
            else:
                sql = table_conversion_sql(name, charset, target)
                if options.dry_run:
                    result.tables_skipped += 1
                    observer.on_event(TableDryRun(info, sql))
                else:
                    if options.disable_fk_checks:
                        sql = with_fk_checks_disabled(sql)
                    started = time.monotonic()
                    try:
                        client.execute(sql)
                    except CommandFailed as e:
                        message = str(e)
                        result.add_error(name, message)
                        log.error("Table %s failed: %s", name, message)
                        observer.on_event(TableError(name, message, is_fk_error(message)))
                        continue
                    result.tables_converted += 1
                    observer.on_event(TableConverted(info, round(time.monotonic() - started, 2)))

            if not options.skip_columns:
                self._convert_columns(inspector, name, target, options, result, observer, watched)

        log.info(
            "Collation conversion finished: %d tables converted, %d columns converted, %d errors",
            result.tables_converted, result.columns_converted, len(result.errors),
        )
        return result

    def _prescan_fk_tables(self, tables, dependencies, target, options, observer) -> None:
        parents = {p for ps in dependencies.values() for p in ps}
        fk_tables = tuple(
            t.table_name
            for t in tables
            if t.current_collation != target and (t.table_name in dependencies or t.table_name in parents)
        )
        if not fk_tables:
            return
        if not options.disable_fk_checks:
            log.warning(
                "Tables with foreign keys need conversion and FK checks stay enabled; they may fail: %s",
                ", ".join(fk_tables),
            )
        observer.on_event(FkTablesNeedConversion(fk_tables, options.disable_fk_checks))

    def _convert_columns(
        self,
        inspector: CatalogInspector,
        table: str,
        target: str,
        options: ConvertOptions,
        result: ConversionResult,
        observer: ConversionObserver,
        watched: bool,
    ) -> None:
        columns = inspector.list_columns_needing_conversion(table, target)
        if not columns:
            observer.on_event(ColumnsAllOk(table))
            return
        observer.on_event(ColumnsNeedConversion(table, len(columns)))

        for column in columns:
            scope = f"{table}.{column.column_name}"
            if watched:
                indexes = tuple(inspector.list_indexes_on_column(table, column.column_name))
                observer.on_event(ColumnStarted(table, column, indexes))

            sql = column_conversion_sql(table, column, options.charset, target)
            if options.dry_run:
                result.columns_skipped += 1
                observer.on_event(ColumnDryRun(table, column, sql))
                continue

            statement = with_fk_checks_disabled(sql) if options.disable_fk_checks else sql
            started = time.monotonic()
            try:
                inspector.client.execute(statement)
            except CommandFailed as e:
                result.add_error(scope, str(e))
                log.error("Column %s failed: %s", scope, e)
                observer.on_event(ColumnError(table, column, str(e), sql))
                continue
            duration = round(time.monotonic() - started, 2)

            actual = inspector.column_collation(table, column.column_name)
            if actual == target:
                result.columns_converted += 1
                observer.on_event(ColumnConverted(table, column, duration))
            else:
                mismatch = VerificationMismatch(table, column.column_name, target, actual)
                result.columns_failed_verification += 1
                result.add_error(scope, str(mismatch))
                log.warning("Column %s: %s", scope, mismatch)
                observer.on_event(ColumnVerificationFailed(table, column, actual, duration))
