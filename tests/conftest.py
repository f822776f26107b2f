"""Shared fixtures: an in-memory stand-in for the MySQL client tools and gpg."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from mysql_dbtools.archive import BACKEND_GZIP, Archiver
from mysql_dbtools.config import ENV_KEYS, ConnectionTarget
from mysql_dbtools.errors import CommandFailed
from mysql_dbtools.runner import CommandOutput, ProcessRunner

DUMP_SQL = "-- SQL DUMP\nCREATE TABLE t (id INT);\n"

_CONVERT_RE = re.compile(r"ALTER TABLE `([^`]+)` CONVERT TO CHARACTER SET \S+ COLLATE (\w+)")
_MODIFY_RE = re.compile(r"ALTER TABLE `([^`]+)` MODIFY COLUMN `([^`]+)` .*?COLLATE (\w+)")
_ALTER_DB_RE = re.compile(r"ALTER DATABASE `([^`]+)` CHARACTER SET \S+ COLLATE (\w+)")
_TABLE_NAME_RE = re.compile(r"TABLE_NAME = '([^']+)'")
_COLUMN_NAME_RE = re.compile(r"COLUMN_NAME = '([^']+)'")
_NOT_COLLATION_RE = re.compile(r"COLLATION_NAME != '([^']+)'")


@dataclass
class FakeColumn:
    name: str
    sql_type: str = "varchar(255)"
    collation: Optional[str] = "latin1_swedish_ci"
    nullable: bool = True
    default: Optional[str] = None
    extra: str = ""
    comment: str = ""


@dataclass
class FakeTable:
    name: str
    collation: str
    columns: List[FakeColumn] = field(default_factory=list)
    size_mb: float = 0.5
    rows: int = 10
    data_length: int = 16384
    index_length: int = 0


def _tsv(header: List[str], rows: List[List[str]]) -> str:
    lines = ["\t".join(header)] + ["\t".join(r) for r in rows]
    return "\n".join(lines) + "\n"


class FakeRunner(ProcessRunner):
    """Records every command and answers like mysql, mysqldump, mysqlbinlog, mysqlcheck and gpg would."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.envs: List[Optional[Dict[str, str]]] = []
        self.statements: List[str] = []
        self.imported: List[str] = []
        self.tables: Dict[str, FakeTable] = {}
        self.fks: Dict[str, List[str]] = {}
        self.indexes: Dict[Tuple[str, str], List[Tuple[str, str, str]]] = {}
        self.version = "8.0.36"
        self.database_collation: Optional[str] = None
        self.fail_sql: Dict[str, str] = {}
        self.fail_gpg_encrypt = False
        self.stuck_columns: Set[Tuple[str, str]] = set()
        self.mysqlcheck_output = ""
        self.dump_sql = DUMP_SQL
        self.ticks = 0

    # ------------------------------
    # Schema setup
    # ------------------------------

    def add_table(self, name: str, collation: str, columns: Optional[List[FakeColumn]] = None) -> FakeTable:
        table = FakeTable(name, collation, list(columns or []))
        self.tables[name] = table
        return table

    def add_fk(self, child: str, parent: str) -> None:
        self.fks.setdefault(child, []).append(parent)

    @property
    def alters(self) -> List[str]:
        return [s for s in self.statements if "ALTER TABLE" in s]

    def programs(self) -> List[str]:
        return [c[0] for c in self.calls]

    # ------------------------------
    # ProcessRunner
    # ------------------------------

    def run(self, argv, env=None, on_tick=None, input=None):
        self.calls.append(list(argv))
        self.envs.append(env)
        if on_tick is not None:
            on_tick()
            self.ticks += 1
        handler = getattr(self, "_" + argv[0], None)
        if handler is None:
            raise CommandFailed(argv, 127, f"{argv[0]}: command not found")
        stdout = handler(argv, input) or ""
        return CommandOutput(argv=list(argv), returncode=0, stdout=stdout, stderr="")

    def run_with_file_input(self, argv, env, file_path, on_tick=None):
        self.calls.append(list(argv))
        self.envs.append(env)
        self.imported.append(Path(file_path).read_text("utf-8"))
        return CommandOutput(argv=list(argv), returncode=0, stdout="", stderr="")

    # ------------------------------
    # Programs
    # ------------------------------

    @staticmethod
    def _option(argv: List[str], prefix: str) -> str:
        return next(a[len(prefix):] for a in argv if a.startswith(prefix))

    def _mysqldump(self, argv, input):
        Path(self._option(argv, "--result-file=")).write_text(self.dump_sql, encoding="utf-8")

    def _mysqlbinlog(self, argv, input):
        stop = self._option(argv, "--stop-datetime=")
        out = Path(self._option(argv, "--result-file="))
        out.write_text(f"-- replay {Path(argv[-1]).name} until {stop}\n", encoding="utf-8")

    def _mysqlcheck(self, argv, input):
        return self.mysqlcheck_output

    def _gpg(self, argv, input):
        out = Path(argv[argv.index("--output") + 1])
        src = Path(argv[-1])
        header = b"FAKEGPG:" + input.encode("utf-8")
        if "--symmetric" in argv:
            if self.fail_gpg_encrypt:
                out.write_bytes(b"partial")
                raise CommandFailed(argv, 2, "gpg: encryption failed: Operation cancelled")
            out.write_bytes(header + b"\n" + src.read_bytes())
            return ""
        data = src.read_bytes()
        first, _, body = data.partition(b"\n")
        if first != header:
            out.write_bytes(b"partial")
            raise CommandFailed(argv, 2, "gpg: decryption failed: Bad session key")
        out.write_bytes(body)
        return ""

    def _mysql(self, argv, input):
        sql = argv[argv.index("-e") + 1]
        self.statements.append(sql)
        for needle, message in self.fail_sql.items():
            if needle in sql:
                raise CommandFailed(argv, 1, message)

        if sql.startswith("SELECT VERSION()"):
            return f"VERSION()\n{self.version}\n"
        if sql == "SELECT 1":
            return "1\n1\n"
        if "KEY_COLUMN_USAGE" in sql:
            rows = [[child, parent] for child, parents in self.fks.items() for parent in parents]
            return _tsv(["child_table", "parent_table"], rows)
        if "information_schema.STATISTICS" in sql:
            key = (_TABLE_NAME_RE.search(sql).group(1), _COLUMN_NAME_RE.search(sql).group(1))
            return _tsv(["INDEX_NAME", "NON_UNIQUE", "INDEX_TYPE"], [list(i) for i in self.indexes.get(key, [])])
        if sql.startswith("SELECT COLLATION_NAME"):
            table = self.tables[_TABLE_NAME_RE.search(sql).group(1)]
            name = _COLUMN_NAME_RE.search(sql).group(1)
            col = next(c for c in table.columns if c.name == name)
            return _tsv(["COLLATION_NAME"], [[col.collation or "NULL"]])
        if "information_schema.COLUMNS" in sql:
            return self._columns_needing_conversion(sql)
        if "TABLE_ROWS" in sql:
            rows = [
                [t.name, str(t.rows), str(t.data_length), str(t.index_length)]
                for t in sorted(self.tables.values(), key=lambda t: t.data_length + t.index_length, reverse=True)
            ]
            return _tsv(["TABLE_NAME", "TABLE_ROWS", "DATA_LENGTH", "INDEX_LENGTH"], rows)
        if "information_schema.TABLES" in sql:
            rows = [[t.name, t.collation, f"{t.size_mb:.2f}"] for t in sorted(self.tables.values(), key=lambda t: t.name)]
            return _tsv(["TABLE_NAME", "TABLE_COLLATION", "size_mb"], rows)

        for name, collation in _CONVERT_RE.findall(sql):
            table = self.tables[name]
            table.collation = collation
            for col in table.columns:
                if col.collation is not None:
                    col.collation = collation
        for name, column, collation in _MODIFY_RE.findall(sql):
            if (name, column) in self.stuck_columns:
                continue
            col = next(c for c in self.tables[name].columns if c.name == column)
            col.collation = collation
        m = _ALTER_DB_RE.search(sql)
        if m:
            self.database_collation = m.group(2)
        return ""

    def _columns_needing_conversion(self, sql: str) -> str:
        table = self.tables[_TABLE_NAME_RE.search(sql).group(1)]
        target = _NOT_COLLATION_RE.search(sql).group(1)
        rows = [
            [
                c.name,
                c.sql_type,
                "YES" if c.nullable else "NO",
                "NULL" if c.default is None else c.default,
                c.extra,
                c.collation,
                c.comment,
            ]
            for c in table.columns
            if c.collation is not None and c.collation != target
        ]
        header = ["COLUMN_NAME", "COLUMN_TYPE", "IS_NULLABLE", "COLUMN_DEFAULT", "EXTRA", "COLLATION_NAME", "COLUMN_COMMENT"]
        return _tsv(header, rows)


@pytest.fixture(autouse=True)
def gzip_by_default(monkeypatch):
    """Auto-detection would pick zstd/pigz when installed; tests run in-process gzip."""
    monkeypatch.setattr(Archiver, "pick_best_backend", staticmethod(lambda: BACKEND_GZIP))


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for var in list(ENV_KEYS) + ["DBTOOLS_CONFIG", "DBTOOLS_PROFILE"]:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def target() -> ConnectionTarget:
    return ConnectionTarget(database="shop", host="db.local", port=3306, user="app", password="pw")
