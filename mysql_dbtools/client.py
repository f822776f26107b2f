"""Argument vectors for the MySQL command-line clients.

The password is handed over in ``MYSQL_PWD`` so it never shows up in the
process list.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from .config import ConnectionTarget
from .runner import ProcessRunner, TickCallback

DUMP_FLAGS = [
    "--single-transaction",
    "--skip-lock-tables",
    "--skip-add-locks",
    "--routines",
    "--triggers",
    "--events",
    "--add-drop-table",
]


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class MysqlClient:
    def __init__(self, target: ConnectionTarget, runner: Optional[ProcessRunner] = None) -> None:
        self.target = target
        self.runner = runner or ProcessRunner()

    @property
    def env(self) -> Dict[str, str]:
        return {"MYSQL_PWD": self.target.password} if self.target.password else {}

    def base_args(self, program: str) -> List[str]:
        args = [program, f"--host={self.target.host}"]
        if self.target.port:
            args.append(f"--port={self.target.port}")
        if self.target.user:
            args.append(f"--user={self.target.user}")
        return args

    def query(self, sql: str) -> str:
        """Run ``sql`` in batch mode against the target database; return raw TSV output."""
        cmd = self.base_args("mysql") + ["--batch", self.target.database, "-e", sql]
        return self.runner.run(cmd, self.env).stdout

    def execute(self, sql: str, *, use_database: bool = True, on_tick: Optional[TickCallback] = None) -> None:
        cmd = self.base_args("mysql")
        if use_database:
            cmd.append(self.target.database)
        cmd += ["-e", sql]
        self.runner.run(cmd, self.env, on_tick)

    def import_file(self, sql_path: Path, on_tick: Optional[TickCallback] = None) -> None:
        cmd = self.base_args("mysql") + [self.target.database]
        self.runner.run_with_file_input(cmd, self.env, sql_path, on_tick)

    def dump(self, result_file: Path, on_tick: Optional[TickCallback] = None) -> None:
        cmd = self.base_args("mysqldump") + DUMP_FLAGS + [f"--result-file={result_file}", self.target.database]
        self.runner.run(cmd, self.env, on_tick)

    def mysqlcheck(self, extra_args: List[str]) -> str:
        cmd = self.base_args("mysqlcheck") + list(extra_args) + [self.target.database]
        return self.runner.run(cmd, self.env).stdout

    def binlog_to_file(self, binlog: Path, stop_datetime: str, result_file: Path) -> None:
        """Decode a local binlog up to ``stop_datetime`` into ``result_file``."""
        cmd = [
            "mysqlbinlog",
            f"--stop-datetime={stop_datetime}",
            f"--database={self.target.database}",
            f"--result-file={result_file}",
            str(binlog),
        ]
        self.runner.run(cmd)
