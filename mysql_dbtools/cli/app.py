#!/usr/bin/env python3
"""
dbtools: MySQL backup, restore and collation CLI

Connection settings come from ~/.dbtools.yml (or --config), then DB_HOST,
DB_PORT, DB_DATABASE, DB_USERNAME and DB_PASSWORD, then the global flags:

    dbtools --database shop backup --note "before migration" --encrypt
    dbtools --database shop restore backups/shop-20250102-030405.sql.zst --force
    dbtools --profile staging collation --dry-run

Dependencies
- typer, pyyaml, pyzipper
- mysql, mysqldump, mysqlcheck, mysqlbinlog, gpg on PATH (zstd/pigz optional)
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

import typer
import yaml

from ..archive import Archiver
from ..backup import BackupService
from ..collation import (
    CircularDependency,
    ColumnConverted,
    ColumnDryRun,
    ColumnError,
    ColumnsAllOk,
    ColumnsNeedConversion,
    ColumnStarted,
    ColumnVerificationFailed,
    CollationConverter,
    ConversionEvent,
    ConversionObserver,
    DependenciesDetected,
    FkTablesNeedConversion,
    TableConverted,
    TableDryRun,
    TableError,
    TableSkipped,
    TableStarted,
)
from ..config import (
    DEFAULT_CHARSET,
    BackupOptions,
    CleanOptions,
    Config,
    ConnectionTarget,
    ConvertOptions,
    ExportOptions,
    ImportOptions,
    PitrRestoreOptions,
    RestoreOptions,
    VerifyOptions,
)
from ..errors import DbToolsError
from ..maintenance import DEFAULT_BINLOG_DAYS, CleanService, MaintenanceService, list_backups
from ..pitr import PitrService, pitr_info
from ..restore import RestoreService
from ..runner import ProcessRunner, TickCallback
from ..verify import VerifyService

app = typer.Typer(add_completion=False, help="MySQL backup, restore and collation tooling")

SPINNER_FRAMES = "|/-\\"

# ------------------------------
# Helpers
# ------------------------------


@dataclass
class State:
    config: Config
    runner: ProcessRunner
    config_path: Optional[Path] = None

    def target(self) -> ConnectionTarget:
        return self.config.target()


class Spinner:
    def __init__(self, label: str) -> None:
        self.label = label
        self.frame = 0

    def tick(self) -> None:
        typer.echo(f"\r{SPINNER_FRAMES[self.frame % len(SPINNER_FRAMES)]} {self.label}", err=True, nl=False)
        self.frame += 1

    def clear(self) -> None:
        if self.frame:
            typer.echo("\r" + " " * (len(self.label) + 2) + "\r", err=True, nl=False)


@contextmanager
def spinning(label: str) -> Iterator[TickCallback]:
    spinner = Spinner(label)
    try:
        yield spinner.tick
    finally:
        spinner.clear()


@contextmanager
def reporting_errors() -> Iterator[None]:
    try:
        yield
    except DbToolsError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def human_size(num: float) -> str:
    if num < 1024:
        return f"{int(num)} B"
    for unit in ("KB", "MB", "GB", "TB"):
        num /= 1024
        if num < 1024:
            break
    return f"{num:.1f} {unit}"


class EchoObserver(ConversionObserver):
    """Prints conversion progress as it happens."""

    def on_event(self, event: ConversionEvent) -> None:
        if isinstance(event, DependenciesDetected):
            typer.echo(f"Found {event.count} foreign key relationship(s)")
        elif isinstance(event, CircularDependency):
            typer.echo(f"WARN: circular foreign keys between {', '.join(event.tables)}; converting them last")
        elif isinstance(event, FkTablesNeedConversion):
            state = "suppressed" if event.suppression_enabled else "enforced"
            typer.echo(f"{len(event.tables)} FK-related table(s) need conversion (FK checks {state})")
        elif isinstance(event, TableStarted):
            typer.echo(f"{event.table.table_name} ({event.table.current_collation}, {event.table.size_mb} MB)")
        elif isinstance(event, TableSkipped):
            typer.echo(f"{event.table.table_name}: already converted")
        elif isinstance(event, TableDryRun):
            typer.echo(f"DRY : {event.sql}")
        elif isinstance(event, TableConverted):
            typer.echo(f"{event.table.table_name}: converted in {event.duration:.2f}s")
        elif isinstance(event, TableError):
            hint = " (foreign key constraint)" if event.is_fk_error else ""
            typer.echo(f"ERROR {event.table_name}{hint}: {event.error}", err=True)
        elif isinstance(event, ColumnsAllOk):
            typer.echo(f"  {event.table_name}: all columns OK")
        elif isinstance(event, ColumnsNeedConversion):
            typer.echo(f"  {event.table_name}: {event.count} column(s) to convert")
        elif isinstance(event, ColumnStarted):
            indexes = ", ".join(i.index_name for i in event.indexes)
            suffix = f" [indexes: {indexes}]" if indexes else ""
            typer.echo(f"  {event.column.column_name} ({event.column.current_collation}){suffix}")
        elif isinstance(event, ColumnDryRun):
            typer.echo(f"  DRY : {event.sql}")
        elif isinstance(event, ColumnConverted):
            typer.echo(f"  {event.column.column_name}: converted in {event.duration:.2f}s")
        elif isinstance(event, ColumnVerificationFailed):
            typer.echo(
                f"  WARN {event.table_name}.{event.column.column_name}: still {event.actual or 'unknown'}",
                err=True,
            )
        elif isinstance(event, ColumnError):
            typer.echo(f"  ERROR {event.table_name}.{event.column.column_name}: {event.error}", err=True)


# ------------------------------
# Global options
# ------------------------------


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config YAML (default ~/.dbtools.yml)"),
    profile: Optional[str] = typer.Option(None, help="Named profile from the config file"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Database name"),
    host: Optional[str] = typer.Option(None, help="Server host"),
    port: Optional[int] = typer.Option(None, help="Server port"),
    user: Optional[str] = typer.Option(None, help="Database user"),
    password: Optional[str] = typer.Option(None, help="Database password"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging (shows every command run)"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    with reporting_errors():
        cfg = Config.load(config_path, profile).override(
            database=database, host=host, port=port, user=user, password=password
        )
    ctx.obj = State(config=cfg, runner=ProcessRunner(), config_path=config_path)


# ------------------------------
# Backup / restore
# ------------------------------


@app.command()
def backup(
    ctx: typer.Context,
    output_dir: Optional[Path] = typer.Option(None, help="Directory for archives (default from config)"),
    note: Optional[str] = typer.Option(None, help="Free text appended to the filename as a slug"),
    retention: Optional[int] = typer.Option(None, help="Keep only the N newest archives of this label"),
    compression: Optional[str] = typer.Option(None, help="auto, zstd, pigz, gzip or zip"),
    label: Optional[str] = typer.Option(None, help="Filename prefix (default: database name)"),
    encrypt: bool = typer.Option(False, "--encrypt", help="Encrypt with the database password + filename secret"),
    encryption_password: Optional[str] = typer.Option(None, help="Request encryption (the password is derived)"),
):
    """Dump, compress and optionally encrypt a database."""
    state: State = ctx.obj
    cfg = state.config
    with reporting_errors():
        options = BackupOptions(
            target=state.target(),
            output_dir=output_dir or cfg.output_dir,
            note=note,
            retention=retention if retention is not None else cfg.retention,
            compression=compression or cfg.compression,
            encryption_password=encryption_password or cfg.encryption_password,
            label=label or cfg.label,
            encrypt=encrypt,
        )
        with spinning(f"Backing up {options.target.database}") as tick:
            archive = BackupService(state.runner).backup(options, tick)
    typer.echo(f"Backup written to {archive}")


@app.command()
def restore(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="Archive to restore"),
    skip_safety_backup: bool = typer.Option(False, "--skip-safety-backup", help="Do not back up the current database first"),
    encryption_password: Optional[str] = typer.Option(None, help="Password for encrypted archives"),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
):
    """Drop and recreate the database from an archive."""
    state: State = ctx.obj
    cfg = state.config
    with reporting_errors():
        target = state.target()
        if not force:
            typer.confirm(f"Replace database {target.database} with {archive.name}?", abort=True)
        options = RestoreOptions(
            target=target,
            archive=archive,
            skip_safety_backup=skip_safety_backup,
            encryption_password=encryption_password or cfg.encryption_password,
            temp_dir=cfg.temp_dir,
            output_dir=cfg.output_dir,
        )
        runner = state.runner
        archiver = Archiver(runner)
        service = RestoreService(runner, archiver, BackupService(runner, archiver))
        with spinning(f"Restoring {target.database}") as tick:
            result = service.restore(options, tick)
    ratio = f", ratio {result.ratio:.1f}x" if result.ratio else ""
    typer.echo(
        f"Restored {target.database}: {human_size(result.archive_size)} archive, "
        f"{human_size(result.sql_size)} SQL{ratio}"
    )


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="SQL file or archive to load"),
    encryption_password: Optional[str] = typer.Option(None, help="Password for encrypted archives"),
):
    """Load a dump into the existing database (no drop, no safety backup)."""
    state: State = ctx.obj
    with reporting_errors():
        options = ImportOptions(
            target=state.target(),
            file=file,
            encryption_password=encryption_password or state.config.encryption_password,
            temp_dir=state.config.temp_dir,
        )
        with spinning(f"Importing {file.name}") as tick:
            RestoreService(state.runner).import_file(options, tick)
    typer.echo(f"Imported {file.name} into {options.target.database}")


@app.command()
def export(
    ctx: typer.Context,
    output: Path = typer.Argument(..., help="Destination .sql file"),
):
    """Plain mysqldump to a file."""
    state: State = ctx.obj
    with reporting_errors():
        options = ExportOptions(target=state.target(), output=output)
        with spinning(f"Exporting {options.target.database}") as tick:
            BackupService(state.runner).export(options, tick)
    typer.echo(f"Exported to {output}")


@app.command()
def verify(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Archive or directory of archives"),
    password: Optional[str] = typer.Option(None, "--encryption-password", help="Password for encrypted archives"),
):
    """Check that archives decrypt and decompress cleanly."""
    state: State = ctx.obj
    with reporting_errors():
        options = VerifyOptions(path=path, password=password, db_password=state.config.password)
        checked = VerifyService(state.runner).verify(options)
    for f in checked:
        typer.echo(f"OK   {f.name}")


# ------------------------------
# Collation
# ------------------------------


@app.command()
def collation(
    ctx: typer.Context,
    collation_name: Optional[str] = typer.Option(None, "--collation", help="Target collation (default by server version)"),
    charset: str = typer.Option(DEFAULT_CHARSET, help="Target character set"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the ALTER statements without running them"),
    skip_columns: bool = typer.Option(False, "--skip-columns", help="Only convert table defaults"),
    table: Optional[str] = typer.Option(None, help="Convert a single table"),
    disable_fk_checks: bool = typer.Option(
        True, "--disable-fk-checks/--keep-fk-checks", help="Wrap ALTERs in SET FOREIGN_KEY_CHECKS=0"
    ),
):
    """Convert tables and columns to one collation, parents before children."""
    state: State = ctx.obj
    with reporting_errors():
        options = ConvertOptions(
            target=state.target(),
            collation=collation_name,
            charset=charset,
            dry_run=dry_run,
            skip_columns=skip_columns,
            table=table,
            disable_fk_checks=disable_fk_checks,
        )
        result = CollationConverter(state.runner).convert(options, EchoObserver())

    typer.echo(
        f"Tables converted: {result.tables_converted}, skipped: {result.tables_skipped}; "
        f"columns converted: {result.columns_converted}, skipped: {result.columns_skipped}, "
        f"unverified: {result.columns_failed_verification}"
    )
    if result.errors:
        for issue in result.errors:
            typer.echo(f"ERROR {issue}", err=True)
        raise typer.Exit(1)


@app.command("collation-status")
def collation_status(
    ctx: typer.Context,
    collation_name: Optional[str] = typer.Option(None, "--collation", help="Collation to compare against"),
):
    """List tables and whether they need conversion."""
    state: State = ctx.obj
    with reporting_errors():
        rows = CollationConverter(state.runner).table_status(
            ConvertOptions(target=state.target(), collation=collation_name)
        )
    for row in rows:
        flag = "CONVERT" if row.needs_conversion else "ok"
        typer.echo(f"{row.table.table_name:<40} {row.table.current_collation:<24} {flag}")


@app.command("change-collation")
def change_collation(
    ctx: typer.Context,
    collation_name: Optional[str] = typer.Option(None, "--collation", help="New default collation"),
    charset: str = typer.Option(DEFAULT_CHARSET, help="New default character set"),
):
    """Change the database default character set and collation."""
    state: State = ctx.obj
    with reporting_errors():
        applied = CollationConverter(state.runner).change_database_collation(
            ConvertOptions(target=state.target(), collation=collation_name, charset=charset)
        )
    typer.echo(f"Database default collation is now {applied}")


# ------------------------------
# Maintenance
# ------------------------------


@app.command()
def size(ctx: typer.Context):
    """Per-table data and index size."""
    state: State = ctx.obj
    with reporting_errors():
        report = MaintenanceService(state.runner).size(state.target())
    for t in report.tables:
        typer.echo(f"{t.name:<40} {t.rows:>12} rows {human_size(t.data_size):>10} data {human_size(t.index_size):>10} index")
    typer.echo(
        f"TOTAL {report.database}: {human_size(report.data_size)} data, "
        f"{human_size(report.index_size)} index, {human_size(report.total_size)} total"
    )


@app.command()
def maintain(
    ctx: typer.Context,
    operation: str = typer.Argument("check", help="check, analyze, optimize or repair"),
):
    """Run mysqlcheck on every table."""
    state: State = ctx.obj
    with reporting_errors():
        results = MaintenanceService(state.runner).mysqlcheck(state.target(), operation)
    failed = False
    for table, res in results.items():
        typer.echo(f"{res.status.upper():<8} {table} {res.message}")
        failed = failed or res.status == "error"
    if failed:
        raise typer.Exit(1)


@app.command()
def clean(
    ctx: typer.Context,
    output_dir: Optional[Path] = typer.Option(None, help="Backup directory (default from config)"),
    days: Optional[int] = typer.Option(None, help="Delete archives older than N days"),
    retention: Optional[int] = typer.Option(None, help="Keep only the N newest archives"),
    label: Optional[str] = typer.Option(None, help="Only touch archives with this label"),
    binlog_days: Optional[int] = typer.Option(None, help="Also purge binlogs older than N days"),
):
    """Delete old backups and optionally purge binary logs."""
    state: State = ctx.obj
    cfg = state.config
    with reporting_errors():
        options = CleanOptions(
            output_dir=output_dir or cfg.output_dir,
            retention=retention,
            days=days,
            binlog_days=binlog_days,
            label=label,
            target=state.target() if binlog_days is not None else None,
        )
        removed = CleanService(MaintenanceService(state.runner)).clean(options)
    for f in removed:
        typer.echo(f"Removed {f.name}")
    typer.echo(f"{len(removed)} archive(s) removed")


@app.command()
def show(
    ctx: typer.Context,
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Backup directory (default from config)"),
    label: Optional[str] = typer.Option(None, help="Only list archives with this label"),
):
    """List backups, newest first."""
    state: State = ctx.obj
    directory = output_dir or state.config.output_dir
    with reporting_errors():
        backups = list_backups(directory, label)
    if not backups:
        typer.echo(f"No backup files found in {directory}")
        return
    typer.echo(f"Backups in {directory}:")
    for i, b in enumerate(backups, 1):
        marker = " [encrypted]" if b.encrypted else ""
        stamp = datetime.fromtimestamp(b.mtime).strftime("%Y-%m-%d %H:%M:%S")
        typer.echo(f"  [{i:2d}] {b.path.name}{marker}")
        typer.echo(f"       {human_size(b.size)}  |  {stamp}")
    typer.echo(f"Total: {len(backups)} backup(s), {human_size(sum(b.size for b in backups))}")


@app.command("purge-binlogs")
def purge_binlogs(
    ctx: typer.Context,
    days: int = typer.Option(DEFAULT_BINLOG_DAYS, help="Purge binlogs older than N days"),
):
    """PURGE BINARY LOGS BEFORE N days ago."""
    state: State = ctx.obj
    with reporting_errors():
        MaintenanceService(state.runner).purge_binlogs(state.target(), days)
    typer.echo(f"Purged binary logs older than {days} day(s)")


@app.command("db-test")
def db_test(ctx: typer.Context):
    """Check that the configured connection works."""
    state: State = ctx.obj
    with reporting_errors():
        target = state.target()
        version = MaintenanceService(state.runner).ping(target)
    typer.echo(f"Connected to {target.host} ({version or 'unknown version'}), database {target.database}")


# ------------------------------
# Point-in-time recovery
# ------------------------------


@app.command("pitr-info")
def pitr_info_cmd(
    ctx: typer.Context,
    meta: Path = typer.Argument(..., help="Backup metadata file (*.meta.json)"),
    binlog_dir: Optional[Path] = typer.Option(None, help="Directory holding mysql-bin.* files"),
):
    """Show a backup's metadata and the binlogs available for replay."""
    state: State = ctx.obj
    with reporting_errors():
        info = pitr_info(meta, binlog_dir or state.config.binlog_dir)
    for key in sorted(info.meta):
        typer.echo(f"{key}: {info.meta[key]}")
    if info.binlogs:
        typer.echo(f"binlogs: {len(info.binlogs)} ({info.binlogs[0].name} .. {info.binlogs[-1].name})")
    else:
        typer.echo("binlogs: <none>")


@app.command("pitr-restore")
def pitr_restore(
    ctx: typer.Context,
    to: str = typer.Option(..., "--to", help='Stop time "YYYY-MM-DD HH:MM:SS"'),
    binlog: Optional[List[Path]] = typer.Option(None, "--binlog", help="Binlog file to replay (repeatable)"),
    meta: Optional[Path] = typer.Option(None, help="Metadata file listing binlogs"),
    binlog_dir: Optional[Path] = typer.Option(None, help="Directory holding the binlogs named in --meta"),
):
    """Replay binary logs up to a point in time."""
    state: State = ctx.obj
    with reporting_errors():
        options = PitrRestoreOptions(
            target=state.target(),
            stop_datetime=to,
            binlogs=list(binlog or []),
            meta=meta,
            binlog_dir=binlog_dir or state.config.binlog_dir,
        )
        with spinning(f"Replaying binlogs until {to}") as tick:
            applied = PitrService(state.runner).restore(options, tick)
    typer.echo(f"Replayed {len(applied)} binlog(s) until {to}")


# ------------------------------
# Config
# ------------------------------


@app.command("config-show")
def config_show(ctx: typer.Context):
    """Print the effective configuration (secrets masked)."""
    state: State = ctx.obj
    typer.echo(yaml.safe_dump(state.config.describe(), sort_keys=True).rstrip())


@app.command("config-list")
def config_list(ctx: typer.Context):
    """List the profiles of the config file."""
    state: State = ctx.obj
    with reporting_errors():
        profiles = Config.load_profiles(state.config_path)
    for name, cfg in profiles.items():
        marker = " (active)" if name == state.config.profile else ""
        typer.echo(f"{name}{marker}")
        typer.echo(f"    {cfg.host}:{cfg.port or 3306}/{cfg.database or '<not set>'}")


if __name__ == "__main__":
    app()  # pragma: no cover
