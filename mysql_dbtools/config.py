"""Configuration: YAML profiles, environment overrides and typed option records.

Example ``~/.dbtools.yml``::

    host: 127.0.0.1
    port: 3306
    user: backup
    password: s3cret
    database: shop
    output_dir: ~/backups/mysql
    retention: 14
    compression: auto
    profiles:
      staging:
        host: staging-db.internal
        database: shop_staging
        retention: 3

Top-level keys form the ``default`` profile; named profiles inherit from it.
Precedence is CLI flags > environment (``DB_HOST`` and friends) > named
profile > default profile.
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path.home() / ".dbtools.yml"
DEFAULT_CHARSET = "utf8mb4"
COMPRESSION_BACKENDS = ("auto", "zstd", "pigz", "gzip", "zip")

ENV_KEYS = {
    "DB_HOST": "host",
    "DB_PORT": "port",
    "DB_DATABASE": "database",
    "DB_USERNAME": "user",
    "DB_PASSWORD": "password",
    "DBTOOLS_OUTPUT_DIR": "output_dir",
}

# ------------------------------
# Validation helpers
# ------------------------------


def parse_port(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid port: {value!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid port: {port}")
    return port


def check_compression(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in COMPRESSION_BACKENDS:
        raise ConfigurationError(
            f"Invalid compression backend: {value} (expected one of {', '.join(COMPRESSION_BACKENDS)})"
        )
    return value


def check_non_negative(name: str, value: Optional[int]) -> None:
    if value is not None and value < 0:
        raise ConfigurationError(f"{name} must be zero or positive, got {value}")


# ------------------------------
# Option records
# ------------------------------


@dataclass(frozen=True)
class ConnectionTarget:
    database: str
    host: str = "localhost"
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.database:
            raise ConfigurationError("Missing required option: database")
        object.__setattr__(self, "port", parse_port(self.port))


@dataclass(frozen=True)
class BackupOptions:
    target: ConnectionTarget
    output_dir: Path
    note: Optional[str] = None
    retention: Optional[int] = None
    compression: Optional[str] = None
    encryption_password: Optional[str] = field(default=None, repr=False)
    label: Optional[str] = None
    encrypt: bool = False

    def __post_init__(self) -> None:
        if not str(self.output_dir):
            raise ConfigurationError("Missing required option: output_dir")
        object.__setattr__(self, "output_dir", Path(self.output_dir).expanduser())
        check_compression(self.compression)
        check_non_negative("retention", self.retention)

    @property
    def effective_label(self) -> str:
        return self.label or self.target.database

    @property
    def encryption_requested(self) -> bool:
        return self.encrypt or self.encryption_password is not None


@dataclass(frozen=True)
class RestoreOptions:
    target: ConnectionTarget
    archive: Path
    skip_safety_backup: bool = False
    encryption_password: Optional[str] = field(default=None, repr=False)
    temp_dir: Optional[Path] = None
    output_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "archive", Path(self.archive).expanduser())


@dataclass(frozen=True)
class ImportOptions:
    target: ConnectionTarget
    file: Path
    encryption_password: Optional[str] = field(default=None, repr=False)
    temp_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "file", Path(self.file).expanduser())


@dataclass(frozen=True)
class ExportOptions:
    target: ConnectionTarget
    output: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "output", Path(self.output).expanduser())


@dataclass(frozen=True)
class ConvertOptions:
    target: ConnectionTarget
    collation: Optional[str] = None
    charset: str = DEFAULT_CHARSET
    dry_run: bool = False
    skip_columns: bool = False
    table: Optional[str] = None
    disable_fk_checks: bool = True


@dataclass(frozen=True)
class VerifyOptions:
    path: Path
    password: Optional[str] = field(default=None, repr=False)
    db_password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path).expanduser())


@dataclass(frozen=True)
class CleanOptions:
    output_dir: Path
    retention: Optional[int] = None
    days: Optional[int] = None
    binlog_days: Optional[int] = None
    label: Optional[str] = None
    target: Optional[ConnectionTarget] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "output_dir", Path(self.output_dir).expanduser())
        check_non_negative("retention", self.retention)
        check_non_negative("days", self.days)
        check_non_negative("binlog_days", self.binlog_days)
        if self.binlog_days is not None and self.target is None:
            raise ConfigurationError("Purging binlogs needs a database connection")


@dataclass(frozen=True)
class PitrRestoreOptions:
    target: ConnectionTarget
    stop_datetime: str
    binlogs: List[Path] = field(default_factory=list)
    meta: Optional[Path] = None
    binlog_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if not self.stop_datetime:
            raise ConfigurationError("Missing required option: to")


# ------------------------------
# Config file
# ------------------------------


@dataclass
class Config:
    host: str = "localhost"
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    database: Optional[str] = None
    output_dir: Path = Path("backups")
    retention: Optional[int] = None
    compression: Optional[str] = None
    label: Optional[str] = None
    encryption_password: Optional[str] = field(default=None, repr=False)
    temp_dir: Optional[Path] = None
    binlog_dir: Optional[Path] = None
    profile: str = "default"

    @staticmethod
    def load(
        path: Optional[Path] = None,
        profile: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        env = os.environ if environ is None else environ
        path = Config.resolve_path(path, env)
        profile = profile or env.get("DBTOOLS_PROFILE") or "default"

        raw, profiles = Config.read_file(path)
        values = dict(raw)
        if profile != "default":
            if profile not in profiles:
                raise ConfigurationError(f"Unknown profile: {profile}")
            values.update(profiles[profile] or {})

        for var, key in ENV_KEYS.items():
            if env.get(var):
                values[key] = env[var]

        return Config.from_mapping(values, profile=profile)

    @staticmethod
    def resolve_path(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
        env = os.environ if environ is None else environ
        if path is None:
            path = Path(env["DBTOOLS_CONFIG"]) if env.get("DBTOOLS_CONFIG") else DEFAULT_CONFIG_PATH
        return Path(path).expanduser()

    @staticmethod
    def read_file(path: Path) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Return the top-level values and the ``profiles`` mapping of a config file."""
        raw: Dict[str, Any] = {}
        if path.exists():
            try:
                raw = yaml.safe_load(path.read_text("utf-8")) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}")
            if not isinstance(raw, dict):
                raise ConfigurationError(f"Config {path} must be a mapping")
        profiles = raw.pop("profiles", None) or {}
        if not isinstance(profiles, dict):
            raise ConfigurationError(f"'profiles' in {path} must be a mapping")
        return raw, profiles

    @staticmethod
    def load_profiles(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, "Config"]:
        """Every profile of the config file, ``default`` first. Environment overrides are not applied."""
        raw, profiles = Config.read_file(Config.resolve_path(path, environ))
        out = {"default": Config.from_mapping(raw)}
        for name, values in profiles.items():
            merged = dict(raw)
            merged.update(values or {})
            out[str(name)] = Config.from_mapping(merged, profile=str(name))
        return out

    @staticmethod
    def from_mapping(values: Mapping[str, Any], profile: str = "default") -> "Config":
        known = {f.name for f in dataclasses.fields(Config)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")
        try:
            return Config(
                host=str(values.get("host") or "localhost"),
                port=parse_port(values.get("port")),
                user=values.get("user"),
                password=(str(values["password"]) if values.get("password") is not None else None),
                database=values.get("database"),
                output_dir=Path(values.get("output_dir") or "backups").expanduser(),
                retention=(int(values["retention"]) if values.get("retention") is not None else None),
                compression=check_compression(values.get("compression")),
                label=values.get("label"),
                encryption_password=values.get("encryption_password"),
                temp_dir=(Path(values["temp_dir"]).expanduser() if values.get("temp_dir") else None),
                binlog_dir=(Path(values["binlog_dir"]).expanduser() if values.get("binlog_dir") else None),
                profile=profile,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid config value: {e}")

    def override(self, **values: Any) -> "Config":
        """Return a copy with every non-None keyword applied (CLI flags)."""
        changes = {k: v for k, v in values.items() if v is not None}
        if "port" in changes:
            changes["port"] = parse_port(changes["port"])
        check_compression(changes.get("compression"))
        return dataclasses.replace(self, **changes)

    def target(self, database: Optional[str] = None) -> ConnectionTarget:
        return ConnectionTarget(
            database=database or self.database or "",
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
        )

    def describe(self) -> Dict[str, Any]:
        """Printable view with secrets masked."""
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.name in ("password", "encryption_password") and value:
                value = "********"
            elif isinstance(value, Path):
                value = str(value)
            out[f.name] = value
        return out
