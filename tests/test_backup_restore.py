import json
import os

import pytest

from conftest import DUMP_SQL
from mysql_dbtools.archive import Archiver
from mysql_dbtools.backup import BackupService
from mysql_dbtools.config import BackupOptions, ExportOptions, ImportOptions, RestoreOptions
from mysql_dbtools.errors import CommandFailed, ConfigurationError, EncryptionError
from mysql_dbtools.naming import SECRET_LENGTH, extract_secret, metadata_path
from mysql_dbtools.restore import RestoreService, recreate_database_sql


def make_backup(fake, target, tmp_path, **kw):
    options = BackupOptions(target=target, output_dir=tmp_path / "out", **kw)
    return BackupService(fake).backup(options)


def restore_service(fake):
    archiver = Archiver(fake)
    return RestoreService(fake, archiver, BackupService(fake, archiver))


class TestBackup:
    def test_zip_backup_contains_the_dump(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="zip")
        assert archive.name.startswith("shop-")
        assert archive.name.endswith(".sql.zip")

        restore_service(fake).restore(RestoreOptions(target=target, archive=archive, skip_safety_backup=True))
        assert "CREATE TABLE t" in fake.imported[-1]

    def test_dump_uses_consistent_flags_and_env_password(self, fake, target, tmp_path):
        make_backup(fake, target, tmp_path, compression="gzip")
        dump = next(c for c in fake.calls if c[0] == "mysqldump")
        assert "--single-transaction" in dump
        assert "--routines" in dump and "--triggers" in dump
        assert dump[-1] == "shop"
        assert not any("pw" == a or a.endswith("=pw") for a in dump)
        assert fake.envs[fake.calls.index(dump)] == {"MYSQL_PWD": "pw"}

    def test_note_and_label_in_filename(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", note="Before Migration!", label="nightly")
        assert archive.name.startswith("nightly-")
        assert archive.name.endswith("-before-migration.sql.gz")

    def test_sidecar_metadata(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", note="pre deploy")
        meta = json.loads(metadata_path(archive).read_text("utf-8"))
        assert meta["database"] == "shop"
        assert meta["host"] == "db.local"
        assert meta["port"] == 3306
        assert meta["note"] == "pre-deploy"
        assert meta["compression"] == "gz"
        assert meta["encrypted"] is False
        assert meta["archive"] == archive.name

    def test_raw_dump_is_removed(self, fake, target, tmp_path):
        make_backup(fake, target, tmp_path, compression="gzip")
        dump = next(c for c in fake.calls if c[0] == "mysqldump")
        raw = dump[-2][len("--result-file="):]
        assert not os.path.exists(raw)

    def test_encrypted_backup_carries_secret_in_name(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        assert archive.name.endswith(".sql.gz.gpg")
        secret = extract_secret(archive)
        assert secret is not None and len(secret) == SECRET_LENGTH
        gpg = next(c for c in fake.calls if c[0] == "gpg")
        assert "--symmetric" in gpg and "AES256" in gpg
        assert not (tmp_path / "out" / archive.name[: -len(".gpg")]).exists()
        meta = json.loads(metadata_path(archive).read_text("utf-8"))
        assert meta["encrypted"] is True

    def test_explicit_password_only_requests_encryption(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encryption_password="ignored")
        assert archive.name.endswith(".gpg")
        restore_service(fake).restore(RestoreOptions(target=target, archive=archive, skip_safety_backup=True))
        assert fake.imported[-1] == DUMP_SQL

    def test_retention_keeps_newest(self, fake, target, tmp_path):
        out = tmp_path / "out"
        out.mkdir()
        for stamp in ("20240101-000000", "20240102-000000", "20240103-000000"):
            (out / f"shop-{stamp}.sql.gz").write_bytes(b"x")
            (out / f"shop-{stamp}.meta.json").write_text("{}")
        (out / "other-20240101-000000.sql.gz").write_bytes(b"x")

        archive = make_backup(fake, target, tmp_path, compression="gzip", retention=2)

        remaining = sorted(p.name for p in out.glob("shop-*.sql.gz"))
        assert remaining == sorted([archive.name, "shop-20240103-000000.sql.gz"])
        assert not (out / "shop-20240101-000000.meta.json").exists()
        assert (out / "other-20240101-000000.sql.gz").exists()

    def test_dump_failure_propagates(self, fake, target, tmp_path):
        def broken(argv, input):
            raise CommandFailed(argv, 2, "mysqldump: Got error: 1045: Access denied")

        fake._mysqldump = broken
        with pytest.raises(CommandFailed, match="Access denied"):
            make_backup(fake, target, tmp_path, compression="gzip")
        assert list((tmp_path / "out").iterdir()) == []

    def test_encryption_failure_leaves_no_archive_behind(self, fake, target, tmp_path):
        fake.fail_gpg_encrypt = True
        with pytest.raises(EncryptionError, match="gpg encryption failed"):
            make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        assert list((tmp_path / "out").iterdir()) == []

    def test_export_writes_plain_sql(self, fake, target, tmp_path):
        out = tmp_path / "exports" / "shop.sql"
        BackupService(fake).export(ExportOptions(target=target, output=out))
        assert out.read_text("utf-8") == DUMP_SQL
        assert not metadata_path(out).exists()


class TestRestore:
    def test_encrypted_round_trip_is_byte_identical(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        restore_service(fake).restore(RestoreOptions(target=target, archive=archive, skip_safety_backup=True))
        assert fake.imported[-1] == DUMP_SQL

    def test_aes_zip_round_trip(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="zip", encrypt=True)
        assert archive.name.endswith(".sql.zip")
        assert Archiver.is_password_protected_zip(archive)
        restore_service(fake).restore(RestoreOptions(target=target, archive=archive, skip_safety_backup=True))
        assert fake.imported[-1] == DUMP_SQL

    def test_drops_and_recreates_before_import(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip")
        fake.calls.clear()
        restore_service(fake).restore(RestoreOptions(target=target, archive=archive, skip_safety_backup=True))
        recreate = fake.calls[0]
        assert recreate[-1] == recreate_database_sql("shop")
        assert "shop" not in recreate[:-2]
        assert fake.calls[-1][-1] == "shop"

    def test_safety_backup_runs_first(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip")
        fake.calls.clear()
        restore_service(fake).restore(RestoreOptions(target=target, archive=archive))
        assert fake.programs()[0] == "mysqldump"
        assert list((tmp_path / "out").glob("pre-restore-shop-*.sql.gz"))

    def test_safety_backup_needs_a_backup_service(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip")
        with pytest.raises(ConfigurationError):
            RestoreService(fake).restore(RestoreOptions(target=target, archive=archive))

    def test_missing_password_fails_before_anything_runs(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        anonymous = archive.with_name("copy.sql.gz.gpg")
        archive.rename(anonymous)
        fake.calls.clear()

        with pytest.raises(EncryptionError):
            restore_service(fake).restore(RestoreOptions(target=target, archive=anonymous))
        assert fake.calls == []

    def test_wrong_password_is_an_encryption_error(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        with pytest.raises(EncryptionError):
            restore_service(fake).restore(
                RestoreOptions(target=target, archive=archive, skip_safety_backup=True, encryption_password="nope")
            )
        assert not any("DROP DATABASE" in s for s in fake.statements)

    def test_missing_archive(self, fake, target, tmp_path):
        with pytest.raises(ConfigurationError):
            restore_service(fake).restore(RestoreOptions(target=target, archive=tmp_path / "nope.sql.gz"))

    def test_temp_files_are_removed(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        temp = tmp_path / "tmp"
        restore_service(fake).restore(
            RestoreOptions(target=target, archive=archive, skip_safety_backup=True, temp_dir=temp)
        )
        assert list(temp.iterdir()) == []


class TestImport:
    def test_plain_sql_is_streamed_directly(self, fake, target, tmp_path):
        sql = tmp_path / "seed.sql"
        sql.write_text("INSERT INTO t VALUES (1);\n", encoding="utf-8")
        RestoreService(fake).import_file(ImportOptions(target=target, file=sql))
        assert fake.imported == ["INSERT INTO t VALUES (1);\n"]
        assert not any("DROP DATABASE" in s for s in fake.statements)

    def test_encrypted_archive_is_unpacked(self, fake, target, tmp_path):
        archive = make_backup(fake, target, tmp_path, compression="gzip", encrypt=True)
        RestoreService(fake).import_file(ImportOptions(target=target, file=archive))
        assert fake.imported == [DUMP_SQL]

    def test_missing_file(self, fake, target, tmp_path):
        with pytest.raises(ConfigurationError):
            RestoreService(fake).import_file(ImportOptions(target=target, file=tmp_path / "none.sql"))
