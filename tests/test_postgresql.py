import gzip
import sys

import pytest

from conftest import exit_script, install_fake_postgres, write_file
from spindle.errors import BinaryNotFoundError, UnsupportedBackupFormatError, WrongEngineDumpError
from spindle.services.backup_service import perform_restore
from spindle.services.engines import get_engine
from spindle.services.engines.base import ContainerConfig, RestoreOptions
from spindle.services.engines.postgresql import (
    PostgreSQLEngine,
    detect_postgres_format,
    parse_dump_tool_major,
    parse_postgres_version,
    quote_ident,
    quote_literal,
    set_max_connections,
)

needs_posix = pytest.mark.skipif(sys.platform == "win32", reason="fake binaries are shell scripts")


@pytest.fixture
def engine(context):
    return PostgreSQLEngine(context)


@pytest.fixture
def config():
    return ContainerConfig("main", "postgresql", "16.11.0", port=5433, database="app")


def test_parse_postgres_version():
    assert parse_postgres_version("postgres (PostgreSQL) 16.11") == "16.11"
    assert parse_postgres_version("pg_restore (PostgreSQL) 17.7 (Homebrew)") == "17.7"
    assert parse_postgres_version("nothing here") is None


def test_set_max_connections_replaces_commented_default():
    conf = "listen_addresses = 'localhost'\n#max_connections = 100\t# comment\nshared_buffers = 128MB\n"
    updated = set_max_connections(conf, 200)
    assert "max_connections = 200\n" in updated
    assert "#max_connections" not in updated
    assert updated.count("max_connections") == 1


def test_set_max_connections_appends_when_absent():
    assert set_max_connections("port = 5432", 50) == "port = 5432\nmax_connections = 50\n"


@pytest.mark.parametrize("header, expected", [
    (b"PGDMP\x01\x0e\x00", "custom"),
    (b"-- MySQL dump 10.13\n", "mysql_sql"),
    (b"--\n-- PostgreSQL database dump\n--\n", "sql"),
    (b"\x1f\x8b\x08\x00", "compressed"),
    (b"\x00" * 257 + b"ustar\x00", "tar"),
    (b"\x00garbage", "unknown"),
])
def test_detect_postgres_format(header, expected):
    assert detect_postgres_format(header).format == expected


def test_parse_dump_tool_major():
    header = b"--\n-- Dumped from database version 16.4\n-- Dumped by pg_dump version 17.2\n"
    assert parse_dump_tool_major(header) == 17
    assert parse_dump_tool_major(b"CREATE TABLE t ();") is None


def test_connection_string(engine, config):
    assert engine.get_connection_string(config) == "postgresql://postgres@127.0.0.1:5433/app"
    assert engine.get_connection_string(config, "other") == "postgresql://postgres@127.0.0.1:5433/other"


def test_directory_backup_detection(engine, tmp_path):
    write_file(tmp_path / "dumpdir" / "toc.dat", b"PGDMP")
    assert engine.detect_backup_format(str(tmp_path / "dumpdir")).format == "directory"


@pytest.mark.asyncio
async def test_restore_refuses_mysql_dump(engine, config, tmp_path):
    dump = write_file(tmp_path / "export.sql", b"-- MySQL dump 10.13  Distrib 8.0.36\nCREATE TABLE t (id int);\n")
    with pytest.raises(WrongEngineDumpError):
        await engine.restore(config, str(dump), RestoreOptions())


@pytest.mark.asyncio
async def test_status_without_binaries_is_not_running(engine, config):
    result = await engine.status(config)
    assert result.running is False


def test_tool_path_missing_binaries(engine, config):
    with pytest.raises(BinaryNotFoundError):
        engine.get_tool_path(config, "psql")


def test_engine_registry_aliases(context):
    assert isinstance(get_engine("pg", context), PostgreSQLEngine)
    assert isinstance(get_engine("Postgres", context), PostgreSQLEngine)
    with pytest.raises(ValueError, match="Supported: postgresql, sqlite"):
        get_engine("oracle", context)


def test_identifiers_and_literals_are_escaped():
    assert quote_ident('we"ird') == '"we""ird"'
    assert quote_literal("o'brien") == "'o''brien'"


# ---- Lifecycle against stand-in binaries -------------------------------------

@needs_posix
@pytest.mark.asyncio
async def test_create_start_stop(engine, registry, allocator):
    root = install_fake_postgres(engine.binary_manager.get_binary_path("16"))
    port = allocator.find_available(55432, (55432, 55532)).port
    config = registry.create("main", "postgresql", "16.11.0", port=port, database="app", binary_path=str(root))

    data_dir = await engine.init_data_dir("main", "16")
    assert (data_dir / "PG_VERSION").exists()
    assert "max_connections = 200" in (data_dir / "postgresql.conf").read_text()

    result = await engine.start(config)
    assert result.port == port
    assert result.connection_string == f"postgresql://postgres@127.0.0.1:{port}/app"
    assert (await engine.status(config)).running

    await engine.stop(config)
    assert not (await engine.status(config)).running
    await engine.stop(config)


@needs_posix
@pytest.mark.asyncio
async def test_start_is_idempotent(engine, registry, allocator):
    root = install_fake_postgres(engine.binary_manager.get_binary_path("16"))
    port = allocator.find_available(55432, (55432, 55532)).port
    config = registry.create("main", "postgresql", "16.11.0", port=port, database="app", binary_path=str(root))
    data_dir = await engine.init_data_dir("main", "16")

    first = await engine.start(config)
    second = await engine.start(config)

    assert first == second
    assert (data_dir / "starts.log").read_text().splitlines() == ["started"]


# ---- Restore dispatch --------------------------------------------------------

def pinned_config(root, database="app"):
    return ContainerConfig("main", "postgresql", "16.11.0", port=5433, database=database, binary_path=str(root))


@needs_posix
@pytest.mark.asyncio
async def test_unrecognised_backup_is_refused_before_pg_restore(engine, tmp_path):
    root = install_fake_postgres(tmp_path / "pg", pg_restore=exit_script("input file does not appear to be a valid archive", 1))
    garbage = write_file(tmp_path / "mystery.bin", b"\x00\x01\x02 not a dump")

    with pytest.raises(UnsupportedBackupFormatError) as exc_info:
        await perform_restore(engine, pinned_config(root), str(garbage), RestoreOptions(create_database=False))
    assert exc_info.value.suggestion


@needs_posix
@pytest.mark.asyncio
async def test_compressed_backup_is_refused(engine, tmp_path):
    root = install_fake_postgres(tmp_path / "pg")
    archive = write_file(tmp_path / "dump.sql.gz", gzip.compress(b"CREATE TABLE t (id int);"))

    with pytest.raises(UnsupportedBackupFormatError) as exc_info:
        await engine.restore(pinned_config(root), str(archive), RestoreOptions(create_database=False))
    assert "gunzip" in exc_info.value.suggestion


@needs_posix
@pytest.mark.asyncio
async def test_pg_restore_failure_is_not_soft(engine, tmp_path):
    root = install_fake_postgres(tmp_path / "pg", pg_restore=exit_script("pg_restore: error: could not connect", 1))
    dump = write_file(tmp_path / "app.dump", b"PGDMP\x01\x0e\x00")

    result = await engine.restore(pinned_config(root), str(dump), RestoreOptions(create_database=False, format="custom"))

    assert result.code == 1
    assert not result.success


@needs_posix
@pytest.mark.asyncio
async def test_pg_restore_ignored_errors_are_soft(engine, tmp_path):
    root = install_fake_postgres(tmp_path / "pg", pg_restore=exit_script("pg_restore: warning: errors ignored on restore: 3", 1))
    dump = write_file(tmp_path / "app.dump", b"PGDMP\x01\x0e\x00")

    result = await engine.restore(pinned_config(root), str(dump), RestoreOptions(create_database=False, validate_version=False))

    assert result.success and result.soft_success
    assert result.warnings == ["pg_restore: warning: errors ignored on restore: 3"]
