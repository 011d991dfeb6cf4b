import errno
import os
import shutil
import sqlite3
from pathlib import Path

import httpx
import pytest

from conftest import write_file
from spindle.errors import (
    AlreadyExistsError,
    ContainerExistsError,
    FileNotFoundSpindleError,
    InvalidOptionError,
    RegistryEntryNotFoundError,
    UnsupportedBackupFormatError,
)
from spindle.services import filesystem
from spindle.services.binary_manager import BinaryManager
from spindle.services.engines import get_engine
from spindle.services.engines.base import BackupOptions, ContainerConfig, InitOptions
from spindle.services.engines.sqlite import MARKER_TABLE, SQLiteEngine, is_sqlite_file, path_from_connection_string

needs_sqlite3 = pytest.mark.skipif(shutil.which("sqlite3") is None, reason="sqlite3 CLI not installed")


def make_db(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
    conn.execute("INSERT INTO items (name) VALUES ('widget')")
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def engine(context):
    return SQLiteEngine(context)


@pytest.fixture
def tracked(engine, registry, tmp_path):
    """A registered SQLite container backed by a real database file."""
    db = make_db(tmp_path / "data" / "app.sqlite")
    engine.file_registry.add("app", str(db))
    return registry.create("app", "sqlite", "3", database=str(db))


def test_alias_resolves(context):
    assert isinstance(get_engine("sqlite3", context), SQLiteEngine)


def test_connection_string_is_absolute(engine, tmp_path):
    config = ContainerConfig("app", "sqlite", "3", database=str(tmp_path / "app.sqlite"))
    assert engine.get_connection_string(config) == f"sqlite:///{(tmp_path / 'app.sqlite').as_posix().lstrip('/')}"


def test_path_from_connection_string():
    assert path_from_connection_string("sqlite:///var/data/app.db") == "/var/data/app.db"
    assert path_from_connection_string("sqlite://relative/app.db") == "relative/app.db"
    assert path_from_connection_string("/plain/path.db") == "/plain/path.db"


@pytest.mark.asyncio
async def test_start_and_status_follow_the_file(engine, tracked):
    result = await engine.start(tracked)
    assert result.port == 0
    assert result.connection_string.startswith("sqlite:///")
    assert (await engine.status(tracked)).running

    os.remove(tracked.database)
    assert not (await engine.status(tracked)).running
    with pytest.raises(FileNotFoundSpindleError):
        await engine.start(tracked)


@pytest.mark.asyncio
async def test_list_databases_and_size(engine, tracked):
    assert await engine.list_databases(tracked) == [tracked.database]
    assert await engine.get_database_size(tracked) > 0


@pytest.mark.asyncio
async def test_relocate_updates_both_registries(engine, tracked, registry, tmp_path):
    target_dir = tmp_path / "moved"
    target_dir.mkdir()

    updated = await engine.relocate(tracked, str(target_dir), registry)

    new_path = target_dir / "app.sqlite"
    assert new_path.exists()
    assert updated.database == str(new_path.resolve())
    assert registry.require("app", "sqlite").database == str(new_path.resolve())
    assert engine.file_registry.get("app").file_path == str(new_path.resolve())


@pytest.mark.asyncio
async def test_relocate_refuses_existing_target(engine, tracked, registry, tmp_path):
    write_file(tmp_path / "taken.sqlite", b"occupied")
    with pytest.raises(AlreadyExistsError):
        await engine.relocate(tracked, str(tmp_path / "taken.sqlite"), registry)


@pytest.mark.asyncio
async def test_dump_from_path_and_uri(engine, tracked, tmp_path):
    out = tmp_path / "copies" / "one.sqlite"
    await engine.dump_from_connection_string(tracked.database, str(out))
    assert is_sqlite_file(out)

    out2 = tmp_path / "copies" / "two.sqlite"
    await engine.dump_from_connection_string(f"sqlite:///{tracked.database.lstrip('/')}", str(out2))
    assert is_sqlite_file(out2)


@pytest.mark.asyncio
async def test_dump_rejects_non_sqlite_file(engine, tmp_path):
    bogus = write_file(tmp_path / "notes.txt", b"just text")
    with pytest.raises(FileNotFoundSpindleError):
        await engine.dump_from_connection_string(str(bogus), str(tmp_path / "out.sqlite"))


@pytest.mark.asyncio
async def test_binary_copy_backup_and_restore(engine, tracked, tmp_path):
    backup = await engine.backup(tracked, str(tmp_path / "backups" / "app.sqlite"), BackupOptions(format="dump"))
    assert backup.size > 0

    target = ContainerConfig("restored", "sqlite", "3", database=str(tmp_path / "restored.sqlite"))
    result = await engine.restore(target, backup.path)

    assert result.success
    conn = sqlite3.connect(target.database)
    assert conn.execute("SELECT name FROM items").fetchone() == ("widget",)
    conn.close()


@needs_sqlite3
@pytest.mark.asyncio
async def test_init_creates_real_database(engine, tmp_path):
    path = await engine.init_data_dir("fresh", "3", InitOptions(path=str(tmp_path / "fresh.sqlite")))
    assert is_sqlite_file(path)
    assert engine.file_registry.get("fresh").file_path == str(path)

    with pytest.raises(AlreadyExistsError):
        await engine.init_data_dir("again", "3", InitOptions(path=str(path)))


@needs_sqlite3
@pytest.mark.asyncio
async def test_sql_backup_round_trip(engine, tracked, tmp_path):
    backup = await engine.backup(tracked, str(tmp_path / "app.sql"), BackupOptions(format="sql"))
    assert "CREATE TABLE items" in (tmp_path / "app.sql").read_text()

    target = ContainerConfig("copy", "sqlite", "3", database=str(tmp_path / "copy.sqlite"))
    result = await engine.restore(target, backup.path)

    assert result.success
    conn = sqlite3.connect(target.database)
    assert conn.execute("SELECT count(*) FROM items").fetchone() == (1,)
    conn.close()


@pytest.mark.asyncio
async def test_dump_from_url_downloads_and_validates(context, tmp_path):
    payload = make_db(tmp_path / "remote.sqlite").read_bytes()

    def handler(request):
        if request.url.path.endswith("/good.sqlite"):
            return httpx.Response(200, content=payload)
        return httpx.Response(200, content=b"<html>not a database</html>")

    def factory(timeout):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=timeout)

    engine = SQLiteEngine(context, BinaryManager(context, SQLiteEngine.binary_strategy(), client_factory=factory))

    out = tmp_path / "downloaded.sqlite"
    result = await engine.dump_from_connection_string("https://example.test/good.sqlite", str(out))
    assert result.file_path == str(out)
    assert is_sqlite_file(out)

    with pytest.raises(FileNotFoundSpindleError):
        await engine.dump_from_connection_string("https://example.test/page.html", str(tmp_path / "bad.sqlite"))
    assert not (tmp_path / "bad.sqlite").exists()
    assert not (tmp_path / "bad.sqlite.download").exists()


@pytest.mark.asyncio
async def test_relocate_across_devices_copies_then_removes(engine, tracked, registry, tmp_path, monkeypatch):
    source = tracked.database

    def cross_device(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(filesystem.os, "rename", cross_device)
    updated = await engine.relocate(tracked, str(tmp_path / "elsewhere" / "renamed.sqlite"), registry)

    assert not os.path.exists(source)
    assert is_sqlite_file(tmp_path / "elsewhere" / "renamed.sqlite")
    assert updated.database.endswith("renamed.sqlite")


@pytest.mark.asyncio
async def test_init_refuses_registered_name_without_leaving_a_file(engine, tmp_path):
    engine.file_registry.add("taken", str(make_db(tmp_path / "existing.sqlite")))

    with pytest.raises(ContainerExistsError):
        await engine.init_data_dir("taken", "3", InitOptions(path=str(tmp_path / "new.sqlite")))

    assert not (tmp_path / "new.sqlite").exists()


@needs_sqlite3
@pytest.mark.asyncio
async def test_create_database_leaves_no_marker_table(engine, tmp_path):
    config = ContainerConfig("fresh", "sqlite", "3", database=str(tmp_path / "fresh.sqlite"))

    await engine.create_database(config, config.database)

    assert await engine.list_databases(config) == [config.database]
    conn = sqlite3.connect(config.database)
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    conn.close()
    assert (MARKER_TABLE,) not in tables


@pytest.mark.asyncio
async def test_restore_refuses_unsupported_format(engine, tracked, tmp_path):
    dump = write_file(tmp_path / "app.dump", b"PGDMP\x01\x0e\x00")
    with pytest.raises(UnsupportedBackupFormatError):
        await engine.restore(tracked, str(dump))


@pytest.mark.asyncio
async def test_relocate_after_rename(engine, tracked, registry, tmp_path):
    renamed = registry.rename("app", "app2", "sqlite")

    updated = await engine.relocate(renamed, str(tmp_path / "moved" / "app.sqlite"), registry)

    new_path = str((tmp_path / "moved" / "app.sqlite").resolve())
    assert updated.database == new_path
    assert registry.require("app2", "sqlite").database == new_path
    assert engine.file_registry.get("app2").file_path == new_path


@pytest.mark.asyncio
async def test_relocate_without_registry_entry_moves_nothing(engine, tracked, registry, tmp_path):
    engine.file_registry.remove("app")

    with pytest.raises(RegistryEntryNotFoundError):
        await engine.relocate(tracked, str(tmp_path / "moved.sqlite"), registry)

    assert os.path.exists(tracked.database)
    assert not (tmp_path / "moved.sqlite").exists()


@pytest.mark.asyncio
async def test_relocate_rolls_back_when_record_update_fails(engine, tracked, registry, tmp_path, monkeypatch):
    def refuse(name, engine_name, /, **updates):
        raise InvalidOptionError("record is read-only")

    monkeypatch.setattr(registry, "update_config", refuse)

    with pytest.raises(InvalidOptionError):
        await engine.relocate(tracked, str(tmp_path / "moved.sqlite"), registry)

    assert os.path.exists(tracked.database)
    assert not (tmp_path / "moved.sqlite").exists()
    assert engine.file_registry.get("app").file_path == str(Path(tracked.database).resolve())


@pytest.mark.asyncio
async def test_relocate_moves_sidecar_files(engine, tracked, registry, tmp_path):
    write_file(Path(f"{tracked.database}-wal"), b"wal")
    write_file(Path(f"{tracked.database}-shm"), b"shm")

    await engine.relocate(tracked, str(tmp_path / "moved.sqlite"), registry)

    assert (tmp_path / "moved.sqlite-wal").read_bytes() == b"wal"
    assert (tmp_path / "moved.sqlite-shm").read_bytes() == b"shm"
    assert not os.path.exists(f"{tracked.database}-wal")
