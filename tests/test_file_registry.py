import json

import pytest

from conftest import write_file
from spindle.errors import ContainerExistsError, PathAlreadyRegisteredError, RegistryEntryNotFoundError
from spindle.services.file_registry import FileRegistry


@pytest.fixture
def file_registry(context):
    return FileRegistry(context)


def test_add_and_lookup(file_registry, tmp_path):
    db = write_file(tmp_path / "app.sqlite", b"")
    entry = file_registry.add("app", str(db))

    assert entry.file_path == str(db.resolve())
    assert file_registry.get("app").file_path == str(db.resolve())
    assert file_registry.get_by_path(str(db)).name == "app"
    assert file_registry.is_path_registered(str(tmp_path / "." / "app.sqlite"))

    data = json.loads(file_registry.path.read_text())
    assert data["version"] == 1
    assert data["entries"][0]["filePath"] == str(db.resolve())


def test_one_name_per_path(file_registry, tmp_path):
    db = write_file(tmp_path / "app.sqlite", b"")
    file_registry.add("app", str(db))

    with pytest.raises(PathAlreadyRegisteredError):
        file_registry.add("other", str(db))
    with pytest.raises(ContainerExistsError):
        file_registry.add("app", str(tmp_path / "second.sqlite"))


def test_update_path_and_name(file_registry, tmp_path):
    file_registry.add("app", str(tmp_path / "a.sqlite"))
    file_registry.add("other", str(tmp_path / "b.sqlite"))

    updated = file_registry.update("app", file_path=str(tmp_path / "moved.sqlite"), new_name="renamed")
    assert updated.name == "renamed"
    assert file_registry.get("app") is None

    with pytest.raises(PathAlreadyRegisteredError):
        file_registry.update("renamed", file_path=str(tmp_path / "b.sqlite"))
    with pytest.raises(RegistryEntryNotFoundError):
        file_registry.update("ghost", file_path=str(tmp_path / "c.sqlite"))


def test_orphans(file_registry, tmp_path):
    present = write_file(tmp_path / "present.sqlite", b"")
    file_registry.add("present", str(present))
    file_registry.add("gone", str(tmp_path / "gone.sqlite"))

    assert [e.name for e in file_registry.find_orphans()] == ["gone"]
    assert [e.name for e in file_registry.remove_orphans()] == ["gone"]
    assert [e.name for e in file_registry.list()] == ["present"]


def test_corrupted_registry_reads_as_empty(file_registry):
    file_registry.path.write_text("{not json")
    assert file_registry.list() == []


def test_remove_and_verify(file_registry, tmp_path):
    file_registry.add("app", str(tmp_path / "app.sqlite"))
    file_registry.update_verified("app")
    assert file_registry.get("app").last_verified is not None

    assert file_registry.remove("app") is True
    assert file_registry.remove("app") is False
