import json
import threading
import time

import pytest

from spindle.services.json_store import locked, read_json, write_json_atomic


def test_write_is_atomic_and_leaves_no_temp_files(tmp_path):
    path = tmp_path / "records" / "container.json"
    write_json_atomic(path, {"name": "main", "port": 5432})
    write_json_atomic(path, {"name": "main", "port": 5433})

    assert read_json(path) == {"name": "main", "port": 5433}
    assert sorted(p.name for p in path.parent.iterdir()) == ["container.json"]


def test_failed_serialisation_keeps_previous_record(tmp_path):
    path = tmp_path / "container.json"
    write_json_atomic(path, {"port": 5432})

    with pytest.raises(TypeError):
        write_json_atomic(path, {"port": object()})

    assert json.loads(path.read_text()) == {"port": 5432}
    assert [p.name for p in tmp_path.iterdir()] == ["container.json"]


def test_read_json_default_and_corruption(tmp_path):
    assert read_json(tmp_path / "missing.json", default=[]) == []
    (tmp_path / "bad.json").write_text("{")
    with pytest.raises(json.JSONDecodeError):
        read_json(tmp_path / "bad.json")


def test_lock_serialises_read_modify_write(tmp_path):
    path = tmp_path / "counter.json"
    write_json_atomic(path, {"count": 0})

    def bump():
        for _ in range(20):
            with locked(path):
                current = read_json(path)["count"]
                time.sleep(0.001)
                write_json_atomic(path, {"count": current + 1})

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert read_json(path)["count"] == 80
