# tests/conftest.py
import io
import tarfile
from pathlib import Path

import pytest

from spindle.config import SpindleContext
from spindle.services.container_registry import ContainerRegistry
from spindle.services.port_allocator import PortAllocator


@pytest.fixture
def context(tmp_path):
    """A SpindleContext rooted in a throwaway home directory."""
    ctx = SpindleContext(home=tmp_path / "home", download_timeout=10, verify_timeout=10, command_timeout=10)
    ctx.ensure_directories()
    return ctx


@pytest.fixture
def registry(context):
    return ContainerRegistry(context)


@pytest.fixture
def allocator():
    return PortAllocator()


def build_tar_gz(members: dict[str, bytes], mode: int = 0o755) -> bytes:
    """
    Build a .tar.gz in memory.

    members maps archive paths to contents; a path ending in "/" is a
    directory entry.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name.rstrip("/"))
            if name.endswith("/"):
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
                continue
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def version_script(output: str) -> bytes:
    """A shell script that prints output for any arguments."""
    return f"#!/bin/sh\necho '{output}'\n".encode()


def write_file(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def exit_script(stderr: str, code: int) -> bytes:
    """A shell script that writes stderr and exits with code."""
    return f"#!/bin/sh\necho '{stderr}' >&2\nexit {code}\n".encode()


# pg_ctl stand-in: "running" is a marker file in the data directory and
# every start appends to starts.log.
FAKE_PG_CTL = b"""#!/bin/sh
action="$1"
shift
data=""
while [ $# -gt 0 ]; do
  case "$1" in -D) data="$2"; shift ;; esac
  shift
done
case "$action" in
  start)
    echo started >> "$data/starts.log"
    touch "$data/running"
    ;;
  stop)
    rm -f "$data/running"
    ;;
  status)
    if [ -f "$data/running" ]; then
      echo "pg_ctl: server is running (PID: 4242)"
      exit 0
    fi
    echo "pg_ctl: no server running"
    exit 3
    ;;
esac
exit 0
"""

FAKE_INITDB = b"""#!/bin/sh
data=""
while [ $# -gt 0 ]; do
  case "$1" in -D) data="$2"; shift ;; esac
  shift
done
mkdir -p "$data"
echo 16 > "$data/PG_VERSION"
echo "listen_addresses = 'localhost'" > "$data/postgresql.conf"
echo "#max_connections = 100" >> "$data/postgresql.conf"
"""


def install_fake_postgres(root: Path, pg_restore: bytes = b"#!/bin/sh\nexit 0\n") -> Path:
    """Lay out shell-script PostgreSQL binaries under root/bin."""
    scripts = {
        "postgres": version_script("postgres (PostgreSQL) 16.11"),
        "initdb": FAKE_INITDB,
        "pg_ctl": FAKE_PG_CTL,
        "pg_isready": b"#!/bin/sh\nexit 0\n",
        "pg_restore": pg_restore,
    }
    for name, body in scripts.items():
        write_file(root / "bin" / name, body).chmod(0o755)
    return root
