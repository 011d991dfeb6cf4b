"""
SQLite Engine

File-based engine implementation for SQLite.
SQLite runs in-process and has no server, so start/stop are bookkeeping
only: a container's identity is the database file it points at, tracked in
the file registry. Queries, dumps and restores shell out to the sqlite3 CLI.
"""

import logging
import shutil
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

import httpx

from ...errors import (
    AlreadyExistsError,
    BinaryNotFoundError,
    ContainerExistsError,
    DownloadHTTPError,
    DownloadNetworkError,
    FileNotFoundSpindleError,
    PathAlreadyRegisteredError,
    RegistryEntryNotFoundError,
    UnsupportedBackupFormatError,
)
from ..backup_formats import SQLITE_HEADER, BackupFormat, build_restore_result, detect_backup_format, read_header
from ..binary_manager import BinaryStrategy
from ..file_registry import FileRegistry
from ..filesystem import copy_entry, move_entry, remove_path
from ..process_runner import run_command
from ..progress import ProgressSink, ProgressStage, report
from .base import (
    BackupOptions,
    BackupResult,
    BaseEngine,
    ContainerConfig,
    DumpResult,
    EngineCategory,
    InitOptions,
    RestoreOptions,
    RestoreResult,
    StartResult,
    StatusResult,
)

logger = logging.getLogger("spindle")

VERSION_MAP = {
    "3": "3.51.2",
    "3.51": "3.51.2",
}

MARKER_TABLE = "_spindle_init_marker"
SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")
RESTORE_SUGGESTION = "SQLite restores accept a .sql dump or a SQLite database file"
REMOTE_DOWNLOAD_TIMEOUT = 300.0


def parse_sqlite_version(output: str) -> Optional[str]:
    """Parse "3.51.2 2025-01-08 ..." into "3.51.2"."""
    first = (output or "").strip().split(" ", 1)[0]
    return first if first[:1].isdigit() else None


def is_sqlite_file(path: Path) -> bool:
    """True when path starts with the 16-byte SQLite header."""
    try:
        return read_header(path, len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


def path_from_connection_string(connection_string: str) -> str:
    """Extract a file path from sqlite:///abs, sqlite://rel or a plain path."""
    if connection_string.startswith("sqlite:///"):
        return unquote("/" + connection_string[len("sqlite:///"):].lstrip("/"))
    if connection_string.startswith("sqlite://"):
        return unquote(connection_string[len("sqlite://"):])
    return connection_string


class SQLiteEngine(BaseEngine):
    """SQLite file-based engine."""

    engine_name = "sqlite"
    display_name = "SQLite"
    category = EngineCategory.FILE_BASED
    default_port = 0  # No network port - embedded
    port_range = (0, 0)
    default_version = "3"
    client_tools = ("sqlite3",)
    connection_scheme = "sqlite"
    supports_databases = False  # One database per file
    supports_backup = True
    is_file_based = True

    def __init__(self, context, binary_manager=None, file_registry: Optional[FileRegistry] = None):
        super().__init__(context, binary_manager)
        self.file_registry = file_registry or FileRegistry(context)

    @classmethod
    def binary_strategy(cls) -> BinaryStrategy:
        return BinaryStrategy(
            engine=cls.engine_name,
            primary_binary="sqlite3",
            version_map=VERSION_MAP,
            parse_version=parse_sqlite_version,
            verify_policy="major_minor",
            executables=("sqlite3", "sqldiff", "sqlite3_analyzer", "sqlite3_rsync"),
        )

    def _sqlite3(self, config: Optional[ContainerConfig] = None, version: Optional[str] = None) -> Path:
        """Managed sqlite3 binary, falling back to one on PATH."""
        try:
            return self.get_tool_path(config, "sqlite3", version)
        except BinaryNotFoundError:
            system = shutil.which("sqlite3")
            if system:
                return Path(system)
            raise

    @staticmethod
    def _db_path(config: ContainerConfig) -> Path:
        return Path(config.database).expanduser()

    # ---- Lifecycle -----------------------------------------------------------

    async def init_data_dir(self, name: str, version: str, options: Optional[InitOptions] = None) -> Path:
        """
        Create the database file and register it.

        The path defaults to ./{name}.sqlite, resolved to an absolute path.

        Raises:
            ContainerExistsError: If the file exists or the name is registered
            PathAlreadyRegisteredError: If another container owns the path
        """
        options = options or InitOptions()
        db_path = Path(options.path or f"./{name}.sqlite").expanduser().resolve()

        if db_path.exists() or self.file_registry.exists(name):
            raise ContainerExistsError(name, self.engine_name)
        owner = self.file_registry.get_by_path(str(db_path))
        if owner:
            raise PathAlreadyRegisteredError(str(db_path), owner.name)

        db_path.parent.mkdir(parents=True, exist_ok=True)
        sql = f"CREATE TABLE {MARKER_TABLE}(x); DROP TABLE {MARKER_TABLE};"
        result = await run_command([self._sqlite3(version=version), db_path, sql], timeout=self.context.command_timeout)
        if not result.success:
            remove_path(db_path)
            result.check("Failed to create SQLite database")

        try:
            self.file_registry.add(name, str(db_path))
        except (ContainerExistsError, PathAlreadyRegisteredError):
            remove_path(db_path)
            raise
        logger.info(f"Created SQLite database {db_path} for {name}")
        return db_path

    async def start(self, config: ContainerConfig, progress: Optional[ProgressSink] = None) -> StartResult:
        """Nothing to launch; verify the file is present."""
        db_path = self._db_path(config)
        if not db_path.exists():
            raise FileNotFoundSpindleError(
                f"SQLite database file not found: {db_path}",
                suggestion="The file may have been moved or deleted",
                context={"path": str(db_path)},
            )
        report(progress, ProgressStage.READY, f"SQLite database at {db_path}")
        return StartResult(0, self.get_connection_string(config))

    async def stop(self, config: ContainerConfig) -> None:
        return None

    async def status(self, config: ContainerConfig) -> StatusResult:
        db_path = self._db_path(config)
        if db_path.exists():
            return StatusResult(True, "Database file exists")
        return StatusResult(False, f"Database file not found: {db_path}")

    # ---- Database Operations -------------------------------------------------

    async def create_database(self, config: ContainerConfig, database: str) -> None:
        """
        Materialise the file as a real SQLite database.

        An empty file is not a database until something is written, so a
        marker table is created and dropped in one transaction.
        """
        db_path = self._db_path(config)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        sql = f"BEGIN; CREATE TABLE {MARKER_TABLE}(x); DROP TABLE {MARKER_TABLE}; COMMIT;"
        result = await run_command([self._sqlite3(config), db_path, sql], timeout=self.context.command_timeout)
        result.check(f"Failed to initialise {db_path}")

    async def drop_database(self, config: ContainerConfig, database: str) -> None:
        """Delete the database file and its registry entry."""
        db_path = self._db_path(config)
        for suffix in ("",) + SIDECAR_SUFFIXES:
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)
        self.file_registry.remove(config.name)
        logger.info(f"Deleted SQLite database {db_path}")

    async def list_databases(self, config: ContainerConfig) -> list[str]:
        if is_sqlite_file(self._db_path(config)):
            return [config.database]
        return []

    async def get_database_size(self, config: ContainerConfig, database: Optional[str] = None) -> Optional[int]:
        db_path = self._db_path(config)
        return db_path.stat().st_size if db_path.exists() else None

    async def run_script(
        self,
        config: ContainerConfig,
        file: Optional[str] = None,
        sql: Optional[str] = None,
        database: Optional[str] = None,
    ) -> str:
        if not file and not sql:
            raise ValueError("Either file or sql is required")
        sqlite3 = self._sqlite3(config)
        db_path = self._db_path(config)
        if file:
            result = await run_command([sqlite3, db_path], input_data=Path(file).read_bytes(),
                                       timeout=self.context.command_timeout * 10)
        else:
            result = await run_command([sqlite3, db_path, sql], timeout=self.context.command_timeout * 10)
        return result.check("Script failed").stdout

    # ---- Backup & Restore ----------------------------------------------------

    async def backup(self, config: ContainerConfig, output_path: str, options: Optional[BackupOptions] = None) -> BackupResult:
        """
        sql: pipe .dump into output_path
        dump: byte copy of the database file
        """
        options = options or BackupOptions(format="dump")
        db_path = self._db_path(config)
        if not db_path.exists():
            raise FileNotFoundSpindleError(f"SQLite database file not found: {db_path}", context={"path": str(db_path)})

        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        if options.format == "sql":
            result = await run_command([self._sqlite3(config), db_path, ".dump"], stdout_path=output,
                                       timeout=self.context.command_timeout * 60)
            if not result.success:
                output.unlink(missing_ok=True)
                result.check("sqlite3 .dump failed")
        else:
            shutil.copy2(db_path, output)
        return BackupResult(str(output), options.format, output.stat().st_size)

    def detect_backup_format(self, path: str) -> BackupFormat:
        detected = detect_backup_format(path)
        if detected.format in ("sqlite", "sql"):
            return detected
        return BackupFormat(
            "unknown",
            detected.description,
            suggestion=RESTORE_SUGGESTION,
        )

    async def restore(self, config: ContainerConfig, backup_path: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        """Feed a SQL dump to sqlite3, or copy a database file into place."""
        detected = self.restore_format(backup_path, options or RestoreOptions())
        db_path = self._db_path(config)

        if detected.format == "sqlite":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(backup_path, db_path)
            return build_restore_result("sqlite", 0)

        if detected.format == "sql":
            result = await run_command(
                [self._sqlite3(config), db_path],
                input_data=Path(backup_path).read_bytes(),
                timeout=self.context.command_timeout * 60,
            )
            return build_restore_result("sql", result.returncode, result.stdout, result.stderr)

        raise UnsupportedBackupFormatError(
            self.engine_name, backup_path, detected.format, detected.description,
            suggestion=detected.suggestion or RESTORE_SUGGESTION,
        )

    async def dump_from_connection_string(self, connection_string: str, output_path: str) -> DumpResult:
        """
        Copy a SQLite database from a URL, sqlite:// URI or path.

        Remote http(s) sources are downloaded first. The source must carry
        the SQLite header.
        """
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)

        if connection_string.startswith(("http://", "https://")):
            tmp_path = output.with_name(output.name + ".download")
            try:
                await self._download(connection_string, tmp_path)
                if not is_sqlite_file(tmp_path):
                    raise FileNotFoundSpindleError(
                        f"Downloaded file is not a SQLite database: {connection_string}",
                        context={"url": connection_string},
                    )
                move_entry(tmp_path, output)
            finally:
                tmp_path.unlink(missing_ok=True)
            return DumpResult(str(output))

        source = Path(path_from_connection_string(connection_string)).expanduser()
        if not source.exists():
            raise FileNotFoundSpindleError(f"SQLite database not found: {source}", context={"path": str(source)})
        if not is_sqlite_file(source):
            raise FileNotFoundSpindleError(f"Not a SQLite database: {source}", context={"path": str(source)})
        copy_entry(source, output)
        return DumpResult(str(output))

    async def _download(self, url: str, dest: Path) -> None:
        try:
            async with self.binary_manager.client_factory(httpx.Timeout(REMOTE_DOWNLOAD_TIMEOUT, connect=30.0)) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(dest, "wb") as fh:
                        async for chunk in response.aiter_bytes(chunk_size=64 * 1024):
                            fh.write(chunk)
        except httpx.HTTPStatusError as e:
            raise DownloadHTTPError(e.response.status_code, url) from e
        except httpx.HTTPError as e:
            raise DownloadNetworkError(f"Failed to download {url}: {e}", context={"url": url}) from e

    # ---- Relocation ----------------------------------------------------------

    async def relocate(self, config: ContainerConfig, new_path: str, registry) -> ContainerConfig:
        """
        Move a container's database file and update every record of it.

        A directory target keeps the current file name. Moves across
        filesystems fall back to copy-then-delete. WAL, shared-memory and
        journal sidecars travel with the file. If a registry update fails
        the files are moved back and both records keep the old path.

        Raises:
            FileNotFoundSpindleError: If the current file is missing
            RegistryEntryNotFoundError: If the file registry has no entry for the container
            AlreadyExistsError: If the target file already exists
        """
        source = self._db_path(config).resolve()
        if not source.exists():
            raise FileNotFoundSpindleError(f"SQLite database file not found: {source}", context={"path": str(source)})

        target = Path(new_path).expanduser()
        if target.is_dir() or new_path.endswith(("/", "\\")):
            target = target / source.name
        target = target.resolve()
        if target == source:
            return config
        taken = [p for p in (Path(f"{target}{s}") for s in ("",) + SIDECAR_SUFFIXES) if p.exists()]
        if taken:
            raise AlreadyExistsError(
                f"Target already exists: {taken[0]}",
                suggestion="Choose a different path or remove the existing file",
                context={"path": str(taken[0])},
            )
        if not self.file_registry.exists(config.name):
            raise RegistryEntryNotFoundError(
                f"No file registry entry named '{config.name}'",
                suggestion="Register the file again before moving it",
                context={"name": config.name},
            )
        registry.require(config.name, config.engine)

        moved = self._move_with_sidecars(source, target)
        path_updated = False
        try:
            self.file_registry.update(config.name, file_path=str(target))
            path_updated = True
            updated = registry.update_config(config.name, config.engine, database=str(target))
        except Exception:
            logger.error(f"Relocating {config.name} failed, moving {target} back to {source}")
            if path_updated:
                self.file_registry.update(config.name, file_path=str(source))
            self._move_back(moved)
            raise
        logger.info(f"Relocated {config.name}: {source} -> {target}")
        return updated

    def _move_with_sidecars(self, source: Path, target: Path) -> list[tuple[Path, Path]]:
        """Move the file and any sidecars present. Returns (from, to) pairs."""
        moved = []
        try:
            for suffix in ("",) + SIDECAR_SUFFIXES:
                src = Path(f"{source}{suffix}")
                if suffix and not src.exists():
                    continue
                dest = Path(f"{target}{suffix}")
                move_entry(src, dest)
                moved.append((src, dest))
        except OSError:
            self._move_back(moved)
            raise
        return moved

    @staticmethod
    def _move_back(moved: list[tuple[Path, Path]]) -> None:
        for src, dest in reversed(moved):
            move_entry(dest, src)

    # ---- Utilities -----------------------------------------------------------

    def get_connection_string(self, config: ContainerConfig, database: Optional[str] = None) -> str:
        """Format: sqlite:///absolute/path"""
        path = Path(database or config.database).expanduser()
        resolved = path.resolve() if not path.is_absolute() else path
        posix = resolved.as_posix() if sys.platform != "win32" else str(resolved).replace("\\", "/")
        return f"sqlite:///{posix.lstrip('/')}"
