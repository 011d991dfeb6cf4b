"""
PostgreSQL Engine

Server engine implementation for PostgreSQL.
Manages a local cluster per container via initdb/pg_ctl and shells out to
psql, pg_dump and pg_restore for database operations and backup/restore.
"""

import asyncio
import logging
import os
import re
import signal
import time
from pathlib import Path
from typing import Optional

from ...errors import (
    BinaryNotFoundError,
    ContainerExistsError,
    FileNotFoundSpindleError,
    PortInUseError,
    ProcessError,
    UnsupportedBackupFormatError,
    VersionIncompatibleError,
    WrongEngineDumpError,
)
from ..backup_formats import BackupFormat, build_restore_result, read_header
from ..binary_manager import BinaryStrategy
from ..filesystem import remove_path
from ..port_allocator import PortAllocator
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
    "14": "14.20.0",
    "15": "15.15.0",
    "16": "16.11.0",
    "17": "17.7.0",
    "18": "18.1.0",
}

READY_TIMEOUT = 30.0
READY_POLL_INTERVAL = 0.5
PG_CTL_TIMEOUT = 30

# Restore strategy per format; anything else is refused
PG_RESTORE_FLAGS = {
    "custom": "-Fc",
    "tar": "-Ft",
    "directory": "-Fd",
}

RESTORE_SUGGESTIONS = {
    "compressed": "Decompress the file first (gunzip) and restore the dump inside",
    "unknown": "Provide a .sql file or a pg_dump archive (-Fc, -Ft or -Fd)",
}

# Server log phrasing for a failed bind
BIND_FAILURE_PATTERNS = (
    "could not bind",
    "address already in use",
    "is another postmaster already running on port",
)


def parse_postgres_version(output: str) -> Optional[str]:
    """Parse "postgres (PostgreSQL) 16.11" into "16.11"."""
    match = re.search(r"(\d+)\.(\d+)", output or "")
    return f"{match.group(1)}.{match.group(2)}" if match else None


def set_max_connections(conf_text: str, max_connections: int) -> str:
    """Set max_connections in postgresql.conf contents, appending if absent."""
    pattern = re.compile(r"^#?\s*max_connections\s*=.*$", re.MULTILINE)
    line = f"max_connections = {max_connections}"
    if pattern.search(conf_text):
        return pattern.sub(line, conf_text, count=1)
    suffix = "" if conf_text.endswith("\n") or not conf_text else "\n"
    return f"{conf_text}{suffix}{line}\n"


def quote_ident(name: str) -> str:
    """Quote a SQL identifier, doubling embedded double quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def detect_postgres_format(header: bytes) -> BackupFormat:
    """Classify a PostgreSQL restore input from its first 128+ bytes."""
    text = header[:128].decode("utf-8", errors="ignore")
    stripped = text.lstrip()
    if stripped.startswith(("-- MySQL dump", "-- MariaDB dump")):
        return BackupFormat("mysql_sql", "MySQL/MariaDB SQL dump", "mysql")
    if header.startswith(b"PGDMP"):
        return BackupFormat("custom", "pg_dump custom format", "pg_restore -Fc")
    if len(header) >= 262 and header[257:262] == b"ustar":
        return BackupFormat("tar", "pg_dump tar format", "pg_restore -Ft")
    if header[:2] == b"\x1f\x8b":
        return BackupFormat("compressed", "gzip-compressed dump", "gunzip | psql")
    lowered = stripped.lower()
    if lowered.startswith(("--", "/*", "set ", "create ", "drop ", "begin", "pg_dump")):
        return BackupFormat("sql", "Plain SQL dump", "psql -f")
    return BackupFormat(
        "unknown",
        "Unrecognised PostgreSQL backup",
        suggestion=RESTORE_SUGGESTIONS["unknown"],
    )


def parse_dump_tool_major(header: bytes) -> Optional[int]:
    """Major version of pg_dump that wrote a dump, when recorded in its header."""
    text = header.decode("latin-1")
    match = re.search(r"Dumped by pg_dump version (\d+)", text)
    return int(match.group(1)) if match else None


class PostgreSQLEngine(BaseEngine):
    """PostgreSQL server engine."""

    engine_name = "postgresql"
    display_name = "PostgreSQL"
    category = EngineCategory.SERVER
    default_port = 5432
    port_range = (5432, 5500)
    default_version = "18"
    client_tools = ("psql", "pg_dump", "pg_restore", "pg_isready", "pg_basebackup")
    connection_scheme = "postgresql"
    supports_databases = True
    supports_backup = True
    is_file_based = False

    superuser = "postgres"
    data_subdir = "data"
    log_file = "postgres.log"
    pid_file = "postmaster.pid"
    max_connections = 200

    @classmethod
    def binary_strategy(cls) -> BinaryStrategy:
        return BinaryStrategy(
            engine=cls.engine_name,
            primary_binary="postgres",
            version_map=VERSION_MAP,
            parse_version=parse_postgres_version,
            verify_policy="major",
            executables=("postgres", "pg_ctl", "initdb") + cls.client_tools,
        )

    # ---- Paths ---------------------------------------------------------------

    def container_path(self, name: str) -> Path:
        return self.context.container_dir(self.engine_name, name)

    def data_path(self, name: str) -> Path:
        return self.container_path(name) / self.data_subdir

    def log_path(self, name: str) -> Path:
        return self.container_path(name) / self.log_file

    # ---- Lifecycle -----------------------------------------------------------

    async def init_data_dir(self, name: str, version: str, options: Optional[InitOptions] = None) -> Path:
        """
        Run initdb for a container's cluster.

        Raises:
            ContainerExistsError: If the data directory already holds a cluster
            ProcessError: If initdb fails (the data dir is removed if it was new)
        """
        options = options or InitOptions()
        data_dir = self.data_path(name)
        if (data_dir / "PG_VERSION").exists():
            raise ContainerExistsError(name, self.engine_name)

        await self.ensure_binaries(version)
        existed = data_dir.exists()
        data_dir.parent.mkdir(parents=True, exist_ok=True)
        initdb = self.get_tool_path(None, "initdb", version)

        result = await run_command([
            initdb,
            "-D", data_dir,
            "-U", options.superuser or self.superuser,
            "--auth=trust",
            "--encoding=UTF8",
            "--no-locale",
        ], timeout=self.context.command_timeout * 2)

        if not result.success:
            if not existed:
                remove_path(data_dir)
            result.check("initdb failed")

        conf = data_dir / "postgresql.conf"
        if conf.exists():
            conf.write_text(set_max_connections(conf.read_text(), options.max_connections or self.max_connections))
        logger.info(f"Initialized PostgreSQL data directory for {name}")
        return data_dir

    async def start(self, config: ContainerConfig, progress: Optional[ProgressSink] = None) -> StartResult:
        """
        Start the server with pg_ctl and wait until it accepts connections.

        Raises:
            PortInUseError: The port is taken (probed up front, or reported by
                the server log after a failed start)
            ProcessError: Any other start failure
        """
        current = await self.status(config)
        if current.running:
            logger.debug(f"{config.name} already running on port {config.port}")
            return StartResult(config.port, self.get_connection_string(config))

        if not PortAllocator().is_available(config.port):
            raise PortInUseError(config.port)

        report(progress, ProgressStage.STARTING, f"Starting PostgreSQL on port {config.port}")
        log_path = self.log_path(config.name)
        log_offset = log_path.stat().st_size if log_path.exists() else 0

        result = await run_command([
            self.get_tool_path(config, "pg_ctl"),
            "start",
            "-D", self.data_path(config.name),
            "-l", log_path,
            "-w",
            "-t", str(PG_CTL_TIMEOUT),
            "-o", f"-p {config.port}",
        ], timeout=PG_CTL_TIMEOUT + 15)

        if not result.success:
            log_tail = self._read_log_since(log_path, log_offset)
            combined = f"{result.stderr}\n{log_tail}".lower()
            if any(p in combined for p in BIND_FAILURE_PATTERNS):
                raise PortInUseError(config.port, "server could not bind")
            raise ProcessError(result.command_line, result.returncode, result.stderr or log_tail,
                               message=f"PostgreSQL failed to start: {(result.stderr or log_tail)[-500:]}")

        await self._wait_until_ready(config)
        report(progress, ProgressStage.READY, f"PostgreSQL ready on port {config.port}")
        logger.info(f"Started {config.name} on port {config.port}")
        return StartResult(config.port, self.get_connection_string(config))

    @staticmethod
    def _read_log_since(log_path: Path, offset: int) -> str:
        if not log_path.exists():
            return ""
        with open(log_path, "rb") as f:
            f.seek(offset)
            return f.read(16384).decode(errors="replace")

    async def _wait_until_ready(self, config: ContainerConfig) -> None:
        """Poll pg_isready at a fixed interval until the server accepts connections."""
        try:
            pg_isready = self.get_tool_path(config, "pg_isready")
        except BinaryNotFoundError:
            # pg_ctl -w already waited for the postmaster
            return

        deadline = time.monotonic() + READY_TIMEOUT
        while time.monotonic() < deadline:
            result = await run_command(
                [pg_isready, "-h", "127.0.0.1", "-p", str(config.port)],
                timeout=5.0,
            )
            if result.success:
                return
            await asyncio.sleep(READY_POLL_INTERVAL)
        raise ProcessError("pg_isready", -1, message=f"PostgreSQL on port {config.port} not ready after {READY_TIMEOUT:.0f}s")

    async def stop(self, config: ContainerConfig) -> None:
        """Fast shutdown, escalating to immediate and then SIGKILL."""
        if not (await self.status(config)).running:
            logger.debug(f"{config.name} is not running")
            return

        pg_ctl = self.get_tool_path(config, "pg_ctl")
        data_dir = self.data_path(config.name)
        for mode in ("fast", "immediate"):
            result = await run_command(
                [pg_ctl, "stop", "-D", data_dir, "-m", mode, "-w", "-t", str(PG_CTL_TIMEOUT)],
                timeout=PG_CTL_TIMEOUT + 15,
            )
            if result.success or not (await self.status(config)).running:
                logger.info(f"Stopped {config.name} ({mode})")
                return
            logger.warning(f"pg_ctl stop -m {mode} failed for {config.name}: {result.stderr}")

        pid = self._read_postmaster_pid(data_dir)
        if pid:
            logger.warning(f"Killing postmaster {pid} for {config.name}")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            (data_dir / self.pid_file).unlink(missing_ok=True)

    def _read_postmaster_pid(self, data_dir: Path) -> Optional[int]:
        pid_file = data_dir / self.pid_file
        try:
            return int(pid_file.read_text().splitlines()[0].strip())
        except (OSError, ValueError, IndexError):
            return None

    async def status(self, config: ContainerConfig) -> StatusResult:
        data_dir = self.data_path(config.name)
        if not data_dir.exists():
            return StatusResult(False, "Data directory not found")
        try:
            pg_ctl = self.get_tool_path(config, "pg_ctl")
        except BinaryNotFoundError as e:
            return StatusResult(False, e.message)
        result = await run_command([pg_ctl, "status", "-D", data_dir], timeout=10.0)
        if result.success:
            return StatusResult(True, result.stdout.splitlines()[0] if result.stdout else "running")
        return StatusResult(False, "Server is not running")

    # ---- Database Operations -------------------------------------------------

    def _psql_base(self, config: ContainerConfig, database: str = "postgres") -> list:
        return [
            self.get_tool_path(config, "psql"),
            "-h", "127.0.0.1",
            "-p", str(config.port),
            "-U", self.superuser,
            "-d", database,
        ]

    async def _psql(self, config: ContainerConfig, sql: str, database: str = "postgres", tuples_only: bool = False):
        cmd = self._psql_base(config, database)
        if tuples_only:
            cmd += ["-t", "-A"]
        return await run_command(cmd + ["-c", sql], timeout=self.context.command_timeout)

    async def create_database(self, config: ContainerConfig, database: str) -> None:
        result = await self._psql(config, f"CREATE DATABASE {quote_ident(database)}")
        if not result.success and "already exists" not in result.stderr:
            result.check(f"Failed to create database '{database}'")

    async def drop_database(self, config: ContainerConfig, database: str) -> None:
        result = await self._psql(config, f"DROP DATABASE IF EXISTS {quote_ident(database)}")
        if not result.success and "does not exist" not in result.stderr:
            result.check(f"Failed to drop database '{database}'")

    async def list_databases(self, config: ContainerConfig) -> list[str]:
        result = await self._psql(
            config,
            "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname",
            tuples_only=True,
        )
        result.check("Failed to list databases")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def get_database_size(self, config: ContainerConfig, database: Optional[str] = None) -> Optional[int]:
        database = database or config.database
        result = await self._psql(config, f"SELECT pg_database_size({quote_literal(database)})", tuples_only=True)
        if not result.success:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None

    async def run_script(
        self,
        config: ContainerConfig,
        file: Optional[str] = None,
        sql: Optional[str] = None,
        database: Optional[str] = None,
    ) -> str:
        if not file and not sql:
            raise ValueError("Either file or sql is required")
        cmd = self._psql_base(config, database or config.database)
        cmd += ["-f", file] if file else ["-c", sql]
        result = await run_command(cmd, timeout=self.context.command_timeout * 10)
        return result.check("Script failed").stdout

    # ---- Backup & Restore ----------------------------------------------------

    async def backup(self, config: ContainerConfig, output_path: str, options: Optional[BackupOptions] = None) -> BackupResult:
        options = options or BackupOptions()
        database = options.database or config.database
        fmt_flag = "-Fc" if options.format == "dump" else "-Fp"
        result = await run_command([
            self.get_tool_path(config, "pg_dump"),
            "-h", "127.0.0.1",
            "-p", str(config.port),
            "-U", self.superuser,
            fmt_flag,
            "-f", output_path,
            database,
        ], timeout=self.context.command_timeout * 60)
        result.check(f"pg_dump of '{database}' failed")
        return BackupResult(output_path, options.format, Path(output_path).stat().st_size)

    def detect_backup_format(self, path: str) -> BackupFormat:
        target = Path(path)
        if not target.exists():
            raise FileNotFoundSpindleError(f"Backup not found: {path}", context={"path": path})
        if target.is_dir():
            if (target / "toc.dat").exists():
                return BackupFormat("directory", "pg_dump directory format", "pg_restore -Fd")
            return BackupFormat("unknown", "Directory is not a pg_dump archive",
                                suggestion="Use pg_dump -Fd output or a single dump file")
        return detect_postgres_format(read_header(target, 512))

    async def _validate_dump_version(self, config: ContainerConfig, backup_path: str) -> None:
        if Path(backup_path).is_dir():
            return
        dump_major = parse_dump_tool_major(read_header(Path(backup_path), 8192))
        if dump_major is None:
            logger.debug(f"No pg_dump version recorded in {backup_path}")
            return
        result = await run_command([self.get_tool_path(config, "pg_restore"), "--version"], timeout=10.0)
        local = parse_postgres_version(result.stdout)
        if local and dump_major > int(local.split(".")[0]):
            raise VersionIncompatibleError(
                f"Backup was made by pg_dump {dump_major}, newer than local PostgreSQL {local}",
                suggestion=f"Create a container with PostgreSQL {dump_major} to restore this backup",
                context={"dump_major": dump_major, "local_version": local},
            )

    async def restore(self, config: ContainerConfig, backup_path: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        """
        Restore a SQL file or pg_dump archive.

        Raises:
            WrongEngineDumpError: For MySQL/MariaDB dumps
            UnsupportedBackupFormatError: For compressed or unrecognised input
            VersionIncompatibleError: For dumps from a newer pg_dump
        """
        options = options or RestoreOptions()
        database = options.database or config.database
        detected = self.restore_format(backup_path, options)

        if detected.format == "mysql_sql":
            raise WrongEngineDumpError(
                "This is a MySQL/MariaDB dump and cannot be restored into PostgreSQL",
                suggestion="Create a MySQL container to restore it",
                context={"path": backup_path},
            )
        if detected.format != "sql" and detected.format not in PG_RESTORE_FLAGS:
            raise UnsupportedBackupFormatError(
                self.engine_name, backup_path, detected.format, detected.description,
                suggestion=detected.suggestion or RESTORE_SUGGESTIONS.get(detected.format, RESTORE_SUGGESTIONS["unknown"]),
            )
        if options.validate_version:
            await self._validate_dump_version(config, backup_path)
        if options.create_database:
            await self.create_database(config, database)

        timeout = self.context.command_timeout * 60
        if detected.format == "sql":
            cmd = self._psql_base(config, database) + ["-f", backup_path]
            result = await run_command(cmd, timeout=timeout)
            return build_restore_result(detected.format, result.returncode, result.stdout, result.stderr)

        cmd = [
            self.get_tool_path(config, "pg_restore"),
            "-h", "127.0.0.1",
            "-p", str(config.port),
            "-U", self.superuser,
            "-d", database,
            "--no-owner",
            "--no-privileges",
        ]
        if options.drop:
            cmd += ["--clean", "--if-exists"]
        cmd += [PG_RESTORE_FLAGS[detected.format], backup_path]

        result = await run_command(cmd, timeout=timeout)
        # pg_restore exits 1 with "errors ignored on restore" when the data still loaded
        return build_restore_result(detected.format, result.returncode, result.stdout, result.stderr)

    async def dump_from_connection_string(self, connection_string: str, output_path: str) -> DumpResult:
        """Dump a remote PostgreSQL database in custom format with pg_dump."""
        await self.ensure_binaries(self.default_version)
        pg_dump = self.get_tool_path(None, "pg_dump", self.default_version)
        result = await run_command(
            [pg_dump, connection_string, "-Fc", "-f", output_path],
            timeout=self.context.command_timeout * 60,
        )
        result.check("pg_dump from connection string failed")
        return DumpResult(output_path, result.stdout, result.stderr, result.returncode)

    # ---- Utilities -----------------------------------------------------------

    def get_connection_string(self, config: ContainerConfig, database: Optional[str] = None) -> str:
        """
        Format: postgresql://postgres@127.0.0.1:port/database
        """
        db = database or config.database or "postgres"
        return f"postgresql://{self.superuser}@127.0.0.1:{config.port}/{db}"
