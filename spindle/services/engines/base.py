"""
Base Engine - Abstract interface for all database engine implementations.

Every engine must subclass BaseEngine and implement all abstract methods.
The engine contract isolates engine-specific logic (binary layout, data
directory init, process lifecycle, database CRUD, backup/restore) from the
registry and orchestration layers, so nothing else branches on engine
identity.

Data classes define the shared container record, lifecycle results and the
option structs accepted at the engine boundary.
"""

import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from pathlib import Path
from typing import Optional

from ...config import SpindleContext
from ...errors import InvalidOptionError, UnsupportedOperationError, BinaryNotFoundError
from ..backup_formats import BackupFormat, RestoreResult, detect_backup_format, get_backup_extension
from ..binary_manager import BinaryManager, BinaryStrategy
from ..json_store import utc_now_iso
from ..progress import ProgressSink

logger = logging.getLogger("spindle")


# =============================================================================
# Data Classes
# =============================================================================

class EngineCategory(str, Enum):
    """Database engine categories"""
    SERVER = "server"
    FILE_BASED = "file_based"


class ContainerStatus(str, Enum):
    """Persisted container status"""
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


# Record keys that differ from the attribute name
RECORD_KEYS = {
    "binary_path": "binaryPath",
    "clone_source": "cloneSource",
}


@dataclass
class ContainerConfig:
    """Persisted record of one managed container."""
    name: str
    engine: str
    version: str
    port: int = 0
    database: str = ""
    databases: list[str] = field(default_factory=list)
    status: ContainerStatus = ContainerStatus.CREATED
    binary_path: Optional[str] = None
    created: str = field(default_factory=utc_now_iso)
    clone_source: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = ContainerStatus(self.status).value
        for attr, key in RECORD_KEYS.items():
            data[key] = data.pop(attr)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ContainerConfig":
        """
        Build a config from a persisted record.

        Older records may lack the databases list; it is rebuilt so that the
        primary database is always tracked. Records written with snake_case
        keys are still accepted. Unknown keys are ignored.
        """
        data = dict(data)
        for attr, key in RECORD_KEYS.items():
            if key in data:
                data[attr] = data.pop(key)
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = ContainerStatus(values.get("status", ContainerStatus.CREATED))
        databases = list(values.get("databases") or [])
        primary = values.get("database")
        if primary and primary not in databases:
            databases.insert(0, primary)
        values["databases"] = databases
        return cls(**values)


@dataclass
class StartResult:
    port: int
    connection_string: str


@dataclass
class StatusResult:
    running: bool
    message: str = ""


@dataclass
class BackupResult:
    path: str
    format: str
    size: int = 0


@dataclass
class DumpResult:
    file_path: str
    stdout: str = ""
    stderr: str = ""
    code: int = 0
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Option Structs
# =============================================================================

class _Options:
    """Mixin giving frozen dataclass option structs a strict constructor."""

    @classmethod
    def from_mapping(cls, values: Optional[dict] = None):
        values = dict(values or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidOptionError(
                f"Unknown {cls.__name__} field(s): {', '.join(unknown)}",
                context={"unknown": unknown, "allowed": sorted(known)},
            )
        return cls(**values)


@dataclass(frozen=True)
class InitOptions(_Options):
    """Options for init_data_dir.

    database: primary database name
    port: port the server will listen on
    superuser: bootstrap superuser
    max_connections: server connection ceiling (server engines)
    path: database file location (file-based engines)
    """
    database: Optional[str] = None
    port: Optional[int] = None
    superuser: Optional[str] = None
    max_connections: Optional[int] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class BackupOptions(_Options):
    """Options for backup. format is "sql" (plain text) or "dump" (native binary)."""
    database: Optional[str] = None
    format: str = "sql"

    def __post_init__(self):
        if self.format not in ("sql", "dump"):
            raise InvalidOptionError(f"Unknown backup format '{self.format}'", context={"format": self.format})


@dataclass(frozen=True)
class RestoreOptions(_Options):
    """Options for restore.

    database: target database (defaults to the container's primary)
    create_database: create the target database before restoring
    drop: drop existing objects before recreating them
    validate_version: refuse dumps made by a newer tool major version
    format: backup format already detected by the caller (detected again
        by the engine when omitted)
    """
    database: Optional[str] = None
    create_database: bool = True
    drop: bool = False
    validate_version: bool = True
    format: Optional[str] = None


# =============================================================================
# Abstract Base Engine
# =============================================================================

class BaseEngine(ABC):
    """
    Abstract base class for database engines.

    Each engine family provides a concrete subclass implementing every
    abstract method below. Shared binary acquisition is delegated to a
    BinaryManager built from the engine's BinaryStrategy.

    Attributes:
        engine_name: Machine-readable engine identifier (e.g. "postgresql").
        display_name: Human-readable name.
        category: EngineCategory value.
        default_port: Preferred listening port (0 for file-based engines).
        port_range: Inclusive range scanned when the default port is busy.
        default_version: Version used when none is requested.
        client_tools: Executables shipped in the binary tree.
        connection_scheme: URI scheme used by get_connection_string.
    """

    engine_name: str = ""
    display_name: str = ""
    category: EngineCategory = EngineCategory.SERVER
    default_port: int = 0
    port_range: tuple[int, int] = (0, 0)
    default_version: str = ""
    client_tools: tuple[str, ...] = ()
    connection_scheme: str = ""
    supports_databases: bool = True
    supports_users: bool = False
    supports_backup: bool = True
    is_file_based: bool = False

    def __init__(self, context: SpindleContext, binary_manager: Optional[BinaryManager] = None):
        self.context = context
        self.binary_manager = binary_manager or BinaryManager(context, self.binary_strategy())

    @classmethod
    @abstractmethod
    def binary_strategy(cls) -> BinaryStrategy:
        """Return the URL/version hooks used to acquire this engine's binaries."""
        ...

    # ---- Binary Resolution ---------------------------------------------------

    def resolve_binary_url(self, version: str, platform: str, arch: str) -> str:
        """Deterministic download URL for (version, platform, arch)."""
        return self.binary_manager.get_download_url(version, platform, arch)

    async def is_binary_installed(self, version: str) -> bool:
        return self.binary_manager.is_installed(version)

    async def ensure_binaries(self, version: str, progress: Optional[ProgressSink] = None) -> Path:
        """Download binaries if they are not installed. Returns the binary root."""
        return await self.binary_manager.ensure_installed(version, progress)

    def get_tool_path(self, config: Optional[ContainerConfig], tool: str, version: Optional[str] = None) -> Path:
        """
        Locate a client tool or server binary.

        Uses the binary path pinned on the container when present, else the
        installed tree for the requested version.
        """
        if config is not None and config.binary_path:
            root = Path(config.binary_path)
        else:
            root = self.binary_manager.get_binary_path(version or (config.version if config else self.default_version))
        executable = f"{tool}.exe" if sys.platform == "win32" else tool
        path = root / "bin" / executable
        if not path.exists():
            raise BinaryNotFoundError(
                f"{tool} not found at {path}",
                suggestion=f"Install {self.engine_name} binaries first",
                context={"tool": tool, "path": str(path)},
            )
        return path

    # ---- Lifecycle -----------------------------------------------------------

    @abstractmethod
    async def init_data_dir(self, name: str, version: str, options: Optional[InitOptions] = None) -> Path:
        """Create the on-disk state needed before the first start."""
        ...

    @abstractmethod
    async def start(self, config: ContainerConfig, progress: Optional[ProgressSink] = None) -> StartResult:
        """Start the engine. Must be idempotent and return only once ready."""
        ...

    @abstractmethod
    async def stop(self, config: ContainerConfig) -> None:
        """Stop gracefully, escalating to a forceful kill. No-op when stopped."""
        ...

    @abstractmethod
    async def status(self, config: ContainerConfig) -> StatusResult:
        """Best-effort liveness check. Never raises for unreachable targets."""
        ...

    # ---- Database Operations -------------------------------------------------

    @abstractmethod
    async def create_database(self, config: ContainerConfig, database: str) -> None:
        ...

    @abstractmethod
    async def drop_database(self, config: ContainerConfig, database: str) -> None:
        ...

    async def list_databases(self, config: ContainerConfig) -> list[str]:
        """Authoritative list of databases held by the engine."""
        raise UnsupportedOperationError(self.engine_name, "listing databases")

    async def get_database_size(self, config: ContainerConfig, database: Optional[str] = None) -> Optional[int]:
        """Size of a database in bytes, None when unknown."""
        return None

    async def run_script(
        self,
        config: ContainerConfig,
        file: Optional[str] = None,
        sql: Optional[str] = None,
        database: Optional[str] = None,
    ) -> str:
        """Execute a SQL file or inline statement. Returns client stdout."""
        raise UnsupportedOperationError(self.engine_name, "running scripts")

    # ---- Backup & Restore ----------------------------------------------------

    @abstractmethod
    async def backup(self, config: ContainerConfig, output_path: str, options: Optional[BackupOptions] = None) -> BackupResult:
        ...

    @abstractmethod
    async def restore(self, config: ContainerConfig, backup_path: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        ...

    def detect_backup_format(self, path: str) -> BackupFormat:
        """Classify a backup artifact. Engines refine the generic detection."""
        return detect_backup_format(path)

    def restore_format(self, backup_path: str, options: RestoreOptions) -> BackupFormat:
        """The format handed in by the caller, or a fresh detection."""
        if options.format and options.format != "unknown":
            return BackupFormat(options.format, options.format)
        return self.detect_backup_format(backup_path)

    @abstractmethod
    async def dump_from_connection_string(self, connection_string: str, output_path: str) -> DumpResult:
        """Pull a backup from a remote instance of the same engine family."""
        ...

    # ---- Utilities -----------------------------------------------------------

    @abstractmethod
    def get_connection_string(self, config: ContainerConfig, database: Optional[str] = None) -> str:
        ...

    def get_backup_file_extension(self, format: str = "sql") -> str:
        return get_backup_extension(self.engine_name, format)

    @classmethod
    def summary(cls) -> dict:
        return {
            "engine": cls.engine_name,
            "display_name": cls.display_name,
            "category": cls.category.value,
            "default_port": cls.default_port,
            "default_version": cls.default_version,
            "supports_databases": cls.supports_databases,
            "supports_users": cls.supports_users,
            "supports_backup": cls.supports_backup,
            "is_file_based": cls.is_file_based,
        }
