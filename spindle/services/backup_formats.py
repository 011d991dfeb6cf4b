"""
Backup format catalogue and detection.

Classifies backup artifacts from header bytes, extension and content
heuristics without reading whole files, and defines the RestoreResult shape
every engine returns.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import FileNotFoundSpindleError

logger = logging.getLogger("spindle")

HEADER_BYTES = 4096
MAX_WARNINGS = 10

# =============================================================================
# Size Thresholds
# =============================================================================

LARGE_BACKUP_THRESHOLD = 100 * 1024 * 1024
VERY_LARGE_BACKUP_THRESHOLD = 1024 * 1024 * 1024

# =============================================================================
# Per-Engine Backup Formats
# =============================================================================

BACKUP_FORMATS: dict[str, dict] = {
    "postgresql": {
        "sql": {"extension": ".sql", "description": "Plain SQL - human-readable, larger file"},
        "dump": {"extension": ".dump", "description": "Custom format - smaller, faster restore"},
        "default": "sql",
    },
    "mysql": {
        "sql": {"extension": ".sql", "description": "Plain SQL - human-readable"},
        "dump": {"extension": ".sql.gz", "description": "Compressed SQL - smaller file"},
        "default": "sql",
    },
    "sqlite": {
        "sql": {"extension": ".sql", "description": "SQL dump - human-readable, portable"},
        "dump": {"extension": ".sqlite", "description": "Binary copy - exact database file"},
        "default": "dump",
    },
    "duckdb": {
        "sql": {"extension": ".sql", "description": "SQL dump - human-readable, portable"},
        "dump": {"extension": ".duckdb", "description": "Binary copy - exact database file"},
        "default": "dump",
    },
    "mongodb": {
        "sql": {"extension": "", "description": "Directory dump - BSON files per collection"},
        "dump": {"extension": ".archive", "description": "Archive - single compressed file"},
        "default": "dump",
    },
    "redis": {
        "sql": {"extension": ".redis", "description": "Text commands - human-readable"},
        "dump": {"extension": ".rdb", "description": "RDB snapshot - binary"},
        "default": "dump",
    },
}


def get_backup_extension(engine: str, format: str) -> str:
    """
    File extension for an engine's backup format.

    Raises:
        ValueError: For engines or formats without a known extension
    """
    formats = BACKUP_FORMATS.get(engine)
    if formats is None:
        supported = ", ".join(sorted(BACKUP_FORMATS))
        raise ValueError(f"No backup formats for engine '{engine}'. Supported: {supported}")
    if format not in ("sql", "dump"):
        raise ValueError(f"Unknown backup format '{format}'")
    return formats[format]["extension"]


def get_default_backup_format(engine: str) -> str:
    return BACKUP_FORMATS.get(engine, {}).get("default", "sql")


def generate_backup_filename(container: str, database: str, now: Optional[datetime] = None) -> str:
    """Default backup name: {container}-{database}-backup-{YYYY-MM-DDTHHMMSS}."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime("%Y-%m-%dT%H%M%S")
    return f"{container}-{database}-backup-{timestamp}"


def classify_backup_size(size: int) -> str:
    """Return "normal", "large" or "very_large"."""
    if size >= VERY_LARGE_BACKUP_THRESHOLD:
        return "very_large"
    if size >= LARGE_BACKUP_THRESHOLD:
        return "large"
    return "normal"


# =============================================================================
# Format Detection
# =============================================================================

@dataclass
class BackupFormat:
    """Advisory classification of a backup artifact."""
    format: str
    description: str
    restore_command: str = ""
    suggestion: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "format": self.format,
            "description": self.description,
            "restore_command": self.restore_command,
            "suggestion": self.suggestion,
        }


# (marker, format, description, restore command); first match wins
DIRECTORY_MARKERS = [
    ("toc.dat", "directory", "pg_dump directory-format archive", "pg_restore"),
    ("*.bson", "bson_directory", "BSON directory dump", "mongorestore"),
    ("*/*.bson", "bson_directory", "BSON directory dump", "mongorestore"),
    ("PG_VERSION", "data_directory", "PostgreSQL data directory (physical copy)", "copy"),
]

EXTENSION_FORMATS = {
    ".sql": ("sql", "SQL text dump", "psql / sqlite3"),
    ".dump": ("custom", "pg_dump custom-format archive", "pg_restore"),
    ".sqlite": ("sqlite", "SQLite database file", "copy"),
    ".sqlite3": ("sqlite", "SQLite database file", "copy"),
    ".db": ("sqlite", "SQLite database file", "copy"),
    ".tar": ("tar", "tar archive", "pg_restore"),
    ".gz": ("compressed", "gzip-compressed backup", "gunzip"),
    ".tgz": ("compressed", "gzip-compressed backup", "gunzip"),
    ".zip": ("zip", "zip archive", "unzip"),
    ".rdb": ("rdb", "Redis RDB snapshot", "copy"),
    ".redis": ("redis_commands", "Redis command text", "redis-cli"),
    ".archive": ("mongo_archive", "mongodump archive", "mongorestore"),
    ".json": ("json", "JSON export", ""),
}

SQLITE_HEADER = b"SQLite format 3\x00"

SQL_KEYWORDS = (
    "--", "/*", "set ", "create ", "drop ", "begin", "insert ", "pragma ", "alter ", "pg_dump",
)

UNKNOWN_SUGGESTION = (
    "Could not recognise this backup. Use a .sql text dump or a native dump "
    "produced by the engine's own backup tool."
)


def read_header(path: Path, size: int = HEADER_BYTES) -> bytes:
    """Read at most size bytes from the start of a file."""
    with open(path, "rb") as f:
        return f.read(size)


def _detect_directory(path: Path) -> BackupFormat:
    for marker, fmt, description, command in DIRECTORY_MARKERS:
        if "*" in marker:
            found = next(path.glob(marker), None) is not None
        else:
            found = (path / marker).exists()
        if found:
            return BackupFormat(fmt, description, command)
    return BackupFormat(
        "unknown",
        "Directory without recognisable backup contents",
        suggestion="Point at a directory produced by a dump tool (e.g. pg_dump -Fd or mongodump)",
    )


def _detect_magic(header: bytes) -> Optional[BackupFormat]:
    if header[:2] == b"\x1f\x8b":
        return BackupFormat("compressed", "gzip-compressed backup", "gunzip")
    if header.startswith(SQLITE_HEADER):
        return BackupFormat("sqlite", "SQLite database file", "copy")
    if header.startswith(b"PGDMP"):
        return BackupFormat("custom", "pg_dump custom-format archive", "pg_restore")
    if len(header) >= 262 and header[257:262] == b"ustar":
        return BackupFormat("tar", "tar archive", "pg_restore")
    if header.startswith(b"REDIS"):
        return BackupFormat("rdb", "Redis RDB snapshot", "copy")
    if header.startswith(b"PK\x03\x04"):
        return BackupFormat("zip", "zip archive", "unzip")
    return None


def _detect_extension(path: Path) -> Optional[BackupFormat]:
    name = path.name.lower()
    if name.endswith(".sql.gz"):
        return BackupFormat("compressed", "gzip-compressed SQL dump", "gunzip")
    entry = EXTENSION_FORMATS.get(path.suffix.lower())
    if entry is None:
        return None
    return BackupFormat(*entry)


def _detect_text(header: bytes) -> Optional[BackupFormat]:
    try:
        text = header.decode("utf-8")
    except UnicodeDecodeError:
        return None
    stripped = text.lstrip()
    lowered = stripped.lower()
    if stripped.startswith(("-- MySQL dump", "-- MariaDB dump")):
        return BackupFormat("mysql_sql", "MySQL/MariaDB SQL dump", "mysql")
    if lowered.startswith(SQL_KEYWORDS):
        return BackupFormat("sql", "SQL text dump", "psql / sqlite3")
    if stripped.startswith(("{", "[")):
        return BackupFormat("json", "JSON export")
    first_word = lowered.split(None, 1)[0] if lowered else ""
    if first_word in ("set", "hset", "sadd", "rpush", "zadd", "lpush"):
        return BackupFormat("redis_commands", "Redis command text", "redis-cli")
    return None


def detect_backup_format(path) -> BackupFormat:
    """
    Classify a backup artifact.

    Directories are matched by known sub-paths. For files, unambiguous magic
    signatures win over the extension, the extension wins over text
    heuristics, and anything left is "unknown" with a remediation hint.
    Only the first few KB of a file are read.

    Raises:
        FileNotFoundSpindleError: If path does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundSpindleError(f"Backup not found: {path}", context={"path": str(path)})
    if path.is_dir():
        return _detect_directory(path)

    header = read_header(path)
    detected = _detect_magic(header) or _detect_extension(path) or _detect_text(header)
    if detected:
        return detected
    return BackupFormat("unknown", "Unrecognised backup format", suggestion=UNKNOWN_SUGGESTION)


# =============================================================================
# Restore Outcome Handling
# =============================================================================

@dataclass
class RestoreResult:
    """Uniform restore outcome across engines."""
    format: str
    stdout: str = ""
    stderr: str = ""
    code: int = 0
    warnings: list[str] = field(default_factory=list)
    soft_success: bool = False  # non-zero exit that still produced a usable import

    @property
    def success(self) -> bool:
        return self.code == 0 or self.soft_success


SOFT_SUCCESS_PHRASES = (
    "errors ignored on restore",
    "completed with warnings",
    "warning:",
)


def is_soft_success(code: int, stderr: str) -> bool:
    """A non-zero exit whose output says the restore finished with warnings."""
    if code == 0:
        return False
    lowered = (stderr or "").lower()
    return any(phrase in lowered for phrase in SOFT_SUCCESS_PHRASES)


def collect_warnings(stderr: str, limit: int = MAX_WARNINGS) -> list[str]:
    lines = [line.strip() for line in (stderr or "").splitlines() if line.strip()]
    return lines[:limit]


def build_restore_result(format: str, code: int, stdout: str = "", stderr: str = "") -> RestoreResult:
    """Uniform RestoreResult, flagging soft successes and collecting warnings."""
    soft = is_soft_success(code, stderr)
    return RestoreResult(
        format=format,
        stdout=stdout,
        stderr=stderr,
        code=code,
        warnings=collect_warnings(stderr) if code != 0 else [],
        soft_success=soft,
    )


