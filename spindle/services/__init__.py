"""
Spindle Services

Service layer for local database lifecycle management: binary acquisition,
port allocation, container records, engine implementations and backups.
"""

from .engines import get_engine, list_engines
from .binary_manager import BinaryManager
from .port_allocator import PortAllocator
from .container_registry import ContainerRegistry
from .file_registry import FileRegistry
from .start_retry import start_with_retry
from .backup_service import detect_backup_format, perform_backup, perform_restore

__all__ = [
    "get_engine",
    "list_engines",
    "BinaryManager",
    "PortAllocator",
    "ContainerRegistry",
    "FileRegistry",
    "start_with_retry",
    "detect_backup_format",
    "perform_backup",
    "perform_restore",
]
