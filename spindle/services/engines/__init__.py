"""
Engine Registry - Central registry mapping engine names to engine classes.

Usage:
    from .engines import get_engine, list_engines
    engine = get_engine("postgresql", context)
"""

from typing import Optional

from ...config import SpindleContext
from .base import (
    BackupOptions,
    BackupResult,
    BaseEngine,
    ContainerConfig,
    ContainerStatus,
    DumpResult,
    EngineCategory,
    InitOptions,
    RestoreOptions,
    StartResult,
    StatusResult,
)
from .postgresql import PostgreSQLEngine
from .sqlite import SQLiteEngine

# =============================================================================
# Engine Registry
# =============================================================================

_ENGINES: dict[str, type[BaseEngine]] = {
    "postgresql": PostgreSQLEngine,
    "sqlite": SQLiteEngine,
}

_ALIASES = {
    "postgres": "postgresql",
    "pg": "postgresql",
    "sqlite3": "sqlite",
}


def resolve_engine_name(engine_name: str) -> str:
    name = (engine_name or "").strip().lower()
    return _ALIASES.get(name, name)


def get_engine_class(engine_name: str) -> type[BaseEngine]:
    """Get the engine class for a database engine name or alias.

    Raises:
        ValueError: If the engine name is not registered.
    """
    engine_cls = _ENGINES.get(resolve_engine_name(engine_name))
    if engine_cls is None:
        supported = ", ".join(sorted(_ENGINES.keys()))
        raise ValueError(f"Unknown database engine '{engine_name}'. Supported: {supported}")
    return engine_cls


def get_engine(engine_name: str, context: Optional[SpindleContext] = None) -> BaseEngine:
    """Build an engine bound to a context (the environment's by default).

    Raises:
        ValueError: If the engine name is not registered.
    """
    return get_engine_class(engine_name)(context or SpindleContext.from_env())


def list_engine_classes() -> dict[str, type[BaseEngine]]:
    """Return all registered engine classes."""
    return dict(_ENGINES)


def list_engines() -> list[dict]:
    """Return summary info for all supported engines."""
    return [engine_cls.summary() for _, engine_cls in sorted(_ENGINES.items())]


__all__ = [
    "BackupOptions",
    "BackupResult",
    "BaseEngine",
    "ContainerConfig",
    "ContainerStatus",
    "DumpResult",
    "EngineCategory",
    "InitOptions",
    "PostgreSQLEngine",
    "RestoreOptions",
    "SQLiteEngine",
    "StartResult",
    "StatusResult",
    "get_engine",
    "get_engine_class",
    "list_engine_classes",
    "list_engines",
    "resolve_engine_name",
]
