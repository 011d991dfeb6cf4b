"""
Container Registry for Spindle Services

Sole writer of persisted container state. One JSON record per container at
containers/{engine}/{name}/container.json; engines receive copies and route
every persistent change back through this registry.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import fields
from pathlib import Path
from typing import Optional

from .. import CONTAINER_FILE_NAME, CONTAINER_NAME_PATTERN
from ..config import SpindleContext
from ..errors import (
    AlreadyExistsError,
    ContainerExistsError,
    ContainerNotFoundError,
    ContainerRunningError,
    InvalidNameError,
    InvalidOptionError,
)
from .engines import get_engine_class
from .engines.base import ContainerConfig, ContainerStatus
from .file_registry import FileRegistry
from .filesystem import copy_entry, move_entry, remove_path
from .json_store import locked, read_json, write_json_atomic

logger = logging.getLogger("spindle")

NAME_RE = re.compile(CONTAINER_NAME_PATTERN)

# Fields update_config may change; name and engine are identity.
UPDATABLE_FIELDS = {f.name for f in fields(ContainerConfig)} - {"name", "engine"}


def validate_name(name: str) -> None:
    """
    Validate a container name.

    Raises:
        InvalidNameError: Unless the name starts with a letter and contains
            only letters, digits, hyphens and underscores
    """
    if not name or not NAME_RE.match(name):
        raise InvalidNameError(
            f"Invalid container name '{name}'",
            suggestion="Names must start with a letter and contain only letters, digits, hyphens and underscores",
            context={"name": name},
        )


class ContainerRegistry:
    """CRUD and identity operations over persisted container records."""

    def __init__(self, context: SpindleContext, file_registry: Optional[FileRegistry] = None):
        self.context = context
        self.file_registry = file_registry or FileRegistry(context)

    # ---- Paths ---------------------------------------------------------------

    def get_container_path(self, name: str, engine: str) -> Path:
        return self.context.container_dir(engine, name)

    def get_config_path(self, name: str, engine: str) -> Path:
        return self.get_container_path(name, engine) / CONTAINER_FILE_NAME

    def get_data_path(self, name: str, engine: str) -> Path:
        return self.get_container_path(name, engine) / "data"

    def _engines_on_disk(self) -> list[str]:
        if not self.context.containers_dir.exists():
            return []
        return sorted(p.name for p in self.context.containers_dir.iterdir() if p.is_dir())

    # ---- Read ----------------------------------------------------------------

    def _read(self, path: Path) -> Optional[ContainerConfig]:
        try:
            data = read_json(path)
        except json.JSONDecodeError as e:
            logger.error(f"Container record {path} is unreadable: {e}")
            return None
        if not isinstance(data, dict):
            return None
        return ContainerConfig.from_dict(data)

    def get_config(self, name: str, engine: Optional[str] = None) -> Optional[ContainerConfig]:
        """
        Load a container record.

        When engine is None every engine namespace is searched and the first
        match is returned.
        """
        engines = [engine] if engine else self._engines_on_disk()
        for candidate in engines:
            path = self.get_config_path(name, candidate)
            if path.exists():
                return self._read(path)
        return None

    def require(self, name: str, engine: Optional[str] = None) -> ContainerConfig:
        config = self.get_config(name, engine)
        if config is None:
            raise ContainerNotFoundError(name, engine)
        return config

    def exists(self, name: str, engine: Optional[str] = None) -> bool:
        return self.get_config(name, engine) is not None

    def list(self, engine: Optional[str] = None) -> list[ContainerConfig]:
        configs = []
        for candidate in ([engine] if engine else self._engines_on_disk()):
            engine_dir = self.context.engine_containers_dir(candidate)
            if not engine_dir.exists():
                continue
            for container_dir in sorted(engine_dir.iterdir()):
                path = container_dir / CONTAINER_FILE_NAME
                if path.exists():
                    config = self._read(path)
                    if config is not None:
                        configs.append(config)
        return configs

    # ---- Write ---------------------------------------------------------------

    def _write(self, config: ContainerConfig) -> None:
        write_json_atomic(self.get_config_path(config.name, config.engine), config.to_dict())

    def create(
        self,
        name: str,
        engine: str,
        version: str,
        port: int = 0,
        database: str = "",
        binary_path: Optional[str] = None,
    ) -> ContainerConfig:
        """
        Create and persist a new container record with status "created".

        Raises:
            InvalidNameError: If name is malformed
            ContainerExistsError: If the name is taken within the engine
        """
        validate_name(name)
        config_path = self.get_config_path(name, engine)
        with locked(config_path):
            if config_path.exists():
                raise ContainerExistsError(name, engine)
            self.get_data_path(name, engine).mkdir(parents=True, exist_ok=True)
            config = ContainerConfig(
                name=name,
                engine=engine,
                version=version,
                port=port,
                database=database,
                databases=[database] if database else [],
                status=ContainerStatus.CREATED,
                binary_path=binary_path,
            )
            self._write(config)
        logger.info(f"Created container {engine}/{name}")
        return config

    def update_config(self, name: str, engine: str, /, **updates) -> ContainerConfig:
        """
        Merge updates into a container record.

        Raises:
            ContainerNotFoundError: If the container does not exist
            InvalidOptionError: For unknown or identity fields
        """
        unknown = sorted(set(updates) - UPDATABLE_FIELDS)
        if unknown:
            raise InvalidOptionError(
                f"Cannot update container field(s): {', '.join(unknown)}",
                context={"fields": unknown},
            )
        config_path = self.get_config_path(name, engine)
        with locked(config_path):
            config = self.require(name, engine)
            for key, value in updates.items():
                if key == "status":
                    value = ContainerStatus(value)
                setattr(config, key, value)
            self._write(config)
        return config

    def set_status(self, name: str, engine: str, status: ContainerStatus) -> ContainerConfig:
        return self.update_config(name, engine, status=status)

    def delete(self, name: str, engine: str, force: bool = False) -> None:
        """
        Remove a container record and its directory.

        Raises:
            ContainerRunningError: If running and force is False
        """
        config = self.require(name, engine)
        if config.status == ContainerStatus.RUNNING and not force:
            raise ContainerRunningError(name, "delete")
        with locked(self.get_config_path(name, engine)):
            remove_path(self.get_container_path(name, engine))
        self.get_config_path(name, engine).with_name(CONTAINER_FILE_NAME + ".lock").unlink(missing_ok=True)
        logger.info(f"Deleted container {engine}/{name}")

    def rename(self, old_name: str, new_name: str, engine: str) -> ContainerConfig:
        """
        Rename a stopped container.

        File-based containers also have their file registry entry renamed.

        Raises:
            ContainerRunningError: If the container is running
            ContainerExistsError: If new_name is taken
        """
        validate_name(new_name)
        config = self.require(old_name, engine)
        if config.status == ContainerStatus.RUNNING:
            raise ContainerRunningError(old_name, "rename")
        if self.exists(new_name, engine):
            raise ContainerExistsError(new_name, engine)

        entry_renamed = False
        if self._is_file_based(engine) and self.file_registry.exists(old_name):
            self.file_registry.update(old_name, new_name=new_name)
            entry_renamed = True

        old_path = self.get_container_path(old_name, engine)
        new_path = self.get_container_path(new_name, engine)
        try:
            remove_path(old_path / (CONTAINER_FILE_NAME + ".lock"))
            move_entry(old_path, new_path)
        except OSError:
            if entry_renamed:
                self.file_registry.update(new_name, new_name=old_name)
            raise

        config.name = new_name
        self._write(config)
        logger.info(f"Renamed container {engine}/{old_name} -> {new_name}")
        return config

    def clone(self, source_name: str, target_name: str, engine: str, port_allocator, port_range: Optional[tuple[int, int]] = None) -> ContainerConfig:
        """
        Copy a stopped container's directory under a new name.

        The clone is assigned a port not held by any running container. For
        file-based engines the database file is copied next to the source
        as {target_name}{suffix} and registered under the new name.

        Raises:
            ContainerRunningError: If the source is running
            ContainerExistsError: If target_name is taken
            AlreadyExistsError: If the cloned database file already exists
        """
        validate_name(target_name)
        source = self.require(source_name, engine)
        if source.status == ContainerStatus.RUNNING:
            raise ContainerRunningError(source_name, "clone")
        if self.exists(target_name, engine):
            raise ContainerExistsError(target_name, engine)

        clone_file = None
        if self._is_file_based(engine) and source.database:
            clone_file = self._clone_file_path(source, target_name)

        target_path = self.get_container_path(target_name, engine)
        copy_entry(self.get_container_path(source_name, engine), target_path)
        remove_path(target_path / (CONTAINER_FILE_NAME + ".lock"))

        clone = ContainerConfig.from_dict(source.to_dict())
        clone.name = target_name
        clone.status = ContainerStatus.STOPPED
        clone.clone_source = source_name
        registered = False
        try:
            if clone_file is not None:
                copy_entry(Path(source.database).expanduser(), clone_file)
                self.file_registry.add(target_name, str(clone_file))
                registered = True
                clone.database = str(clone_file)
                clone.databases = [clone.database]
            if source.port:
                clone.port = port_allocator.find_available_excluding_managed(
                    source.port,
                    port_range or (source.port, source.port + 100),
                    self,
                    extra_exclude=[source.port],
                ).port
            self._write(clone)
        except Exception:
            logger.error(f"Cloning {engine}/{source_name} -> {target_name} failed, removing partial copy")
            remove_path(target_path)
            if registered:
                self.file_registry.remove(target_name)
            if clone_file is not None:
                remove_path(clone_file)
            raise
        logger.info(f"Cloned container {engine}/{source_name} -> {target_name} (port {clone.port})")
        return clone

    def _is_file_based(self, engine: str) -> bool:
        return get_engine_class(engine).is_file_based

    @staticmethod
    def _clone_file_path(source: ContainerConfig, target_name: str) -> Path:
        source_file = Path(source.database).expanduser().resolve()
        clone_file = source_file.with_name(f"{target_name}{source_file.suffix}")
        if clone_file.exists():
            raise AlreadyExistsError(
                f"Clone target already exists: {clone_file}",
                suggestion="Remove the file or choose a different clone name",
                context={"path": str(clone_file)},
            )
        return clone_file

    # ---- Tracked Databases ---------------------------------------------------

    def add_database(self, name: str, engine: str, database: str) -> ContainerConfig:
        """Track a database on the container. Never touches the live server."""
        config_path = self.get_config_path(name, engine)
        with locked(config_path):
            config = self.require(name, engine)
            if database not in config.databases:
                config.databases.append(database)
                self._write(config)
        return config

    def remove_database(self, name: str, engine: str, database: str) -> ContainerConfig:
        """
        Stop tracking a database.

        Raises:
            InvalidOptionError: When asked to untrack the primary database
        """
        config_path = self.get_config_path(name, engine)
        with locked(config_path):
            config = self.require(name, engine)
            if database == config.database:
                raise InvalidOptionError(
                    f"Cannot remove primary database '{database}' from '{name}'",
                    context={"name": name, "database": database},
                )
            if database in config.databases:
                config.databases.remove(database)
                self._write(config)
        return config

    async def sync_databases(self, name: str, engine: str, engine_impl) -> list[str]:
        """
        Reconcile the tracked list against the engine's list_databases.

        Best-effort: failures are logged and the current list is returned.
        """
        config = self.require(name, engine)
        try:
            live = await engine_impl.list_databases(config)
        except Exception as e:
            logger.warning(f"Could not sync databases for {engine}/{name}: {e}")
            return config.databases

        databases = [config.database] if config.database else []
        databases += [db for db in live if db not in databases]
        self.update_config(name, engine, databases=databases)
        return databases
