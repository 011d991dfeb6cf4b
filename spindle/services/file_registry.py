"""
File Registry for file-based (embedded) engines.

Tracks {name, filePath} pairs for containers that have no server process.
One registered name per file path; entries whose file has vanished can be
listed and pruned as orphans.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import SpindleContext
from ..errors import ContainerExistsError, PathAlreadyRegisteredError, RegistryEntryNotFoundError
from .json_store import locked, read_json, utc_now_iso, write_json_atomic

logger = logging.getLogger("spindle")

REGISTRY_VERSION = 1


@dataclass
class RegistryEntry:
    name: str
    file_path: str
    created: str
    last_verified: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"name": self.name, "filePath": self.file_path, "created": self.created}
        if self.last_verified:
            data["lastVerified"] = self.last_verified
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryEntry":
        return cls(
            name=data["name"],
            file_path=data["filePath"],
            created=data.get("created") or utc_now_iso(),
            last_verified=data.get("lastVerified"),
        )


def _same_path(a: str, b: str) -> bool:
    return Path(a).expanduser().resolve() == Path(b).expanduser().resolve()


class FileRegistry:
    """Persisted registry of file-based containers."""

    def __init__(self, context: SpindleContext, path: Optional[Path] = None):
        self.context = context
        self.path = Path(path) if path else context.file_registry_path

    # ---- Persistence ---------------------------------------------------------

    def load(self) -> list[RegistryEntry]:
        """Load entries. A missing or corrupted file reads as an empty registry."""
        try:
            data = read_json(self.path, default=None)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"File registry {self.path} is corrupted, treating as empty: {e}")
            return []
        if not isinstance(data, dict):
            return []
        entries = []
        for raw in data.get("entries", []):
            try:
                entries.append(RegistryEntry.from_dict(raw))
            except (KeyError, TypeError):
                logger.warning(f"Skipping malformed file registry entry: {raw!r}")
        return entries

    def save(self, entries: list[RegistryEntry]) -> None:
        write_json_atomic(self.path, {
            "version": REGISTRY_VERSION,
            "entries": [entry.to_dict() for entry in entries],
        })

    # ---- Queries -------------------------------------------------------------

    def list(self) -> list[RegistryEntry]:
        return self.load()

    def get(self, name: str) -> Optional[RegistryEntry]:
        return next((e for e in self.load() if e.name == name), None)

    def exists(self, name: str) -> bool:
        return self.get(name) is not None

    def get_by_path(self, file_path: str) -> Optional[RegistryEntry]:
        return next((e for e in self.load() if _same_path(e.file_path, file_path)), None)

    def is_path_registered(self, file_path: str) -> bool:
        return self.get_by_path(file_path) is not None

    # ---- Mutations -----------------------------------------------------------

    def add(self, name: str, file_path: str) -> RegistryEntry:
        """
        Register a file under a container name.

        Raises:
            ContainerExistsError: If the name is taken
            PathAlreadyRegisteredError: If another entry already owns the file
        """
        file_path = str(Path(file_path).expanduser().resolve())
        with locked(self.path):
            entries = self.load()
            if any(e.name == name for e in entries):
                raise ContainerExistsError(name, engine="sqlite")
            owner = next((e for e in entries if _same_path(e.file_path, file_path)), None)
            if owner:
                raise PathAlreadyRegisteredError(file_path, owner.name)
            entry = RegistryEntry(name=name, file_path=file_path, created=utc_now_iso())
            entries.append(entry)
            self.save(entries)
        logger.debug(f"Registered {name} -> {file_path}")
        return entry

    def remove(self, name: str) -> bool:
        with locked(self.path):
            entries = self.load()
            remaining = [e for e in entries if e.name != name]
            if len(remaining) == len(entries):
                return False
            self.save(remaining)
        return True

    def update(self, name: str, file_path: Optional[str] = None, new_name: Optional[str] = None) -> RegistryEntry:
        """
        Change an entry's file path and/or name.

        Raises:
            RegistryEntryNotFoundError: If name is not registered
            PathAlreadyRegisteredError: If file_path belongs to another entry
        """
        with locked(self.path):
            entries = self.load()
            entry = next((e for e in entries if e.name == name), None)
            if entry is None:
                raise RegistryEntryNotFoundError(f"No file registry entry named '{name}'", context={"name": name})
            if file_path is not None:
                file_path = str(Path(file_path).expanduser().resolve())
                owner = next((e for e in entries if e.name != name and _same_path(e.file_path, file_path)), None)
                if owner:
                    raise PathAlreadyRegisteredError(file_path, owner.name)
                entry.file_path = file_path
            if new_name is not None:
                if any(e.name == new_name for e in entries if e is not entry):
                    raise ContainerExistsError(new_name, engine="sqlite")
                entry.name = new_name
            self.save(entries)
        return entry

    def update_verified(self, name: str) -> None:
        with locked(self.path):
            entries = self.load()
            for entry in entries:
                if entry.name == name:
                    entry.last_verified = utc_now_iso()
                    self.save(entries)
                    return

    # ---- Orphans -------------------------------------------------------------

    def find_orphans(self) -> list[RegistryEntry]:
        """Entries whose backing file no longer exists."""
        return [e for e in self.load() if not Path(e.file_path).exists()]

    def remove_orphans(self) -> list[RegistryEntry]:
        with locked(self.path):
            entries = self.load()
            orphans = [e for e in entries if not Path(e.file_path).exists()]
            if orphans:
                self.save([e for e in entries if Path(e.file_path).exists()])
        for orphan in orphans:
            logger.info(f"Removed orphaned registry entry {orphan.name} ({orphan.file_path})")
        return orphans
