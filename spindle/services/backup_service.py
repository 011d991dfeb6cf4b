"""
Backup Service for Spindle Services

Dispatches backup and restore operations to engine implementations.
Backups are named and size-checked here; restores are format-detected,
get their target database created and tracked, and come back in one
RestoreResult shape with soft-success warnings surfaced.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from ..errors import ProcessError, UnsupportedBackupFormatError
from .backup_formats import (
    BACKUP_FORMATS,
    BackupFormat,
    RestoreResult,
    classify_backup_size,
    collect_warnings,
    detect_backup_format,
    generate_backup_filename,
    get_backup_extension,
    get_default_backup_format,
    is_soft_success,
)
from .engines.base import BackupOptions, BackupResult, BaseEngine, ContainerConfig, RestoreOptions

logger = logging.getLogger("spindle")


async def perform_backup(
    engine: BaseEngine,
    config: ContainerConfig,
    output_dir: str,
    options: Optional[BackupOptions] = None,
    filename: Optional[str] = None,
) -> BackupResult:
    """Back up a container into output_dir with a generated file name."""
    options = options or BackupOptions(format=get_default_backup_format(engine.engine_name))
    database = options.database or config.database
    base_name = filename or generate_backup_filename(config.name, Path(database).stem if engine.is_file_based else database)
    output_path = Path(output_dir).expanduser() / f"{base_name}{engine.get_backup_file_extension(options.format)}"
    output_path.parent.mkdir(parents=True, exist_ok=True)

    result = await engine.backup(config, str(output_path), options)
    level = classify_backup_size(result.size)
    if level != "normal":
        logger.warning(f"Backup {result.path} is {level.replace('_', ' ')} ({result.size} bytes)")
    return result


async def perform_restore(
    engine: BaseEngine,
    config: ContainerConfig,
    backup_path: str,
    options: Optional[RestoreOptions] = None,
    registry=None,
) -> RestoreResult:
    """
    Restore a backup into a container.

    The format is detected first and handed to the engine with the path.
    The target database is created when requested and tracked on the
    container; the engine's restore routine does the rest. Soft successes
    are returned with warnings.

    Raises:
        UnsupportedBackupFormatError: If the backup format is not recognised
        ProcessError: If the restore failed outright
    """
    options = options or RestoreOptions()
    database = options.database or config.database
    detected = engine.detect_backup_format(backup_path)
    if detected.format == "unknown":
        raise UnsupportedBackupFormatError(
            engine.engine_name, backup_path, detected.format, detected.description, detected.suggestion,
        )
    logger.info(f"Restoring {backup_path} ({detected.format}) into {config.name}/{database}")

    if options.create_database and database and database not in config.databases and not engine.is_file_based:
        await engine.create_database(config, database)
        if registry is not None:
            registry.add_database(config.name, config.engine, database)
        config.databases.append(database)

    result = await engine.restore(config, backup_path, RestoreOptions(
        database=database,
        create_database=False,
        drop=options.drop,
        validate_version=options.validate_version,
        format=detected.format,
    ))

    if result.code != 0 and not result.soft_success:
        raise ProcessError(
            f"restore {backup_path}",
            result.code,
            result.stderr,
            message=f"Restore of {os.path.basename(backup_path)} failed: {result.stderr[:500]}",
        )
    if result.code != 0:
        logger.warning(f"Restore into {config.name}/{database} completed with warnings")
        if not result.warnings:
            result.warnings = collect_warnings(result.stderr)
    return result


__all__ = [
    "BACKUP_FORMATS",
    "BackupFormat",
    "RestoreResult",
    "classify_backup_size",
    "collect_warnings",
    "detect_backup_format",
    "generate_backup_filename",
    "get_backup_extension",
    "get_default_backup_format",
    "is_soft_success",
    "perform_backup",
    "perform_restore",
]
