"""
Filesystem helpers for Spindle services.

Cross-device safe moves, archive extraction and executable-bit handling
for binary installs and file-based container relocation.
"""

import errno
import logging
import os
import shutil
import stat
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import Union

from ..errors import ExtractionError

logger = logging.getLogger("spindle")

PathLike = Union[str, Path]

# Archive members that commonly fail to extract on foreign platforms and
# carry no payload.
BENIGN_MEMBER_PREFIXES = ("__MACOSX/", "._")
BENIGN_MEMBER_NAMES = {".DS_Store"}
BENIGN_MEMBER_SUFFIXES = (".xattr",)


def is_cross_device_error(exc: OSError) -> bool:
    """True when a rename failed because source and target differ in device."""
    return exc.errno in (errno.EXDEV, errno.EPERM)


def remove_path(path: PathLike) -> None:
    """Remove a file or directory tree if it exists."""
    target = Path(path)
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target, ignore_errors=True)
    elif target.exists() or target.is_symlink():
        target.unlink()


def copy_entry(src: PathLike, dest: PathLike) -> None:
    """Copy a file or a directory tree, preserving metadata."""
    src, dest = Path(src), Path(dest)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dest, symlinks=True)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest, follow_symlinks=False)


def move_entry(src: PathLike, dest: PathLike) -> None:
    """
    Move a file or directory.

    Tries an atomic rename first. When the rename crosses filesystems
    (EXDEV, or EPERM on some mounts) the entry is copied and the source
    removed afterwards.
    """
    src, dest = Path(src), Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.rename(src, dest)
    except OSError as e:
        if not is_cross_device_error(e):
            raise
        logger.debug(f"Cross-device move {src} -> {dest}, falling back to copy")
        copy_entry(src, dest)
        remove_path(src)


def make_executable(directory: PathLike) -> int:
    """
    Set 0o755 on every regular file beneath directory.

    No-op on Windows. Returns the number of files touched.
    """
    if sys.platform == "win32":
        return 0
    count = 0
    for path in Path(directory).rglob("*"):
        if path.is_file() and not path.is_symlink():
            os.chmod(path, 0o755)
            count += 1
    return count


def is_executable(path: PathLike) -> bool:
    target = Path(path)
    if not target.is_file():
        return False
    if sys.platform == "win32":
        return True
    return bool(target.stat().st_mode & stat.S_IXUSR)


def ensure_within(path: Path, base: Path) -> bool:
    """Ensure resolved path is within base directory."""
    try:
        resolved_path = path.resolve()
        resolved_base = base.resolve()
        return str(resolved_path).startswith(str(resolved_base) + os.sep) or resolved_path == resolved_base
    except (OSError, ValueError):
        return False


def _is_benign_member(name: str) -> bool:
    base = name.rstrip("/").split("/")[-1]
    if any(name.startswith(p) or f"/{p}" in name for p in BENIGN_MEMBER_PREFIXES):
        return True
    return base in BENIGN_MEMBER_NAMES or base.endswith(BENIGN_MEMBER_SUFFIXES)


# =============================================================================
# Archive Extraction
# =============================================================================

def extract_archive(archive: PathLike, dest: PathLike) -> int:
    """
    Extract a .tar.gz/.tgz/.tar or .zip archive into dest.

    Members are extracted one by one so that failures on platform metadata
    entries (AppleDouble files, __MACOSX, xattr sidecars) can be logged and
    skipped. Any other failure, or an archive yielding no files, raises
    ExtractionError.

    Returns:
        Number of regular files extracted
    """
    archive, dest = Path(archive), Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()

    try:
        if name.endswith(".zip"):
            extracted = _extract_zip(archive, dest)
        elif name.endswith((".tar.gz", ".tgz", ".tar", ".tar.xz")):
            extracted = _extract_tar(archive, dest)
        else:
            raise ExtractionError(f"Unsupported archive type: {archive.name}", context={"path": str(archive)})
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise ExtractionError(f"Failed to extract {archive.name}: {e}", context={"path": str(archive)}) from e

    if extracted == 0:
        raise ExtractionError(f"Archive {archive.name} contained no files", context={"path": str(archive)})
    return extracted


def _extract_tar(archive: Path, dest: Path) -> int:
    extracted = 0
    with tarfile.open(archive, "r:*") as tar:
        for member in tar.getmembers():
            target = dest / member.name
            if not ensure_within(target, dest):
                raise ExtractionError(f"Unsafe path in archive: {member.name}", context={"path": str(archive)})
            try:
                if hasattr(tarfile, "data_filter"):
                    tar.extract(member, dest, filter="fully_trusted")
                else:
                    tar.extract(member, dest)
            except (OSError, tarfile.TarError) as e:
                if _is_benign_member(member.name):
                    logger.warning(f"Skipping archive member {member.name}: {e}")
                    continue
                raise ExtractionError(f"Failed to extract {member.name}: {e}", context={"path": str(archive)}) from e
            if member.isfile():
                extracted += 1
    return extracted


def _extract_zip(archive: Path, dest: Path) -> int:
    extracted = 0
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            target = dest / info.filename
            if not ensure_within(target, dest):
                raise ExtractionError(f"Unsafe path in archive: {info.filename}", context={"path": str(archive)})
            try:
                zf.extract(info, dest)
            except OSError as e:
                if _is_benign_member(info.filename):
                    logger.warning(f"Skipping archive member {info.filename}: {e}")
                    continue
                raise ExtractionError(f"Failed to extract {info.filename}: {e}", context={"path": str(archive)}) from e
            if not info.is_dir():
                # zipfile drops permission bits
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    os.chmod(target, mode)
                extracted += 1
    return extracted
