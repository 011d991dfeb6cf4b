"""
Binary Manager for Spindle Services

Acquires a working binary tree for (engine, version, platform, arch):
resolve version -> download -> extract -> normalise layout -> verify -> cache.

Engine-specific behaviour (version map, download URL, version output
parsing, verification policy) is supplied by a BinaryStrategy, so adding an
engine never requires subclassing the manager. No failure path leaves a
partially installed tree behind.
"""

import asyncio
import logging
import os
import platform as platform_module
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import httpx

from .. import BINARY_RELEASE_BASE_URL, SUPPORTED_PLATFORMS
from ..config import SpindleContext
from ..errors import (
    DownloadError,
    DownloadHTTPError,
    DownloadNetworkError,
    DownloadTimeoutError,
    UnsupportedPlatformError,
    VerificationError,
)
from .filesystem import extract_archive, make_executable, move_entry, remove_path
from .process_runner import run_command
from .progress import ProgressSink, ProgressStage, report

logger = logging.getLogger("spindle")

# Extensionless files in flat archives that are never executables
NON_BINARY_NAMES = {
    "license", "licence", "readme", "notice", "changelog", "contributing",
    "authors", "copying", "version", "makefile", "dockerfile", "manifest",
    "install", "news", "thanks", "todo", "history",
}

VERIFY_POLICIES = ("major", "major_minor", "exists")


# =============================================================================
# Platform & Version Helpers
# =============================================================================

def detect_platform() -> tuple[str, str]:
    """
    Map the running interpreter's OS/CPU to a (platform, arch) pair.

    Raises:
        UnsupportedPlatformError: For anything outside darwin/linux/win32 on x64/arm64
    """
    if sys.platform.startswith("linux"):
        plat = "linux"
    elif sys.platform == "darwin":
        plat = "darwin"
    elif sys.platform in ("win32", "cygwin"):
        plat = "win32"
    else:
        plat = sys.platform

    machine = platform_module.machine().lower()
    if machine in ("x86_64", "amd64", "x64"):
        arch = "x64"
    elif machine in ("arm64", "aarch64"):
        arch = "arm64"
    else:
        arch = machine

    if f"{plat}-{arch}" not in SUPPORTED_PLATFORMS:
        raise UnsupportedPlatformError(plat, arch)
    return plat, arch


def normalize_version(version: str, version_map: dict[str, str]) -> str:
    """
    Resolve a version alias to a full version.

    Exact keys win, then the major.minor or major key. Full versions that
    already appear in the map pass through. Anything else is returned
    unchanged with a warning so the download step can report a precise 404.
    """
    version = str(version).strip()
    if version in version_map:
        return version_map[version]

    parts = version.split(".")
    if len(parts) < 3:
        if len(parts) == 2 and parts[0] in version_map and version_map[parts[0]].startswith(f"{version}."):
            return version_map[parts[0]]
    elif version in version_map.values():
        return version

    logger.warning(f"Version '{version}' is not in the version map, using it unchanged")
    return version


def versions_match(expected: str, actual: str, policy: str) -> bool:
    """Compare a requested version against a reported one under a verify policy."""
    if policy == "exists" or expected == actual:
        return True
    expected_parts = expected.split(".")
    actual_parts = actual.split(".")
    if policy == "major_minor":
        return expected_parts[:2] == actual_parts[:2]
    return expected_parts[0] == actual_parts[0]


def hostdb_url_builder(engine: str) -> Callable[[str, str, str], str]:
    """URL builder for the hostdb release layout shared by all engines."""
    def build(version: str, plat: str, arch: str) -> str:
        ext = "zip" if plat == "win32" else "tar.gz"
        tag = f"{engine}-{version}"
        return f"{BINARY_RELEASE_BASE_URL}/{tag}/{tag}-{plat}-{arch}.{ext}"
    return build


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class BinaryStrategy:
    """Engine hooks consumed by BinaryManager."""
    engine: str
    primary_binary: str
    version_map: dict[str, str]
    parse_version: Callable[[str], Optional[str]]
    build_url: Optional[Callable[[str, str, str], str]] = None
    verify_policy: str = "major"
    version_flag: str = "--version"
    executables: tuple[str, ...] = ()
    supported_platforms: list[str] = field(default_factory=lambda: list(SUPPORTED_PLATFORMS))

    def __post_init__(self):
        if self.verify_policy not in VERIFY_POLICIES:
            raise ValueError(f"Unknown verify policy '{self.verify_policy}'")
        if self.build_url is None:
            self.build_url = hostdb_url_builder(self.engine)


@dataclass
class InstalledBinary:
    """One materialised (engine, version, platform, arch) binary tree."""
    engine: str
    version: str
    platform: str
    arch: str
    path: str

    def to_dict(self) -> dict:
        return {
            "engine": self.engine,
            "version": self.version,
            "platform": self.platform,
            "arch": self.arch,
            "path": self.path,
        }


@asynccontextmanager
async def install_lock(
    lock_path: Path,
    timeout_seconds: float = 600.0,
    stale_after_seconds: float = 60.0 * 60.0,
) -> AsyncIterator[None]:
    """
    Cross-process lock for one install key, using an atomic O_EXCL create.

    A lock file older than stale_after_seconds is assumed abandoned and
    removed.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    started = time.monotonic()
    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            try:
                age = time.time() - lock_path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age >= stale_after_seconds:
                logger.warning(f"Removing stale install lock {lock_path}")
                lock_path.unlink(missing_ok=True)
                continue
            if (time.monotonic() - started) >= timeout_seconds:
                raise DownloadTimeoutError(
                    f"Timed out waiting for install lock {lock_path}",
                    context={"path": str(lock_path)},
                )
            await asyncio.sleep(0.2)

    try:
        os.write(fd, f"pid={os.getpid()} started={time.time():.0f}\n".encode())
        yield
    finally:
        os.close(fd)
        lock_path.unlink(missing_ok=True)


def _default_client_factory(timeout: httpx.Timeout) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


# =============================================================================
# Binary Manager
# =============================================================================

class BinaryManager:
    """Downloads, verifies and caches binaries for one engine family."""

    def __init__(
        self,
        context: SpindleContext,
        strategy: BinaryStrategy,
        client_factory: Optional[Callable[[httpx.Timeout], httpx.AsyncClient]] = None,
    ):
        self.context = context
        self.strategy = strategy
        self.client_factory = client_factory or _default_client_factory
        self._key_locks: dict[str, asyncio.Lock] = {}

    @property
    def engine(self) -> str:
        return self.strategy.engine

    # ---- Resolution ----------------------------------------------------------

    def normalize_version(self, version: str) -> str:
        return normalize_version(version, self.strategy.version_map)

    def _platform(self, plat: Optional[str], arch: Optional[str]) -> tuple[str, str]:
        if plat and arch:
            return plat, arch
        detected_plat, detected_arch = detect_platform()
        return plat or detected_plat, arch or detected_arch

    def get_download_url(self, version: str, plat: Optional[str] = None, arch: Optional[str] = None) -> str:
        """
        Build the artifact URL for a version on a platform.

        Raises:
            UnsupportedPlatformError: If no artifact is published for the triple
        """
        plat, arch = self._platform(plat, arch)
        if f"{plat}-{arch}" not in self.strategy.supported_platforms:
            raise UnsupportedPlatformError(plat, arch, engine=self.engine)
        return self.strategy.build_url(self.normalize_version(version), plat, arch)

    def install_key(self, version: str, plat: Optional[str] = None, arch: Optional[str] = None) -> str:
        plat, arch = self._platform(plat, arch)
        return f"{self.engine}-{self.normalize_version(version)}-{plat}-{arch}"

    def get_binary_path(self, version: str, plat: Optional[str] = None, arch: Optional[str] = None) -> Path:
        return self.context.bin_dir / self.install_key(version, plat, arch)

    def _primary_path(self, bin_path: Path, plat: Optional[str] = None) -> Path:
        name = self.strategy.primary_binary
        if (plat or sys.platform) == "win32":
            name = f"{name}.exe"
        return bin_path / "bin" / name

    def is_installed(self, version: str, plat: Optional[str] = None, arch: Optional[str] = None) -> bool:
        plat, arch = self._platform(plat, arch)
        return self._primary_path(self.get_binary_path(version, plat, arch), plat).exists()

    # ---- Installation --------------------------------------------------------

    async def ensure_installed(
        self,
        version: str,
        progress: Optional[ProgressSink] = None,
        plat: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> Path:
        """Return the binary root, downloading only if it is not already installed."""
        plat, arch = self._platform(plat, arch)
        full_version = self.normalize_version(version)
        if self.is_installed(full_version, plat, arch):
            report(progress, ProgressStage.CACHED, f"Using cached {self.engine} {full_version}")
            return self.get_binary_path(full_version, plat, arch)
        return await self.download(full_version, progress, plat, arch)

    async def download(
        self,
        version: str,
        progress: Optional[ProgressSink] = None,
        plat: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> Path:
        """
        Download, extract and verify binaries for a version.

        Installs of the same key are serialised in-process and across
        processes; a waiter that finds the binary installed reports cached.
        """
        plat, arch = self._platform(plat, arch)
        full_version = self.normalize_version(version)
        key = self.install_key(full_version, plat, arch)
        lock = self._key_locks.setdefault(key, asyncio.Lock())

        async with lock:
            async with install_lock(self.context.bin_dir / f".{key}.lock"):
                if self.is_installed(full_version, plat, arch):
                    report(progress, ProgressStage.CACHED, f"Using cached {self.engine} {full_version}")
                    return self.get_binary_path(full_version, plat, arch)
                return await self._install(full_version, plat, arch, progress)

    async def _install(self, version: str, plat: str, arch: str, progress: Optional[ProgressSink]) -> Path:
        url = self.get_download_url(version, plat, arch)
        key = self.install_key(version, plat, arch)
        bin_path = self.context.bin_dir / key
        temp_dir = self.context.bin_dir / f"temp-{key}"
        archive = temp_dir / (f"{self.engine}.zip" if plat == "win32" else f"{self.engine}.tar.gz")
        stage_dir = temp_dir / "stage"

        remove_path(temp_dir)
        temp_dir.mkdir(parents=True)
        installed = False
        try:
            report(progress, ProgressStage.DOWNLOADING, f"Downloading {self.engine} {version}")
            logger.info(f"Downloading {self.engine} {version} from {url}")
            await self._fetch(url, archive)

            report(progress, ProgressStage.EXTRACTING, f"Extracting {self.engine} {version}")
            extract_dir = temp_dir / "extract"
            await asyncio.to_thread(extract_archive, archive, extract_dir)
            await asyncio.to_thread(self._reconcile_layout, extract_dir, stage_dir, plat)
            if plat != "win32":
                make_executable(stage_dir / "bin")

            report(progress, ProgressStage.VERIFYING, f"Verifying {self.engine} {version}")
            await self.verify(version, stage_dir, plat)

            remove_path(bin_path)
            move_entry(stage_dir, bin_path)
            installed = True
            logger.info(f"Installed {self.engine} {version} at {bin_path}")
            return bin_path
        finally:
            remove_path(temp_dir)
            if not installed:
                remove_path(bin_path)

    async def _fetch(self, url: str, dest: Path) -> None:
        """Stream url into dest under a hard deadline."""
        deadline = self.context.download_timeout
        try:
            await asyncio.wait_for(self._stream_to_file(url, dest), timeout=deadline)
        except asyncio.TimeoutError as e:
            raise DownloadTimeoutError(
                f"Download timed out after {deadline:.0f}s: {url}",
                suggestion="Check your connection or raise SPINDLE_DOWNLOAD_TIMEOUT",
                context={"url": url, "timeout": deadline},
            ) from e

    async def _stream_to_file(self, url: str, dest: Path) -> None:
        tmp_path = dest.with_name(dest.name + ".tmp")
        timeout = httpx.Timeout(self.context.download_timeout, connect=30.0)
        try:
            async with self.client_factory(timeout) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code == 404:
                        raise DownloadHTTPError(
                            404, url,
                            suggestion=f"{self.engine} binaries for this version may have been removed; try another version",
                        )
                    response.raise_for_status()
                    with open(tmp_path, "wb") as fh:
                        async for chunk in response.aiter_bytes(chunk_size=64 * 1024):
                            fh.write(chunk)
            os.replace(tmp_path, dest)
        except DownloadError:
            raise
        except httpx.TimeoutException as e:
            raise DownloadTimeoutError(f"Download timed out: {url}", context={"url": url}) from e
        except httpx.HTTPStatusError as e:
            raise DownloadHTTPError(e.response.status_code, url) from e
        except httpx.HTTPError as e:
            raise DownloadNetworkError(f"Download failed: {e}", context={"url": url}) from e
        finally:
            tmp_path.unlink(missing_ok=True)

    # ---- Layout --------------------------------------------------------------

    def _find_source_dir(self, extract_dir: Path) -> Path:
        """Locate the archive's top-level payload directory."""
        for entry in sorted(extract_dir.iterdir()):
            if entry.is_dir() and (entry.name == self.engine or entry.name.startswith(f"{self.engine}-")):
                return entry
        return extract_dir

    def _is_executable_name(self, name: str) -> bool:
        lower = name.lower()
        if name in self.strategy.executables:
            return True
        if lower.endswith((".exe", ".dll")):
            return True
        if name.startswith(".") or "." in name:
            return False
        return lower not in NON_BINARY_NAMES

    def _reconcile_layout(self, extract_dir: Path, dest: Path, plat: str) -> None:
        """
        Move extracted entries into the canonical <dest>/bin layout.

        Archives that already ship a bin/ directory are moved as-is, keeping
        sibling trees like lib/, share/, server/ or console/. Flat archives
        get a synthesised bin/ holding the executables; everything else stays
        at the root.
        """
        source = self._find_source_dir(extract_dir)
        dest.mkdir(parents=True, exist_ok=True)
        entries = sorted(source.iterdir())

        if (source / "bin").is_dir():
            for entry in entries:
                move_entry(entry, dest / entry.name)
            return

        bin_dir = dest / "bin"
        bin_dir.mkdir(exist_ok=True)
        for entry in entries:
            if entry.is_file() and self._is_executable_name(entry.name):
                move_entry(entry, bin_dir / entry.name)
            else:
                move_entry(entry, dest / entry.name)

    # ---- Verification --------------------------------------------------------

    async def verify(self, version: str, bin_path: Path, plat: Optional[str] = None) -> bool:
        """
        Check an installed tree reports the requested version.

        Raises:
            VerificationError: Missing binary, unparseable or mismatched version
        """
        primary = self._primary_path(bin_path, plat)
        if not primary.exists():
            raise VerificationError(version, None, f"{primary.name} not found in {bin_path / 'bin'}")
        if self.strategy.verify_policy == "exists":
            return True

        result = await run_command([primary, self.strategy.version_flag], timeout=self.context.verify_timeout)
        if not result.success:
            raise VerificationError(version, None, f"{primary.name} {self.strategy.version_flag} failed: {result.stderr}")

        actual = self.strategy.parse_version(result.stdout or result.stderr)
        if not actual:
            raise VerificationError(version, None, f"could not parse version from: {result.stdout[:200]}")
        if not versions_match(version, actual, self.strategy.verify_policy):
            raise VerificationError(version, actual)
        return True

    # ---- Inventory -----------------------------------------------------------

    def list_installed(self) -> list[InstalledBinary]:
        """Installed trees for this engine, parsed from directory names."""
        installed = []
        if not self.context.bin_dir.exists():
            return installed
        for entry in sorted(self.context.bin_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("temp-"):
                continue
            parts = entry.name.split("-")
            if len(parts) < 4:
                continue
            arch, plat, version = parts[-1], parts[-2], parts[-3]
            engine = "-".join(parts[:-3])
            if engine != self.engine:
                continue
            installed.append(InstalledBinary(engine, version, plat, arch, str(entry)))
        return installed

    def delete(self, version: str, plat: Optional[str] = None, arch: Optional[str] = None) -> bool:
        """Remove an installed tree. Returns False when nothing was installed."""
        path = self.get_binary_path(version, plat, arch)
        if not path.exists():
            return False
        remove_path(path)
        logger.info(f"Removed {path.name}")
        return True
