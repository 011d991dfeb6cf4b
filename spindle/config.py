"""
Spindle Configuration

Explicit path/settings context handed to the binary manager, registries,
port allocator and engines. Nothing here is global: tests build a context
rooted in a temporary directory.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import (
    HOME_ENV_VAR,
    HOME_DIR_NAME,
    LOG_FILE_NAME,
    FILE_REGISTRY_NAME,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_VERIFY_TIMEOUT,
    DEFAULT_COMMAND_TIMEOUT,
)

logger = logging.getLogger("spindle")


@dataclass
class SpindleContext:
    """Filesystem roots and timeouts for one spindle invocation."""
    home: Path
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    verify_timeout: float = DEFAULT_VERIFY_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    log_level: str = "INFO"
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        self.home = Path(self.home).expanduser()

    # ---- Derived Paths -------------------------------------------------------

    @property
    def bin_dir(self) -> Path:
        """Root of all installed engine binaries."""
        return self.home / "bin"

    @property
    def containers_dir(self) -> Path:
        """Root of all container records, grouped by engine."""
        return self.home / "containers"

    @property
    def log_file(self) -> Path:
        return self.home / LOG_FILE_NAME

    @property
    def file_registry_path(self) -> Path:
        """Registry of file-based (embedded) containers."""
        return self.home / FILE_REGISTRY_NAME

    def engine_containers_dir(self, engine: str) -> Path:
        return self.containers_dir / engine

    def container_dir(self, engine: str, name: str) -> Path:
        return self.containers_dir / engine / name

    # ---- Construction --------------------------------------------------------

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "SpindleContext":
        """
        Build a context from environment variables.

        Reads SPINDLE_HOME (default ~/.spindle), SPINDLE_DOWNLOAD_TIMEOUT
        (seconds) and SPINDLE_LOG_LEVEL.
        """
        env = os.environ if env is None else env
        home = env.get(HOME_ENV_VAR) or str(Path.home() / HOME_DIR_NAME)

        download_timeout = DEFAULT_DOWNLOAD_TIMEOUT
        raw_timeout = env.get("SPINDLE_DOWNLOAD_TIMEOUT")
        if raw_timeout:
            try:
                download_timeout = float(raw_timeout)
            except ValueError:
                logger.warning(f"Ignoring invalid SPINDLE_DOWNLOAD_TIMEOUT: {raw_timeout!r}")

        return cls(
            home=Path(home),
            download_timeout=download_timeout,
            log_level=env.get("SPINDLE_LOG_LEVEL", "INFO").upper(),
        )

    def ensure_directories(self) -> None:
        """Create the home, bin and containers directories."""
        for path in (self.home, self.bin_dir, self.containers_dir):
            path.mkdir(parents=True, exist_ok=True)


def configure_logging(context: SpindleContext, level: Optional[str] = None) -> logging.Logger:
    """
    Attach a file handler for the context's log file to the spindle logger.

    Safe to call repeatedly; a handler for the same file is only added once.
    """
    spindle_logger = logging.getLogger("spindle")
    spindle_logger.setLevel((level or context.log_level).upper())

    log_path = str(context.log_file)
    for handler in spindle_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return spindle_logger

    context.home.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, delay=True)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    spindle_logger.addHandler(handler)
    return spindle_logger
