"""
Spindle - Local Multi-Engine Database Lifecycle Manager

Spins up, tracks and tears down local database instances across engine families.
Engine binaries are resolved, downloaded, verified and cached on demand; containers
are persisted as JSON records and mutated only through the registry.
"""

__version__ = "0.4.2"

# =============================================================================
# Home Directory
# =============================================================================

HOME_ENV_VAR = "SPINDLE_HOME"
HOME_DIR_NAME = ".spindle"
LOG_FILE_NAME = "spindle.log"
FILE_REGISTRY_NAME = "sqlite-registry.json"
CONTAINER_FILE_NAME = "container.json"

# =============================================================================
# Naming Rules
# =============================================================================

CONTAINER_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]*$"

# =============================================================================
# Binary Distribution
# =============================================================================

BINARY_RELEASE_BASE_URL = "https://github.com/robertjbass/hostdb/releases/download"

SUPPORTED_PLATFORMS = [
    "darwin-arm64",
    "darwin-x64",
    "linux-arm64",
    "linux-x64",
    "win32-x64",
]

DEFAULT_DOWNLOAD_TIMEOUT = 5 * 60.0  # seconds
DEFAULT_VERIFY_TIMEOUT = 30.0
DEFAULT_COMMAND_TIMEOUT = 60.0
