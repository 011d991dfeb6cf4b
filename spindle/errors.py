"""
Spindle Errors

Typed error taxonomy. Every error carries a machine-checkable ErrorCode plus
enough context (name, port, path, version) for a caller to build an
actionable message. The core never formats output for end users.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Machine-checkable error kinds"""
    CONTAINER_NOT_FOUND = "CONTAINER_NOT_FOUND"
    CONTAINER_ALREADY_EXISTS = "CONTAINER_ALREADY_EXISTS"
    CONTAINER_RUNNING = "CONTAINER_RUNNING"
    INVALID_NAME = "INVALID_NAME"
    INVALID_OPTION = "INVALID_OPTION"
    DATABASE_NOT_FOUND = "DATABASE_NOT_FOUND"
    BINARY_NOT_FOUND = "BINARY_NOT_FOUND"
    REGISTRY_ENTRY_NOT_FOUND = "REGISTRY_ENTRY_NOT_FOUND"
    PATH_ALREADY_REGISTERED = "PATH_ALREADY_REGISTERED"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
    DOWNLOAD_TIMEOUT = "DOWNLOAD_TIMEOUT"
    DOWNLOAD_HTTP_ERROR = "DOWNLOAD_HTTP_ERROR"
    DOWNLOAD_NETWORK_ERROR = "DOWNLOAD_NETWORK_ERROR"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    VERSION_MISMATCH = "VERSION_MISMATCH"
    PORT_IN_USE = "PORT_IN_USE"
    PORT_RANGE_EXHAUSTED = "PORT_RANGE_EXHAUSTED"
    VERSION_INCOMPATIBLE = "VERSION_INCOMPATIBLE"
    WRONG_ENGINE_DUMP = "WRONG_ENGINE_DUMP"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    UNSUPPORTED_BACKUP_FORMAT = "UNSUPPORTED_BACKUP_FORMAT"
    PROCESS_FAILED = "PROCESS_FAILED"


class Severity(str, Enum):
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"


class SpindleError(Exception):
    """Base class for all spindle errors."""

    code: ErrorCode = ErrorCode.PROCESS_FAILED
    severity: Severity = Severity.ERROR

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        context: Optional[dict] = None,
        code: Optional[ErrorCode] = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.context = context or {}
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# NotFound
# =============================================================================

class NotFoundError(SpindleError):
    pass


class ContainerNotFoundError(NotFoundError):
    code = ErrorCode.CONTAINER_NOT_FOUND

    def __init__(self, name: str, engine: Optional[str] = None):
        where = f" for engine '{engine}'" if engine else ""
        super().__init__(
            f"Container '{name}' not found{where}",
            suggestion="List existing containers to check the name",
            context={"name": name, "engine": engine},
        )


class DatabaseNotFoundError(NotFoundError):
    code = ErrorCode.DATABASE_NOT_FOUND


class BinaryNotFoundError(NotFoundError):
    code = ErrorCode.BINARY_NOT_FOUND


class RegistryEntryNotFoundError(NotFoundError):
    code = ErrorCode.REGISTRY_ENTRY_NOT_FOUND


class FileNotFoundSpindleError(NotFoundError):
    code = ErrorCode.FILE_NOT_FOUND


# =============================================================================
# AlreadyExists / Validation
# =============================================================================

class AlreadyExistsError(SpindleError):
    code = ErrorCode.CONTAINER_ALREADY_EXISTS


class ContainerExistsError(AlreadyExistsError):
    def __init__(self, name: str, engine: Optional[str] = None):
        super().__init__(
            f"Container '{name}' already exists",
            suggestion="Choose a different name or delete the existing container",
            context={"name": name, "engine": engine},
        )


class PathAlreadyRegisteredError(AlreadyExistsError):
    code = ErrorCode.PATH_ALREADY_REGISTERED

    def __init__(self, path: str, owner: str):
        super().__init__(
            f"File '{path}' is already registered to container '{owner}'",
            context={"path": path, "owner": owner},
        )


class ContainerRunningError(SpindleError):
    code = ErrorCode.CONTAINER_RUNNING

    def __init__(self, name: str, action: str):
        super().__init__(
            f"Cannot {action} container '{name}' while it is running",
            suggestion=f"Stop '{name}' first",
            context={"name": name},
        )


class InvalidNameError(SpindleError):
    code = ErrorCode.INVALID_NAME


class InvalidOptionError(SpindleError):
    code = ErrorCode.INVALID_OPTION


# =============================================================================
# Binary Acquisition
# =============================================================================

class UnsupportedPlatformError(SpindleError):
    code = ErrorCode.UNSUPPORTED_PLATFORM
    severity = Severity.FATAL

    def __init__(self, platform: str, arch: str, engine: Optional[str] = None):
        supported = f" for {engine}" if engine else ""
        super().__init__(
            f"No binaries published{supported} on {platform}-{arch}",
            context={"platform": platform, "arch": arch, "engine": engine},
        )


class DownloadError(SpindleError):
    code = ErrorCode.DOWNLOAD_NETWORK_ERROR


class DownloadTimeoutError(DownloadError):
    code = ErrorCode.DOWNLOAD_TIMEOUT


class DownloadHTTPError(DownloadError):
    code = ErrorCode.DOWNLOAD_HTTP_ERROR

    def __init__(self, status: int, url: str, suggestion: Optional[str] = None):
        super().__init__(
            f"Download failed with HTTP {status}: {url}",
            suggestion=suggestion,
            context={"status": status, "url": url},
        )
        self.status = status


class DownloadNetworkError(DownloadError):
    code = ErrorCode.DOWNLOAD_NETWORK_ERROR


class ExtractionError(SpindleError):
    code = ErrorCode.EXTRACTION_FAILED


class VerificationError(SpindleError):
    code = ErrorCode.VERSION_MISMATCH

    def __init__(self, expected: str, actual: Optional[str], detail: str = ""):
        message = f"Version mismatch: expected {expected}, got {actual or 'unknown'}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, context={"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


# =============================================================================
# Ports
# =============================================================================

class PortInUseError(SpindleError):
    code = ErrorCode.PORT_IN_USE

    def __init__(self, port: int, detail: str = ""):
        message = f"Port {port} is already in use"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, suggestion="Use a different port", context={"port": port})
        self.port = port


class NoAvailablePortError(SpindleError):
    code = ErrorCode.PORT_RANGE_EXHAUSTED

    def __init__(self, start: int, end: int):
        super().__init__(
            f"No available ports found in range {start}-{end}",
            suggestion="Stop other containers or free ports in the range",
            context={"start": start, "end": end},
        )
        self.start = start
        self.end = end


# =============================================================================
# Engine Operations
# =============================================================================

class VersionIncompatibleError(SpindleError):
    code = ErrorCode.VERSION_INCOMPATIBLE


class WrongEngineDumpError(SpindleError):
    code = ErrorCode.WRONG_ENGINE_DUMP


class UnsupportedOperationError(SpindleError):
    code = ErrorCode.UNSUPPORTED_OPERATION

    def __init__(self, engine: str, operation: str):
        super().__init__(
            f"{engine} does not support {operation}",
            context={"engine": engine, "operation": operation},
        )


class UnsupportedBackupFormatError(SpindleError):
    code = ErrorCode.UNSUPPORTED_BACKUP_FORMAT

    def __init__(self, engine: str, path: str, format: str, description: str = "", suggestion: Optional[str] = None):
        super().__init__(
            f"Cannot restore {description or format} into {engine}: {path}",
            suggestion=suggestion,
            context={"engine": engine, "path": path, "format": format},
        )
        self.format = format


class ProcessError(SpindleError):
    code = ErrorCode.PROCESS_FAILED

    def __init__(self, command: str, returncode: int, stderr: str = "", message: Optional[str] = None):
        super().__init__(
            message or f"Command failed with exit code {returncode}: {command}",
            context={"command": command, "returncode": returncode, "stderr": stderr[:2000]},
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
