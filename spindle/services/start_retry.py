"""
Start-With-Retry Orchestrator

Closes the window between "port checked available" and "engine actually
binds it": a start that fails with PortInUseError is retried on a freshly
allocated port, persisted through the registry before the next attempt.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..errors import PortInUseError, SpindleError
from .engines.base import BaseEngine, ContainerConfig
from .progress import ProgressSink

logger = logging.getLogger("spindle")

DEFAULT_MAX_RETRIES = 3


@dataclass
class StartWithRetryResult:
    success: bool
    final_port: int
    retries_used: int
    error: Optional[Exception] = None

    def to_dict(self) -> dict:
        error = None
        if isinstance(self.error, SpindleError):
            error = self.error.to_dict()
        elif self.error is not None:
            error = {"message": str(self.error)}
        return {
            "success": self.success,
            "final_port": self.final_port,
            "retries_used": self.retries_used,
            "error": error,
        }


async def start_with_retry(
    engine: BaseEngine,
    config: ContainerConfig,
    registry,
    allocator,
    max_retries: int = DEFAULT_MAX_RETRIES,
    on_port_change: Optional[Callable[[int, int], None]] = None,
    progress: Optional[ProgressSink] = None,
) -> StartWithRetryResult:
    """
    Start a container, moving it to a new port when its port is taken.

    At most max_retries calls to engine.start are made. Only PortInUseError
    triggers a retry; any other error is terminal on the attempt it occurs.

    Args:
        engine: Engine implementation for the container
        config: Container record (its port is updated in place on retry)
        registry: ContainerRegistry used to persist port changes
        allocator: PortAllocator used to find replacement ports
        max_retries: Total number of start attempts
        on_port_change: Called with (old_port, new_port) before each retry
        progress: Optional progress sink passed through to engine.start

    Returns:
        StartWithRetryResult with the port actually in use
    """
    failed_ports: set[int] = set()

    for attempt in range(1, max_retries + 1):
        try:
            await engine.start(config, progress)
            return StartWithRetryResult(success=True, final_port=config.port, retries_used=attempt - 1)
        except PortInUseError as e:
            if attempt >= max_retries:
                logger.error(f"Port {config.port} still in use after {attempt} attempts for {config.name}")
                return StartWithRetryResult(False, config.port, attempt - 1, e)

            old_port = config.port
            failed_ports.add(old_port)
            try:
                allocation = allocator.find_available_excluding_managed(
                    engine.default_port or old_port,
                    engine.port_range,
                    registry,
                    extra_exclude=failed_ports,
                )
            except SpindleError as alloc_error:
                return StartWithRetryResult(False, config.port, attempt - 1, alloc_error)

            config.port = allocation.port
            registry.update_config(config.name, config.engine, port=allocation.port)
            if on_port_change:
                on_port_change(old_port, allocation.port)
            logger.warning(
                f"Port {old_port} in use for {config.name}, retrying on port {allocation.port} "
                f"(attempt {attempt + 1}/{max_retries})"
            )
        except Exception as e:
            logger.error(f"Failed to start {config.name}: {e}")
            return StartWithRetryResult(False, config.port, attempt - 1, e)

    return StartWithRetryResult(False, config.port, 0, None)
