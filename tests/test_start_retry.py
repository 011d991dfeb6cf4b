import pytest

from spindle.errors import PortInUseError, ProcessError
from spindle.services.engines.base import StartResult
from spindle.services.start_retry import start_with_retry


class FlakyEngine:
    """Engine double whose start fails with PortInUseError a set number of times."""

    default_port = 0
    port_range = (56100, 56200)

    def __init__(self, port_failures=0, error=None):
        self.port_failures = port_failures
        self.error = error
        self.ports_tried = []

    async def start(self, config, progress=None):
        self.ports_tried.append(config.port)
        if self.error:
            raise self.error
        if len(self.ports_tried) <= self.port_failures:
            raise PortInUseError(config.port)
        return StartResult(config.port, f"fake://127.0.0.1:{config.port}")


@pytest.fixture
def container(registry):
    return registry.create("main", "postgresql", "16", port=56100)


@pytest.mark.asyncio
async def test_first_attempt_success(container, registry, allocator):
    engine = FlakyEngine()
    result = await start_with_retry(engine, container, registry, allocator)

    assert result.success
    assert result.retries_used == 0
    assert result.final_port == 56100


@pytest.mark.asyncio
async def test_port_conflict_moves_to_new_port(container, registry, allocator):
    engine = FlakyEngine(port_failures=1)
    changes = []

    result = await start_with_retry(
        engine, container, registry, allocator,
        on_port_change=lambda old, new: changes.append((old, new)),
    )

    assert result.success
    assert result.retries_used == 1
    assert result.final_port != 56100
    assert changes == [(56100, result.final_port)]
    assert registry.require("main", "postgresql").port == result.final_port
    assert engine.ports_tried == [56100, result.final_port]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(container, registry, allocator):
    engine = FlakyEngine(port_failures=10)

    result = await start_with_retry(engine, container, registry, allocator, max_retries=3)

    assert not result.success
    assert isinstance(result.error, PortInUseError)
    assert result.retries_used == 2
    assert len(engine.ports_tried) == 3
    assert len(set(engine.ports_tried)) == 3
    assert result.to_dict()["error"]["code"] == "PORT_IN_USE"


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(container, registry, allocator):
    engine = FlakyEngine(error=ProcessError("pg_ctl start", 1, "FATAL: bad config"))

    result = await start_with_retry(engine, container, registry, allocator)

    assert not result.success
    assert isinstance(result.error, ProcessError)
    assert engine.ports_tried == [56100]
    assert registry.require("main", "postgresql").port == 56100
