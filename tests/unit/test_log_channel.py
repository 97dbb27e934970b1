"""Tests for LogChannel."""

import asyncio

import pytest

from botforge.log_channel import LogChannel
from botforge.models import LogLevel
from botforge.registry import DeploymentRegistry


@pytest.fixture
def registry():
    return DeploymentRegistry()


@pytest.mark.asyncio
async def test_lines_land_in_order(registry):
    record = registry.create("a", "A", {})
    channel = LogChannel(registry, record.id)

    await channel.info("one")
    await channel.warn("two")
    await channel.error("three")
    await channel.success("four")
    await channel.join()

    assert [(e.level, e.message) for e in record.logs] == [
        (LogLevel.INFO, "one"),
        (LogLevel.WARN, "two"),
        (LogLevel.ERROR, "three"),
        (LogLevel.SUCCESS, "four"),
    ]
    await channel.close()


@pytest.mark.asyncio
async def test_concurrent_producers_serialize(registry):
    record = registry.create("a", "A", {})
    channel = LogChannel(registry, record.id, maxsize=5)

    async def produce(prefix: str):
        for i in range(50):
            await channel.info(f"{prefix}{i}")

    await asyncio.gather(produce("out-"), produce("err-"))
    await channel.join()

    out = [e.message for e in record.logs if e.message.startswith("out-")]
    err = [e.message for e in record.logs if e.message.startswith("err-")]
    assert out == [f"out-{i}" for i in range(50)]
    assert err == [f"err-{i}" for i in range(50)]
    await channel.close()


@pytest.mark.asyncio
async def test_join_on_empty_channel_returns(registry):
    record = registry.create("a", "A", {})
    channel = LogChannel(registry, record.id)

    await asyncio.wait_for(channel.join(), timeout=1)


@pytest.mark.asyncio
async def test_close_flushes_then_restarts_lazily(registry):
    record = registry.create("a", "A", {})
    channel = LogChannel(registry, record.id)

    await channel.info("before close")
    await channel.close()
    assert [e.message for e in record.logs] == ["before close"]

    await channel.info("after close")
    await channel.join()
    assert [e.message for e in record.logs] == ["before close", "after close"]
    await channel.close()


@pytest.mark.asyncio
async def test_unknown_deployment_does_not_raise(registry):
    channel = LogChannel(registry, "missing")

    await channel.error("nobody listens")
    await channel.join()
    await channel.close()
