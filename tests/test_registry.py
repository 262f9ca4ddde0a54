"""Tests for the world registry and its per-id locks."""

import asyncio

import pytest
from pydantic import ValidationError

from hycore.errors import WorldNotFoundError
from hycore.models import WorldStatus
from hycore.worlds import KeyedLock, WorldRegistry

from .conftest import make_spec


class TestKeyedLock:
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        events: list[str] = []

        async def hold(name: str):
            async with locks.hold("alpha"):
                events.append(f"{name} in")
                await asyncio.sleep(0.01)
                events.append(f"{name} out")

        await asyncio.gather(hold("a"), hold("b"))

        assert events == ["a in", "a out", "b in", "b out"]

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def first():
            async with locks.hold("alpha"):
                await asyncio.wait_for(inside.wait(), timeout=1.0)

        async def second():
            async with locks.hold("beta"):
                inside.set()

        await asyncio.gather(first(), second())

    async def test_locks_are_dropped_when_unused(self):
        locks = KeyedLock()

        async with locks.hold("alpha"):
            assert len(locks) == 1
        assert len(locks) == 0

    async def test_lock_is_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("alpha"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        async with locks.hold("alpha"):
            pass


class TestWorldRegistry:
    def test_get_unknown_world(self):
        registry = WorldRegistry()

        with pytest.raises(WorldNotFoundError):
            registry.get("missing")
        assert registry.find("missing") is None

    def test_records_use_configured_buffer_size(self):
        registry = WorldRegistry(log_buffer_size=5)

        record = registry.new_record(make_spec(), WorldStatus.CREATED)

        assert record.log_buffer.maxlen == 5

    def test_list_returns_snapshots(self):
        registry = WorldRegistry()
        record = registry.add(registry.new_record(make_spec(), WorldStatus.CREATED))

        snapshots = registry.list()
        record.status = WorldStatus.STARTING

        assert snapshots[0].status == WorldStatus.CREATED
        assert registry.snapshot("alpha").status == WorldStatus.STARTING

    def test_snapshots_are_immutable(self):
        registry = WorldRegistry()
        registry.add(registry.new_record(make_spec(), WorldStatus.CREATED))

        snapshot = registry.snapshot("alpha")
        with pytest.raises(ValidationError):
            snapshot.status = WorldStatus.RUNNING

    def test_remove(self):
        registry = WorldRegistry()
        registry.add(registry.new_record(make_spec(), WorldStatus.CREATED))

        assert registry.remove("alpha") is not None
        assert registry.remove("alpha") is None
        assert "alpha" not in registry
        assert len(registry) == 0

    def test_uptime_only_while_active(self):
        registry = WorldRegistry()
        record = registry.add(registry.new_record(make_spec(), WorldStatus.CREATED))

        assert record.snapshot().uptime_seconds is None
        record.status = WorldStatus.RUNNING
        record.started_at = record.created_at
        assert record.snapshot().uptime_seconds >= 0
