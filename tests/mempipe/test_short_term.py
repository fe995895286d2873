"""Tests for the short-term ring buffer."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from fakes import FakeRelationalStore
from mempipe.adapter.relational_store import SqlMemoryStore
from mempipe.errors import ValidationError
from mempipe.ingestion.short_term import ShortTermBuffer
from mempipe.pool import PoolConfig, PoolManager


def test_admit_evicts_oldest_over_capacity():
    async def run():
        buffer = ShortTermBuffer(FakeRelationalStore(), capacity=3)
        for i in range(5):
            await buffer.admit(f"t{i}", "c")
        return await buffer.list(), await buffer.count()

    entries, count = asyncio.run(run())
    assert [m.topic for m in entries] == ["t4", "t3", "t2"]
    assert count == 3


def test_list_limit_is_capped_by_capacity():
    async def run():
        buffer = ShortTermBuffer(FakeRelationalStore(), capacity=2)
        for i in range(3):
            await buffer.admit(f"t{i}", "c")
        return await buffer.list(limit=10), await buffer.list(limit=1), await buffer.list(limit=0)

    capped, one, none = asyncio.run(run())
    assert [m.topic for m in capped] == ["t2", "t1"]
    assert [m.topic for m in one] == ["t2"]
    assert none == []


def test_lowering_capacity_evicts_on_next_admit():
    async def run():
        buffer = ShortTermBuffer(FakeRelationalStore(), capacity=5)
        for i in range(5):
            await buffer.admit(f"t{i}", "c")
        buffer.set_capacity(2)
        await buffer.admit("t5", "c")
        return await buffer.list()

    assert [m.topic for m in asyncio.run(run())] == ["t5", "t4"]


@pytest.mark.parametrize("capacity", [0, -3])
def test_capacity_must_be_positive(capacity):
    with pytest.raises(ValidationError):
        ShortTermBuffer(FakeRelationalStore(), capacity=capacity)


def test_clear():
    async def run():
        store = FakeRelationalStore()
        await store.save("humor", "keep", "c")
        buffer = ShortTermBuffer(store, capacity=3)
        await buffer.admit("a", "c")
        await buffer.admit("b", "c")
        return await buffer.clear(), await buffer.count(), len(store.rows)

    assert asyncio.run(run()) == (2, 0, 1)


def test_ring_buffer_on_sqlite(tmp_path):
    async def run():
        manager = PoolManager()
        store = SqlMemoryStore(manager.acquire(PoolConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'st.db'}")))
        try:
            await store.create_schema()
            buffer = ShortTermBuffer(store, capacity=3)
            for i in range(6):
                await buffer.admit(f"t{i}", "c")
            return [m.topic for m in await buffer.list()], await store.count_in_category("short_memory")
        finally:
            await manager.release()

    topics, count = asyncio.run(run())
    assert topics == ["t5", "t4", "t3"]
    assert count == 3
