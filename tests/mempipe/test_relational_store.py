"""Tests for the SQLAlchemy relational store against a temporary SQLite file."""

import asyncio
import os
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from fakes import FakeVectorStore
from mempipe.adapter.relational_store import SqlMemoryStore, like_pattern, search_terms
from mempipe.errors import StoreError
from mempipe.models import AnalysisResult, JobStatus
from mempipe.pool import PoolConfig, PoolManager
from mempipe.retrieval.search import SearchEngine


def _run(tmp_path, body, create_schema=True):
    async def run():
        manager = PoolManager()
        store = SqlMemoryStore(manager.acquire(PoolConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'mem.db'}")))
        try:
            if create_schema:
                await store.create_schema()
            return await body(store)
        finally:
            await manager.release()

    return asyncio.run(run())


def test_search_terms():
    assert search_terms("On the Alps") == ["the", "alps"]


def test_save_and_get(tmp_path):
    async def body(store):
        memory_id = await store.save("erlebnisse", "Hiking", "alps", date(2026, 3, 1))
        return memory_id, await store.get_by_id(memory_id), await store.get_by_id(999)

    memory_id, memory, missing = _run(tmp_path, body)
    assert memory.id == memory_id
    assert (memory.category, memory.topic, memory.content) == ("erlebnisse", "Hiking", "alps")
    assert memory.date == date(2026, 3, 1)
    assert memory.created_at is not None
    assert missing is None


def test_move_and_delete(tmp_path):
    async def body(store):
        memory_id = await store.save("undefined", "T", "C")
        moved = await store.move(memory_id, "humor")
        category = (await store.get_by_id(memory_id)).category
        deleted = await store.delete(memory_id)
        again = await store.delete(memory_id)
        return moved, category, deleted, again, await store.move(memory_id, "humor")

    assert _run(tmp_path, body) == (True, "humor", True, False, False)


def test_update_changes_only_given_fields(tmp_path):
    async def body(store):
        memory_id = await store.save("humor", "Old topic", "old content")
        changed = await store.update(memory_id, content="new content")
        memory = await store.get_by_id(memory_id)
        missing = await store.update(999, topic="x")
        return changed, memory, missing

    changed, memory, missing = _run(tmp_path, body)
    assert changed is True
    assert (memory.category, memory.topic, memory.content) == ("humor", "Old topic", "new content")
    assert missing is False


def test_list_recent_newest_first(tmp_path):
    async def body(store):
        for i in range(4):
            await store.save("humor", f"t{i}", "c")
        return await store.list_recent(3)

    assert [m.topic for m in _run(tmp_path, body)] == ["t3", "t2", "t1"]


def test_search_text_matches_terms_and_categories(tmp_path):
    async def body(store):
        await store.save("erlebnisse", "Hiking trip", "We walked")
        await store.save("humor", "Joke", "a hiking pun")
        await store.save("humor", "Other", "nothing here")
        everything = await store.search_text("HIKING")
        humor = await store.search_text("hiking", ["humor"])
        short = await store.search_text("a")
        return everything, humor, short

    everything, humor, short = _run(tmp_path, body)
    assert [m.topic for m in everything] == ["Joke", "Hiking trip"]
    assert [m.topic for m in humor] == ["Joke"]
    assert {m.topic for m in short} >= {"Joke"}


def test_like_pattern_escapes_wildcards():
    assert like_pattern("a_c") == "%a\\_c%"
    assert like_pattern("50%") == "%50\\%%"
    assert like_pattern("c:\\tmp") == "%c:\\\\tmp%"


def test_wildcards_in_query_match_literally(tmp_path):
    async def body(store):
        await store.save("erlebnisse", "abc trip", "mountains")
        await store.save("humor", "joke", "a pun")
        await store.save("humor", "Discount", "100% off_season")
        underscore = await store.search_text("a_c")
        percent = await store.search_text("%%%")
        literal = await store.search_text("100% off_s")
        engine = SearchEngine(store, FakeVectorStore(search_hits=[]))
        plain = await engine.search("%%%")
        adaptive = await engine.search_intelligent("%%%")
        return underscore, percent, literal, plain, adaptive

    underscore, percent, literal, plain, adaptive = _run(tmp_path, body)
    assert underscore == []
    assert percent == []
    assert [m.topic for m in literal] == ["Discount"]
    assert plain.results == []
    assert adaptive.search_strategy == "vector_only"


def test_category_listing(tmp_path):
    async def body(store):
        for i in range(3):
            await store.save("short_memory", f"t{i}", "c")
        await store.save("humor", "j", "c")
        counts = await store.list_categories()
        oldest = await store.list_by_category("short_memory", limit=2, newest_first=False)
        newest = await store.list_by_category("short_memory", limit=1)
        removed = await store.delete_category("short_memory")
        return counts, oldest, newest, removed, await store.count_in_category("short_memory")

    counts, oldest, newest, removed, remaining = _run(tmp_path, body)
    assert counts == {"short_memory": 3, "humor": 1}
    assert [m.topic for m in oldest] == ["t0", "t1"]
    assert [m.topic for m in newest] == ["t2"]
    assert (removed, remaining) == (3, 0)


def test_job_lifecycle(tmp_path):
    async def body(store):
        job = await store.create_job([1, 2])
        await store.update_job_status(job.id, JobStatus.RUNNING)
        await store.update_job_progress(job.id, 2)
        await store.save_analysis_result(
            AnalysisResult(job.id, 1, "humor", 0.8, "positive", keywords=["pun"], concepts=["Joke"])
        )
        await store.update_job_status(job.id, JobStatus.FAILED, "boom")
        return await store.get_job(job.id), await store.list_analysis_results(job.id), await store.get_job("nope")

    job, results, missing = _run(tmp_path, body)
    assert job.status == JobStatus.FAILED
    assert job.memory_ids == [1, 2]
    assert (job.progress_current, job.progress_total) == (2, 2)
    assert job.error == "boom"
    assert job.completed_at is not None
    assert results[0].keywords == ["pun"]
    assert results[0].concepts == ["Joke"]
    assert missing is None


def test_driver_errors_become_store_errors(tmp_path):
    async def body(store):
        await store.search_text("anything")

    with pytest.raises(StoreError):
        _run(tmp_path, body, create_schema=False)


def test_ping(tmp_path):
    async def body(store):
        return await store.ping()

    assert _run(tmp_path, body) is True
