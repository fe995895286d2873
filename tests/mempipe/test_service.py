"""End-to-end tests for MemoryService over SQLite with in-memory collaborators."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from fakes import FakeAnalyzer, FakeGraphStore, FakeVectorStore, concept
from mempipe.errors import CollaboratorUnavailable, InvariantViolation, MemoryNotFound, ValidationError
from mempipe.models import JobStatus
from mempipe.observability.tracing import reset_metrics
from mempipe.pool import PoolConfig, PoolManager
from mempipe.service import MemoryService


def setup_function():
    reset_metrics()


def _config(tmp_path):
    return PoolConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'service.db'}")


def _by_topic(significant_topics):
    def concepts(memory):
        memory_type = "erlebnisse" if memory.topic in significant_topics else "faktenwissen"
        return [concept(memory_type, title=memory.topic, description=memory.content)]

    return concepts


def test_save_then_search_round_trip(tmp_path):
    manager = PoolManager()
    analyzer = FakeAnalyzer(_by_topic({"Summit day"}), significant=True)
    vector = FakeVectorStore()
    graph = FakeGraphStore()

    async def run():
        async with MemoryService(manager, _config(tmp_path), analyzer=analyzer, vector=vector, graph=graph) as svc:
            kept = await svc.save_memory("erlebnisse", "Summit day", "We reached the summit together")
            fact = await svc.save_memory("undefined", "Summit height", "The summit is 4807 metres high")
            response = await svc.search_intelligent("summit")
            categories = await svc.list_categories()
            return kept, fact, response, categories

    kept, fact, response, categories = asyncio.run(run())

    assert kept.stored_in_relational is True
    assert fact.stored_in_relational is False
    assert fact.stored_in_vector is True
    assert categories == {"erlebnisse": 1}

    by_id = {h.memory.id: h for h in response.results}
    assert set(by_id) == {kept.memory_id, fact.memory_id}
    assert by_id[fact.memory_id].reconstructed is True
    assert by_id[fact.memory_id].memory.category == "faktenwissen"
    assert by_id[kept.memory_id].source == "both"
    assert manager.status()["has_pool"] is False


def test_short_term_buffer_exposed(tmp_path):
    analyzer = FakeAnalyzer([concept("humor")], significant=False)

    async def run():
        svc = MemoryService(PoolManager(), _config(tmp_path), analyzer=analyzer, vector=FakeVectorStore(),
                            short_term_capacity=2)
        await svc.open()
        try:
            for i in range(3):
                await svc.save_memory("humor", f"Joke {i}", "a pun")
            return [m.topic for m in await svc.short_term.list()]
        finally:
            await svc.close()

    assert asyncio.run(run()) == ["Joke 2", "Joke 1"]


def test_services_share_one_pool(tmp_path):
    manager = PoolManager()

    async def run():
        first = await MemoryService(manager, _config(tmp_path)).open()
        second = await MemoryService(manager, _config(tmp_path)).open()
        shared = manager.ref_count
        await first.close()
        still_open = manager.status()["has_pool"]
        result = await second.save_memory("humor", "T", "C")
        await second.close()
        return shared, still_open, result

    shared, still_open, result = asyncio.run(run())
    assert shared == 2
    assert still_open is True
    assert result.stored_in_relational is True
    assert manager.status()["has_pool"] is False


def test_analysis_jobs_through_service(tmp_path):
    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path), analyzer=FakeAnalyzer()) as svc:
            saved = await svc.save_memory("erlebnisse", "T", "C")
            job = await svc.create_analysis_job([saved.memory_id])
            job = await svc.process_analysis_job(job.id)
            return job, await svc.analysis_results(job.id)

    job, results = asyncio.run(run())
    assert job.status == JobStatus.COMPLETED
    assert [r.memory_type for r in results] == ["erlebnisse"]


def test_jobs_need_an_analyzer(tmp_path):
    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path)) as svc:
            with pytest.raises(CollaboratorUnavailable):
                await svc.create_analysis_job([1])

    asyncio.run(run())


def test_calls_before_open_rejected(tmp_path):
    svc = MemoryService(PoolManager(), _config(tmp_path))
    with pytest.raises(InvariantViolation):
        asyncio.run(svc.search("anything"))


def test_concurrent_open_takes_one_pool_reference(tmp_path):
    manager = PoolManager()

    async def run():
        svc = MemoryService(manager, _config(tmp_path))
        opened = await asyncio.gather(svc.open(), svc.open(), svc.open())
        refs = manager.ref_count
        await svc.close()
        return all(o is svc for o in opened), refs

    same, refs = asyncio.run(run())
    assert same is True
    assert refs == 1
    assert manager.status()["has_pool"] is False


# ── Record access and maintenance ────────────────────────────────────

def test_recall_category_and_recent_memories(tmp_path):
    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path)) as svc:
            for i in range(3):
                await svc.save_memory("humor", f"Joke {i}", "a pun")
            await svc.save_memory("erlebnisse", "Trip", "alps")
            recalled = await svc.recall_category("humor", limit=2)
            recent = await svc.get_recent_memories(2)
            empty = await svc.recall_category("bewusstsein")
            with pytest.raises(ValidationError):
                await svc.get_recent_memories(0)
            return recalled, recent, empty

    recalled, recent, empty = asyncio.run(run())
    assert [m.topic for m in recalled] == ["Joke 2", "Joke 1"]
    assert [m.topic for m in recent] == ["Trip", "Joke 2"]
    assert empty == []


def test_update_memory(tmp_path):
    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path)) as svc:
            saved = await svc.save_memory("humor", "Pun", "old text")
            updated = await svc.update_memory(saved.memory_id, content="new text")
            recategorized = await svc.update_memory(saved.memory_id, topic="Better pun", category="kernerinnerungen")
            for kwargs in ({}, {"topic": "  "}, {"category": "nonsense"}):
                with pytest.raises(ValidationError):
                    await svc.update_memory(saved.memory_id, **kwargs)
            with pytest.raises(MemoryNotFound):
                await svc.update_memory(999, topic="x")
            return updated, recategorized

    updated, recategorized = asyncio.run(run())
    assert (updated.topic, updated.content) == ("Pun", "new text")
    assert (recategorized.topic, recategorized.category) == ("Better pun", "kernerinnerungen")


def test_move_memory(tmp_path):
    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path)) as svc:
            saved = await svc.save_memory("humor", "Pun", "text")
            moved = await svc.move_memory(saved.memory_id, "forgotten_memories")
            with pytest.raises(ValidationError):
                await svc.move_memory(saved.memory_id, "undefined")
            with pytest.raises(MemoryNotFound):
                await svc.move_memory(999, "humor")
            return moved, await svc.list_categories()

    moved, categories = asyncio.run(run())
    assert moved.category == "forgotten_memories"
    assert categories == {"forgotten_memories": 1}


def test_memory_status(tmp_path):
    manager = PoolManager()
    analyzer = FakeAnalyzer([concept("humor")], significant=False)

    async def run():
        svc = MemoryService(manager, _config(tmp_path), analyzer=analyzer, vector=FakeVectorStore(),
                            short_term_capacity=5)
        async with svc:
            await svc.save_memory("humor", "Joke", "a pun")
            await svc.save_memory("humor", "Gag", "a gag")
            return await svc.memory_status()

    status = asyncio.run(run())
    assert status.categories == {"short_memory": 2}
    assert status.total_memories == 2
    assert (status.short_term_count, status.short_term_capacity) == (2, 5)
    assert (status.capabilities.analyzer, status.capabilities.vector, status.capabilities.graph) == (True, True, False)
    assert status.pool["ref_count"] == 1


def test_search_concepts_only(tmp_path):
    analyzer = FakeAnalyzer(_by_topic(set()))

    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path), analyzer=analyzer, vector=FakeVectorStore()) as svc:
            fact = await svc.save_memory("faktenwissen", "Summit height", "The summit is 4807 metres high")
            await svc.save_memory("faktenwissen", "River", "The river is long")
            hits = await svc.search_concepts_only("summit")
            filtered = await svc.search_concepts_only("summit", ["humor"])
            return fact, hits, filtered

    fact, hits, filtered = asyncio.run(run())
    assert [h.memory.id for h in hits] == [fact.memory_id]
    assert hits[0].reconstructed is True
    assert hits[0].memory.topic == "Summit height"
    assert filtered == []


def test_search_concepts_only_needs_vector_store(tmp_path):
    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path)) as svc:
            with pytest.raises(CollaboratorUnavailable):
                await svc.search_concepts_only("summit")

    asyncio.run(run())


def test_retrieve_memory_advanced(tmp_path):
    analyzer = FakeAnalyzer(lambda m: [concept("erlebnisse", title=m.topic, description=m.content)])
    graph = FakeGraphStore()

    async def run():
        async with MemoryService(PoolManager(), _config(tmp_path), analyzer=analyzer, vector=FakeVectorStore(),
                                 graph=graph) as svc:
            first = await svc.save_memory("erlebnisse", "Summit day", "We reached the summit together")
            second = await svc.save_memory("erlebnisse", "Summit dinner", "Dinner after the summit")
            details = await svc.retrieve_memory_advanced(first.memory_id)
            with pytest.raises(MemoryNotFound):
                await svc.retrieve_memory_advanced(999)
            return first, second, details

    first, second, details = asyncio.run(run())
    assert details.memory.topic == "Summit day"
    assert {h.source_memory_id for h in details.related_concepts} == {first.memory_id, second.memory_id}
    assert [h.memory.id for h in details.related_memories] == [second.memory_id]
    related = details.related_memories[0]
    assert related.reconstructed is False
    assert related.graph_enhanced is True
    assert related.memory.content == "Dinner after the summit"
    assert [(e.from_id, e.to_id) for e in details.graph.edges] == [(second.memory_id, first.memory_id)]
