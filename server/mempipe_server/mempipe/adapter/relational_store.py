"""SQLAlchemy-backed relational store.

Implements ``RelationalStore`` and ``JobStore`` over an ``AsyncEngine``
obtained from :class:`mempipe.pool.PoolManager`.  The store never disposes
of the engine itself; pool lifetime belongs to the manager.

Tables
------
``memories``          categorized records, including the short-term ring buffer
``analysis_jobs``     batch analysis job state machine
``analysis_results``  per-memory classifications written by the job processor
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date
from functools import wraps
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from mempipe.errors import StoreError
from mempipe.models import (
    AnalysisJob,
    AnalysisResult,
    JobStatus,
    Memory,
    utc_now,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

memories = Table(
    "memories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("date", Date, nullable=False),
    Column("category", String(64), nullable=False, index=True),
    Column("topic", String(255), nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, default=utc_now),
    Column("updated_at", DateTime, nullable=False, default=utc_now),
)

analysis_jobs = Table(
    "analysis_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("status", String(16), nullable=False),
    Column("job_type", String(32), nullable=False, default="batch_analysis"),
    Column("memory_ids", Text, nullable=False),
    Column("progress_current", Integer, nullable=False, default=0),
    Column("progress_total", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=utc_now),
    Column("updated_at", DateTime, nullable=False, default=utc_now),
    Column("completed_at", DateTime, nullable=True),
    Column("error_message", Text, nullable=True),
)

analysis_results = Table(
    "analysis_results",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("job_id", String(36), ForeignKey("analysis_jobs.id"), nullable=False, index=True),
    Column("memory_id", Integer, nullable=False),
    Column("memory_type", String(64), nullable=False),
    Column("confidence", Float, nullable=False, default=0.0),
    Column("mood", String(32), nullable=False, default="neutral"),
    Column("keywords", Text, nullable=False, default="[]"),
    Column("concepts", Text, nullable=False, default="[]"),
    Column("created_at", DateTime, nullable=False, default=utc_now),
)

SEARCH_ROW_LIMIT = 100
MIN_TERM_LENGTH = 3
LIKE_ESCAPE = "\\"


def _translate_errors(func):
    """Re-raise driver errors as ``StoreError`` so callers see one type."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Relational store %s failed: %s", func.__name__, exc)
            raise StoreError(f"Failed to {func.__name__}: {exc}") from exc

    return wrapper


def _row_to_memory(row: Any) -> Memory:
    return Memory(
        id=row.id,
        category=row.category,
        topic=row.topic,
        content=row.content,
        date=row.date,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_job(row: Any) -> AnalysisJob:
    return AnalysisJob(
        id=row.id,
        status=JobStatus(row.status),
        memory_ids=json.loads(row.memory_ids),
        progress_current=row.progress_current,
        progress_total=row.progress_total,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        error=row.error_message,
    )


def search_terms(query: str) -> List[str]:
    """Lower-cased query terms long enough to be meaningful."""
    return [term for term in query.lower().split() if len(term) >= MIN_TERM_LENGTH]


def like_pattern(term: str) -> str:
    """Substring pattern for *term* with LIKE wildcards escaped."""
    escaped = term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
    escaped = escaped.replace("%", LIKE_ESCAPE + "%").replace("_", LIKE_ESCAPE + "_")
    return f"%{escaped}%"


class SqlMemoryStore:
    """Relational store on SQLAlchemy Core (SQLite, PostgreSQL, ...)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create_schema(self) -> None:
        """Create missing tables (idempotent)."""
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except SQLAlchemyError:
            logger.exception("Relational store ping failed")
            return False

    # -- Memories ------------------------------------------------------

    @_translate_errors
    async def save(
        self, category: str, topic: str, content: str, date: Optional[date] = None
    ) -> int:
        now = utc_now()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                insert(memories).values(
                    date=date or now.date(),
                    category=category,
                    topic=topic,
                    content=content,
                    created_at=now,
                    updated_at=now,
                )
            )
            memory_id = result.inserted_primary_key[0]
        logger.debug("Saved memory id=%s category=%s", memory_id, category)
        return int(memory_id)

    @_translate_errors
    async def get_by_id(self, memory_id: int) -> Optional[Memory]:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(memories).where(memories.c.id == memory_id))
            row = result.first()
        return _row_to_memory(row) if row is not None else None

    @_translate_errors
    async def delete(self, memory_id: int) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(memories).where(memories.c.id == memory_id))
        return result.rowcount > 0

    @_translate_errors
    async def move(self, memory_id: int, new_category: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(memories)
                .where(memories.c.id == memory_id)
                .values(category=new_category, updated_at=utc_now())
            )
        return result.rowcount > 0

    @_translate_errors
    async def update(
        self,
        memory_id: int,
        topic: Optional[str] = None,
        content: Optional[str] = None,
        category: Optional[str] = None,
    ) -> bool:
        """Overwrite the given fields; ``None`` leaves a field unchanged."""
        values: Dict[str, Any] = {"updated_at": utc_now()}
        if topic is not None:
            values["topic"] = topic
        if content is not None:
            values["content"] = content
        if category is not None:
            values["category"] = category
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(memories).where(memories.c.id == memory_id).values(**values)
            )
        return result.rowcount > 0

    @_translate_errors
    async def list_recent(self, limit: int) -> List[Memory]:
        stmt = (
            select(memories)
            .order_by(memories.c.created_at.desc(), memories.c.id.desc())
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return [_row_to_memory(row) for row in result]

    @_translate_errors
    async def search_text(
        self, query: str, categories: Optional[Sequence[str]] = None
    ) -> List[Memory]:
        terms = search_terms(query) or [query.strip().lower()]
        matches = []
        for term in terms:
            pattern = like_pattern(term)
            matches.append(func.lower(memories.c.topic).like(pattern, escape=LIKE_ESCAPE))
            matches.append(func.lower(memories.c.content).like(pattern, escape=LIKE_ESCAPE))

        condition = or_(*matches)
        if categories:
            condition = and_(condition, memories.c.category.in_(list(categories)))

        stmt = (
            select(memories)
            .where(condition)
            .order_by(memories.c.created_at.desc(), memories.c.id.desc())
            .limit(SEARCH_ROW_LIMIT)
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return [_row_to_memory(row) for row in result]

    @_translate_errors
    async def list_categories(self) -> Dict[str, int]:
        stmt = select(memories.c.category, func.count()).group_by(memories.c.category)
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return {category: count for category, count in result}

    @_translate_errors
    async def list_by_category(
        self, category: str, limit: Optional[int] = None, newest_first: bool = True
    ) -> List[Memory]:
        order = (
            (memories.c.created_at.desc(), memories.c.id.desc())
            if newest_first
            else (memories.c.created_at.asc(), memories.c.id.asc())
        )
        stmt = select(memories).where(memories.c.category == category).order_by(*order)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return [_row_to_memory(row) for row in result]

    @_translate_errors
    async def count_in_category(self, category: str) -> int:
        stmt = select(func.count()).select_from(memories).where(memories.c.category == category)
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return int(result.scalar_one())

    @_translate_errors
    async def delete_category(self, category: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(memories).where(memories.c.category == category))
        return result.rowcount

    # -- Analysis jobs -------------------------------------------------

    @_translate_errors
    async def create_job(self, memory_ids: Sequence[int]) -> AnalysisJob:
        now = utc_now()
        job = AnalysisJob(
            id=str(uuid.uuid4()),
            status=JobStatus.PENDING,
            memory_ids=list(memory_ids),
            progress_total=len(memory_ids),
            created_at=now,
            updated_at=now,
        )
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(analysis_jobs).values(
                    id=job.id,
                    status=job.status.value,
                    memory_ids=json.dumps(job.memory_ids),
                    progress_current=0,
                    progress_total=job.progress_total,
                    created_at=now,
                    updated_at=now,
                )
            )
        return job

    @_translate_errors
    async def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(analysis_jobs).where(analysis_jobs.c.id == job_id))
            row = result.first()
        return _row_to_job(row) if row is not None else None

    @_translate_errors
    async def update_job_status(
        self, job_id: str, status: JobStatus, error: Optional[str] = None
    ) -> None:
        now = utc_now()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            values["completed_at"] = now
        if error is not None:
            values["error_message"] = error
        async with self._engine.begin() as conn:
            await conn.execute(update(analysis_jobs).where(analysis_jobs.c.id == job_id).values(**values))

    @_translate_errors
    async def update_job_progress(self, job_id: str, current: int) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                update(analysis_jobs)
                .where(analysis_jobs.c.id == job_id)
                .values(progress_current=current, updated_at=utc_now())
            )

    @_translate_errors
    async def save_analysis_result(self, result: AnalysisResult) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(analysis_results).values(
                    job_id=result.job_id,
                    memory_id=result.memory_id,
                    memory_type=result.memory_type,
                    confidence=result.confidence,
                    mood=result.mood,
                    keywords=json.dumps(result.keywords),
                    concepts=json.dumps(result.concepts),
                    created_at=result.created_at or utc_now(),
                )
            )

    @_translate_errors
    async def list_analysis_results(self, job_id: str) -> List[AnalysisResult]:
        stmt = (
            select(analysis_results)
            .where(analysis_results.c.job_id == job_id)
            .order_by(analysis_results.c.id.asc())
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return [
                AnalysisResult(
                    job_id=row.job_id,
                    memory_id=row.memory_id,
                    memory_type=row.memory_type,
                    confidence=row.confidence,
                    mood=row.mood,
                    keywords=json.loads(row.keywords),
                    concepts=json.loads(row.concepts),
                    created_at=row.created_at,
                )
                for row in result
            ]
