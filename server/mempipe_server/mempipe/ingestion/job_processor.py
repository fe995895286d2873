"""Batch analysis jobs.

A job classifies an explicit list of existing memories with the semantic
analyzer and records one ``AnalysisResult`` per memory.  Jobs move through
``pending -> running -> {completed, failed}``; a memory that is missing or
cannot be analysed is logged and skipped without failing the job.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from mempipe.adapter.protocols import JobStore, RelationalStore, SemanticAnalyzer
from mempipe.errors import InvariantViolation, JobProcessorBusy, ValidationError
from mempipe.models import AnalysisJob, AnalysisResult, JobStatus, utc_now

logger = logging.getLogger(__name__)


class JobProcessor:
    """Runs one analysis job at a time."""

    def __init__(self, jobs: JobStore, relational: RelationalStore, analyzer: SemanticAnalyzer) -> None:
        self.jobs = jobs
        self.relational = relational
        self.analyzer = analyzer
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def create_job(self, memory_ids: Sequence[int]) -> AnalysisJob:
        if not memory_ids:
            raise ValidationError("an analysis job needs at least one memory id")
        job = await self.jobs.create_job(list(memory_ids))
        logger.info("Created analysis job %s for %d memories", job.id, len(job.memory_ids))
        return job

    async def process(self, job_id: str) -> AnalysisJob:
        """Run *job_id* to completion and return its final state."""
        if self._busy:
            logger.warning("Job %s rejected: another job is being processed", job_id)
            raise JobProcessorBusy("another job is already being processed")

        self._busy = True
        try:
            job = await self.jobs.get_job(job_id)
            if job is None:
                raise ValidationError(f"job {job_id} not found")
            await self._transition(job, JobStatus.RUNNING)
            try:
                await self._analyze_all(job)
            except Exception as exc:
                logger.exception("Analysis job %s failed", job_id)
                await self._transition(job, JobStatus.FAILED, str(exc))
                raise
            await self._transition(job, JobStatus.COMPLETED)
            logger.info("Analysis job %s completed (%d memories)", job_id, job.progress_total)
            return await self.jobs.get_job(job_id) or job
        finally:
            self._busy = False

    async def _transition(self, job: AnalysisJob, target: JobStatus, error: Optional[str] = None) -> None:
        if not job.status.can_transition_to(target):
            raise InvariantViolation(f"job {job.id}: illegal transition {job.status.value} -> {target.value}")
        await self.jobs.update_job_status(job.id, target, error)
        job.status = target

    async def _analyze_all(self, job: AnalysisJob) -> None:
        total = len(job.memory_ids)
        for position, memory_id in enumerate(job.memory_ids, start=1):
            memory = await self.relational.get_by_id(memory_id)
            if memory is None:
                logger.error("Job %s: memory %s not found, skipping", job.id, memory_id)
            else:
                await self._analyze_one(job, memory)
            await self.jobs.update_job_progress(job.id, position)
            job.progress_current = position
            logger.debug("Job %s progress %d/%d", job.id, position, total)

    async def _analyze_one(self, job: AnalysisJob, memory) -> None:
        try:
            concepts = await self.analyzer.extract_concepts(memory)
        except Exception as exc:
            logger.error("Job %s: analysis failed for memory %s: %s", job.id, memory.id, exc)
            return
        if not concepts:
            logger.error("Job %s: no concepts for memory %s, skipping", job.id, memory.id)
            return

        first = concepts[0]
        keywords = list(dict.fromkeys(k for c in concepts for k in c.keywords))
        await self.jobs.save_analysis_result(
            AnalysisResult(
                job_id=job.id,
                memory_id=memory.id,
                memory_type=first.memory_type,
                confidence=first.confidence,
                mood=first.mood,
                keywords=keywords,
                concepts=[c.title for c in concepts],
                created_at=utc_now(),
            )
        )
