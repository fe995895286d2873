#!/usr/bin/env python3
"""Run a batch analysis job over every memory in a category.

Usage:
    python analyze_category.py CATEGORY

Prints the job's final status and one line per analysis result.
"""

from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from dotenv import load_dotenv

load_dotenv()

from mempipe.errors import CollaboratorUnavailable
from mempipe.observability.tracing import configure_logging
from mempipe.service import MemoryService


async def analyze(category: str) -> int:
    async with MemoryService.from_env() as service:
        memories = await service.relational.list_by_category(category)
        if not memories:
            print(f"No memories in category '{category}'")
            return 0
        try:
            job = await service.create_analysis_job([m.id for m in memories])
        except CollaboratorUnavailable:
            print("ERROR: OPENAI_API_KEY or OPENAI_BASE_URL must be set.")
            return 1
        print(f"Job {job.id}: analysing {len(memories)} memories...")
        job = await service.process_analysis_job(job.id)
        print(f"Job {job.id}: {job.status.value} ({job.progress_current}/{job.progress_total})")
        for result in await service.analysis_results(job.id):
            print(
                f"  #{result.memory_id:<6} {result.memory_type:<20} "
                f"conf={result.confidence:.2f} mood={result.mood} concepts={', '.join(result.concepts)}"
            )
    return 0


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(2)
    configure_logging()
    sys.exit(asyncio.run(analyze(sys.argv[1])))
