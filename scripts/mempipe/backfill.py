#!/usr/bin/env python3
"""Backfill historical memories through the save pipeline.

Usage:
    python backfill.py [--dry-run]

Reads memories from stdin (one JSON object per line with ``category``,
``topic``, ``content`` and an optional ISO ``date``) and saves each one
through the full pipeline (relational -> concepts -> retention -> graph).
"""

from __future__ import annotations

import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from dotenv import load_dotenv

load_dotenv()

from mempipe.errors import ValidationError
from mempipe.models import parse_date
from mempipe.observability.tracing import configure_logging, get_metrics
from mempipe.service import MemoryService


async def backfill(dry_run: bool = False) -> None:
    print("Reading memories from stdin (one JSON per line)...")
    saved = 0
    fallback = 0
    errors = 0

    async with MemoryService.from_env() as service:
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                if dry_run:
                    print(f"  [dry-run] Would save: [{data.get('category')}] {data.get('topic')}")
                    continue
                result = await service.save_memory(
                    data.get("category", ""),
                    data.get("topic", ""),
                    data.get("content", ""),
                    date=parse_date(data.get("date")),
                    relationships=data.get("relationships"),
                )
                if not result.success:
                    errors += 1
                    print(f"  Error: {result.error}")
                elif result.reason.startswith("kept in relational store as fallback"):
                    fallback += 1
                else:
                    saved += 1
            except (json.JSONDecodeError, ValidationError) as e:
                print(f"  Skipping invalid line: {e}")
                errors += 1

    print(f"\nBackfill complete: saved={saved} fallback={fallback} errors={errors}")
    print(f"Metrics: {get_metrics()}")


if __name__ == "__main__":
    configure_logging()
    dr = "--dry-run" in sys.argv
    asyncio.run(backfill(dry_run=dr))
