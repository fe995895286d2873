#!/usr/bin/env python3
"""Create the relational schema and the Qdrant collection, then probe backends.

Usage:
    python init_stores.py

Reads MEMPIPE_DATABASE_URL, QDRANT_URL, GREMLIN_URL and the OpenAI
settings from the environment (or a .env file).
"""

from __future__ import annotations

import asyncio
import os
import sys

# Allow running from repo root or scripts/mempipe/.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "server", "mempipe_server"))

from dotenv import load_dotenv

load_dotenv()

from mempipe import config as cfg
from mempipe.adapter.relational_store import SqlMemoryStore
from mempipe.observability.health import check_backends
from mempipe.pool import PoolConfig, PoolManager


async def init_stores() -> int:
    manager = PoolManager()
    store = SqlMemoryStore(manager.acquire(PoolConfig()))
    graph = None
    try:
        await store.create_schema()
        print(f"Relational schema ready ({PoolConfig().describe()['url']})")

        if cfg.QDRANT_URL:
            from mempipe.adapter.vector_store import QdrantConceptStore

            vector = QdrantConceptStore.from_config()
            try:
                await vector.ensure_collection()
                print(f"Qdrant collection '{cfg.QDRANT_COLLECTION}' ready")
            finally:
                await vector.close()
        else:
            print("QDRANT_URL not set; skipping vector collection")

        if cfg.GREMLIN_URL:
            from mempipe.adapter.graph_store import GremlinGraphStore

            graph = GremlinGraphStore()

        status = await check_backends(store, graph)
    finally:
        if graph is not None:
            graph.close()
        await manager.release()

    for name, info in status.items():
        print(f"  {name:<12} {'OK' if info['healthy'] else 'UNHEALTHY':<10} {info['service']}")
    return 0 if all(info["healthy"] for info in status.values()) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(init_stores()))
