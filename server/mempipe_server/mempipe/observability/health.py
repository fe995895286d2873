"""Backend health checks.

HTTP checks (Qdrant ``/readyz``, the OpenAI-compatible ``/models``
endpoint) use ``httpx``; the relational and graph stores are checked with a
trivial query through their own clients.  Every check answers ``False``
instead of raising, so callers can print a status table.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from mempipe import config as cfg

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 5.0
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


async def check_qdrant_health(
    url: str = cfg.QDRANT_URL,
    api_key: str = cfg.QDRANT_API_KEY,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    headers = {"api-key": api_key} if api_key else {}
    try:
        async with httpx.AsyncClient(timeout=HEALTH_TIMEOUT, transport=transport) as client:
            response = await client.get(f"{url.rstrip('/')}/readyz", headers=headers)
            return response.status_code == 200
    except httpx.HTTPError as exc:
        logger.warning("Qdrant health check failed: %s", exc)
        return False


async def check_llm_health(
    base_url: str = cfg.OPENAI_BASE_URL,
    api_key: str = cfg.OPENAI_API_KEY,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    base = (base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    try:
        async with httpx.AsyncClient(timeout=HEALTH_TIMEOUT, transport=transport) as client:
            response = await client.get(f"{base}/models", headers=headers)
            return response.status_code == 200
    except httpx.HTTPError as exc:
        logger.warning("LLM endpoint health check failed: %s", exc)
        return False


async def check_backends(
    relational: Any = None,
    graph: Any = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Dict[str, Any]]:
    """Probe every configured backend and return a per-service status map."""
    status: Dict[str, Dict[str, Any]] = {}

    if relational is not None:
        status["relational"] = {"healthy": await relational.ping(), "service": "SQL database"}

    if cfg.QDRANT_URL:
        status["qdrant"] = {
            "healthy": await check_qdrant_health(cfg.QDRANT_URL, cfg.QDRANT_API_KEY, transport=transport),
            "service": "Qdrant",
            "url": cfg.QDRANT_URL,
        }

    if cfg.OPENAI_API_KEY or cfg.OPENAI_BASE_URL:
        status["llm"] = {
            "healthy": await check_llm_health(cfg.OPENAI_BASE_URL, cfg.OPENAI_API_KEY, transport=transport),
            "service": "OpenAI-compatible LLM",
            "model": cfg.LLM_MODEL,
        }

    if graph is not None:
        try:
            healthy = await graph.health_check()
            status["graph"] = {"healthy": healthy, "service": "Gremlin graph"}
        except Exception as exc:
            logger.warning("Graph health check failed: %s", exc)
            status["graph"] = {"healthy": False, "service": "Gremlin graph", "error": str(exc)}

    unhealthy = [name for name, s in status.items() if not s["healthy"]]
    if unhealthy:
        logger.warning("Unhealthy backends: %s", ", ".join(unhealthy))
    else:
        logger.info("All configured backends are healthy")
    return status
