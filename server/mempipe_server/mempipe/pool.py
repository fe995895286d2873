"""Reference-counted shared handle to the relational store.

Several engine instances (and test cases) open and close the same database
repeatedly.  ``PoolManager`` keeps a single SQLAlchemy ``AsyncEngine`` per
configuration identity and disposes of it exactly once, when the last
holder releases it.  The manager is an ordinary object owned by whoever
builds the engines; there is no module-level singleton.

Every counter update happens before the first ``await`` of a method, so
interleaved coroutines never observe a half-applied read-modify-write.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mempipe import config as cfg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolConfig:
    """Connection parameters; compared by value to decide pool reuse."""

    url: str = cfg.DATABASE_URL
    pool_size: int = cfg.DB_POOL_SIZE
    max_overflow: int = cfg.DB_MAX_OVERFLOW
    pool_timeout: int = cfg.DB_POOL_TIMEOUT
    echo: bool = cfg.DB_ECHO

    def engine_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"echo": self.echo, "pool_pre_ping": True}
        # SQLite picks its own pool class; sizing knobs only apply to server databases.
        if not self.url.startswith("sqlite"):
            kwargs.update(
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
                pool_timeout=self.pool_timeout,
            )
        return kwargs

    def describe(self) -> Dict[str, Any]:
        """Loggable view without credentials."""
        url = self.url
        if "@" in url:
            scheme, _, rest = url.partition("://")
            url = f"{scheme}://***@{rest.split('@', 1)[1]}"
        return {"url": url, "pool_size": self.pool_size, "max_overflow": self.max_overflow}


def _default_engine_factory(config: PoolConfig) -> AsyncEngine:
    return create_async_engine(config.url, **config.engine_kwargs())


class PoolManager:
    """Owns one shared engine plus its reference count."""

    def __init__(self, engine_factory: Callable[[PoolConfig], Any] | None = None) -> None:
        self._engine_factory = engine_factory or _default_engine_factory
        self._engine: Any | None = None
        self._config: Optional[PoolConfig] = None
        self._ref_count = 0
        self._closing = False
        self._pending_closes: Set[asyncio.Task] = set()

    @property
    def ref_count(self) -> int:
        return self._ref_count

    def acquire(self, config: PoolConfig) -> Any:
        """Return the shared engine for *config*, creating it if needed."""
        if self._engine is None or self._config != config:
            if self._engine is not None:
                logger.debug("PoolManager: config changed, recreating pool")
                self._close_without_waiting()
            logger.info("PoolManager: creating new shared pool %s", config.describe())
            self._engine = self._engine_factory(config)
            self._config = config
            self._ref_count = 0
            self._closing = False

        self._ref_count += 1
        logger.debug("PoolManager: reference acquired (ref_count=%d)", self._ref_count)
        return self._engine

    async def release(self) -> None:
        """Drop one reference; dispose of the engine when none remain."""
        self._ref_count = max(0, self._ref_count - 1)
        logger.debug("PoolManager: reference released (ref_count=%d)", self._ref_count)

        if self._ref_count > 0 or self._engine is None or self._closing:
            return

        engine = self._engine
        self._closing = True
        self._engine = None
        self._config = None
        try:
            logger.info("PoolManager: closing shared pool (no more references)")
            await engine.dispose()
        except Exception as exc:
            # The pool may already be gone; closing twice is not an error here.
            logger.debug("PoolManager: pool close error (likely already closed): %s", exc)
        finally:
            self._closing = False

    def force_reset(self) -> None:
        """Close without waiting and zero all state (abnormal teardown)."""
        logger.debug(
            "PoolManager: force reset (ref_count=%d, has_pool=%s)",
            self._ref_count,
            self._engine is not None,
        )
        if self._engine is not None and not self._closing:
            self._close_without_waiting()
        self._engine = None
        self._config = None
        self._ref_count = 0
        self._closing = False

    def status(self) -> Dict[str, Any]:
        return {
            "has_pool": self._engine is not None,
            "ref_count": self._ref_count,
            "is_closing": self._closing,
        }

    def _close_without_waiting(self) -> None:
        engine = self._engine
        self._engine = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("PoolManager: no running loop; dropping engine without dispose")
            return
        task = loop.create_task(self._dispose_quietly(engine))
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)

    @staticmethod
    async def _dispose_quietly(engine: Any) -> None:
        try:
            await engine.dispose()
        except Exception as exc:
            logger.debug("PoolManager: force close error (ignored): %s", exc)
