"""Short-term ring buffer.

A bounded FIFO of recent, non-significant memories kept in the relational
store under the reserved ``short_memory`` category.  Admission appends and
then evicts the oldest entries (creation order, id as tiebreaker) while
the buffer is over capacity.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from mempipe import config as cfg
from mempipe.adapter.protocols import RelationalStore
from mempipe.errors import ValidationError
from mempipe.models import SHORT_TERM_CATEGORY, Memory

logger = logging.getLogger(__name__)


class ShortTermBuffer:
    def __init__(self, store: RelationalStore, capacity: int = cfg.SHORT_TERM_CAPACITY) -> None:
        self._store = store
        self._capacity = 1
        self.set_capacity(capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def set_capacity(self, capacity: int) -> None:
        """Change the bound; excess entries are evicted on the next admit."""
        if capacity < 1:
            raise ValidationError(f"short-term capacity must be >= 1, got {capacity}")
        self._capacity = capacity

    async def admit(self, topic: str, content: str, date: Optional[date] = None) -> int:
        """Append a memory and evict the oldest while over capacity.

        Returns the id of the new buffer entry.
        """
        memory_id = await self._store.save(SHORT_TERM_CATEGORY, topic, content, date)
        count = await self._store.count_in_category(SHORT_TERM_CATEGORY)
        if count > self._capacity:
            await self._evict(count - self._capacity)
        logger.debug("Short-term admit id=%s (count=%d, capacity=%d)", memory_id, min(count, self._capacity), self._capacity)
        return memory_id

    async def _evict(self, excess: int) -> None:
        oldest = await self._store.list_by_category(
            SHORT_TERM_CATEGORY, limit=excess, newest_first=False
        )
        for memory in oldest:
            await self._store.delete(memory.id)
            logger.debug("Short-term evicted id=%s", memory.id)

    async def list(self, limit: Optional[int] = None) -> List[Memory]:
        """Entries newest-first, optionally capped below capacity."""
        cap = self._capacity if limit is None else max(0, min(limit, self._capacity))
        return await self._store.list_by_category(SHORT_TERM_CATEGORY, limit=cap, newest_first=True)

    async def count(self) -> int:
        return await self._store.count_in_category(SHORT_TERM_CATEGORY)

    async def clear(self) -> int:
        removed = await self._store.delete_category(SHORT_TERM_CATEGORY)
        logger.info("Short-term buffer cleared (%d entries)", removed)
        return removed
