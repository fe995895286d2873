"""Settle-all fan-out.

``asyncio.gather(..., return_exceptions=True)`` already waits for every
awaitable; this module wraps each outcome in an :class:`Outcome` so callers
account for partial failure explicitly instead of type-sniffing exceptions
in a mixed list.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Outcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_settled(*awaitables: Awaitable[Any]) -> List[Outcome[Any]]:
    """Run *awaitables* concurrently and return one outcome per awaitable.

    No awaitable is cancelled when a sibling fails.  Cancelling the
    enclosing task still propagates ``asyncio.CancelledError``.
    """
    if not awaitables:
        return []
    raw = await asyncio.gather(*awaitables, return_exceptions=True)
    outcomes: List[Outcome[Any]] = []
    for item in raw:
        if isinstance(item, BaseException):
            if isinstance(item, (KeyboardInterrupt, SystemExit)):
                raise item
            outcomes.append(Outcome(error=item))
        else:
            outcomes.append(Outcome(value=item))
    return outcomes
