"""Exception hierarchy for the memory pipeline.

Only :class:`ValidationError` and :class:`InvariantViolation` ever reach a
caller of the pipeline or search engines, plus
:class:`CollaboratorUnavailable` for operations that cannot run without an
optional collaborator.  Collaborator exceptions are translated at the
adapter boundary and caught at phase boundaries, where they turn into a
fallback result instead of propagating.
"""

from __future__ import annotations


class MempipeError(Exception):
    """Base class for all memory pipeline errors."""


class ValidationError(MempipeError):
    """Malformed input; raised before any side effect."""


class MemoryNotFound(ValidationError):
    """The referenced memory id does not exist in the relational store."""

    def __init__(self, memory_id: int) -> None:
        super().__init__(f"memory {memory_id} not found")
        self.memory_id = memory_id


class CollaboratorUnavailable(MempipeError):
    """An optional collaborator is not configured."""

    def __init__(self, collaborator: str) -> None:
        super().__init__(f"{collaborator} not configured")
        self.collaborator = collaborator


class CollaboratorFailure(MempipeError):
    """A configured collaborator call raised or returned an error."""


class StoreError(CollaboratorFailure):
    """A backing store (relational, vector or graph) failed."""


class EmbeddingError(CollaboratorFailure):
    """Embedding generation failed after all retries."""


class AnalyzerError(CollaboratorFailure):
    """The semantic analyzer failed or returned an unusable reply."""


class InvariantViolation(MempipeError):
    """The core's own consistency assumptions are broken."""


class JobProcessorBusy(MempipeError):
    """Another analysis job is already being processed."""
