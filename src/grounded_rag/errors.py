class PipelineInvariantError(RuntimeError):
    """Raised when an upstream contract is breached; indicates a programming error."""


class DuplicateChunkError(PipelineInvariantError):
    """Two distinct candidates share one chunk id."""

    def __init__(self, chunk_id, reason: str):
        super().__init__(f"Duplicate chunk id {chunk_id!r}: {reason}")
        self.chunk_id = chunk_id


class EmptyQueryError(PipelineInvariantError):
    """An empty query reached the prompt builder."""


class RerankResponseError(Exception):
    """Reranker endpoint answered with something we cannot use.

    Internal to the reranker client; it is converted to a fallback result
    and never raised to callers.
    """
