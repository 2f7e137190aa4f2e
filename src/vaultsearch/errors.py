from __future__ import annotations


class VaultSearchError(RuntimeError):
    retryable = False


class InvalidInput(VaultSearchError, ValueError):
    """Malformed query, options or filters. Raised before any store call."""


class InvalidDimension(InvalidInput):
    def __init__(self, expected: int, got: int):
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {got}")
        self.expected = int(expected)
        self.got = int(got)


class UpstreamUnavailable(VaultSearchError):
    """The chunk store or the embedding backend could not be reached.

    The request was not partially applied; callers may retry.
    """

    retryable = True


class ExtractionDegraded(VaultSearchError):
    """Entity extraction failed or timed out for a chunk.

    Never fatal: the chunk stays searchable by similarity and is queued for
    reprocessing.
    """

    retryable = True

    def __init__(self, chunk_id: str, reason: str):
        super().__init__(f"Entity extraction degraded for chunk {chunk_id}: {reason}")
        self.chunk_id = chunk_id
        self.reason = reason
