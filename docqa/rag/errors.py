"""Error taxonomy for the retrieval engine.

Every error derives from ``RetrievalError`` and also from the closest builtin
exception, so callers can catch either the specific type or a familiar one
(``ValueError``, ``LookupError``, ``RuntimeError``).
"""


class RetrievalError(Exception):
    """Base class for all retrieval engine errors."""


class InvalidConfigError(RetrievalError, ValueError):
    """Chunking, batching or fusion parameters are invalid."""


class InitializationError(RetrievalError, RuntimeError):
    """The embedding model or storage failed to initialize. Retryable."""


class EmbeddingError(RetrievalError, RuntimeError):
    """A text (or a batch of texts) could not be vectorized."""


class DimensionMismatchError(RetrievalError, ValueError):
    """A vector has the wrong length or non-finite values, or counts differ."""


class InvalidPassageError(RetrievalError, ValueError):
    """A passage handed to the store is malformed (e.g. has no text)."""


class NotFoundError(RetrievalError, LookupError):
    """An operation requires a document table that does not exist."""


class StorageError(RetrievalError, RuntimeError):
    """Table create/insert/search/delete failed for another reason."""
