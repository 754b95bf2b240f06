"""Local embedding generation for passages and queries.

Handles:
- Lazy, shared one-time model loading
- Batched inference in worker threads
- Dimension validation and L2 normalization
- A small LRU cache for repeated query texts
"""
import asyncio
from collections import OrderedDict
from typing import Any, Callable, List, Optional, Sequence

import numpy as np
import structlog
from sentence_transformers import SentenceTransformer

from docqa import config
from docqa.rag.errors import EmbeddingError, InitializationError, InvalidConfigError

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int], None]


def load_sentence_transformer(model_name: str, device: Optional[str] = None) -> SentenceTransformer:
    """Load a sentence-transformers model (downloads it on first use)."""
    return SentenceTransformer(model_name, device=device)


class EmbeddingGenerator:
    """Sentence embedding model wrapper with shared lazy initialization."""

    def __init__(
        self,
        model_name: str = None,
        dimension: int = None,
        model_loader: Callable[[str], Any] = None,
        cache_size: int = None,
    ):
        """Initialize the embedding generator (the model is loaded lazily).

        Args:
            model_name: Model name or local path (default from config)
            dimension: Expected embedding dimension (default from config)
            model_loader: Callable returning a model for a name; the model must
                provide ``encode`` and ``get_sentence_embedding_dimension``
            cache_size: Number of query embeddings to keep (0 disables)
        """
        self.model_name = model_name or config.EMBEDDING_MODEL
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.cache_size = config.EMBEDDING_CACHE_SIZE if cache_size is None else cache_size

        self._model_loader = model_loader or (
            lambda name: load_sentence_transformer(name, device=config.EMBEDDING_DEVICE)
        )
        self._model: Optional[Any] = None
        self._init_task: Optional[asyncio.Task] = None
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    @property
    def state(self) -> str:
        if self._model is not None:
            return "ready"
        if self._init_task is not None and not self._init_task.done():
            return "initializing"
        return "uninitialized"

    def is_initialized(self) -> bool:
        return self._model is not None

    def get_dimension(self) -> int:
        return self.dimension

    def get_model_name(self) -> str:
        return self.model_name

    async def initialize(self) -> None:
        """Load the embedding model.

        Concurrent callers share one in-flight load and all complete (or
        fail) together. A failed load leaves the generator uninitialized so
        the next call retries.

        Raises:
            InitializationError: If the model cannot be loaded or has the wrong dimension
        """
        if self._model is not None:
            return

        loop = asyncio.get_running_loop()
        if self._init_task is None or self._init_task.get_loop() is not loop:
            self._init_task = loop.create_task(self._load_model())

        # Shield so one cancelled caller does not abort the load for the others
        await asyncio.shield(self._init_task)

    async def _load_model(self) -> None:
        logger.info("embedding_model_loading", model=self.model_name)

        try:
            model = await asyncio.to_thread(self._model_loader, self.model_name)
            model_dimension = model.get_sentence_embedding_dimension()
        except Exception as e:
            self._init_task = None
            logger.error(
                "embedding_model_load_failed",
                model=self.model_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise InitializationError(
                f"Failed to initialize embedding model {self.model_name}: {e}"
            ) from e

        if model_dimension is not None and model_dimension != self.dimension:
            self._init_task = None
            logger.error(
                "embedding_dimension_mismatch",
                model=self.model_name,
                expected=self.dimension,
                actual=model_dimension,
            )
            raise InitializationError(
                f"Model {self.model_name} produces {model_dimension}-dimensional "
                f"embeddings, expected {self.dimension}"
            )

        self._model = model
        logger.info(
            "embedding_model_loaded",
            model=self.model_name,
            dimension=self.dimension,
        )

    def _encode(self, texts: List[str]) -> List[List[float]]:
        """Run the model on one batch (called in a worker thread)."""
        try:
            raw = self._model.encode(
                texts,
                batch_size=len(texts),
                normalize_embeddings=True,
                convert_to_numpy=True,
                show_progress_bar=False,
            )
        except Exception as e:
            raise EmbeddingError(f"Model failed to embed text: {e}") from e

        vectors = np.asarray(raw, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape != (len(texts), self.dimension):
            raise EmbeddingError(
                f"Expected embeddings of shape ({len(texts)}, {self.dimension}), "
                f"got {vectors.shape}"
            )
        if not np.all(np.isfinite(vectors)):
            raise EmbeddingError("Model returned non-finite embedding values")

        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        vectors = vectors / np.where(norms == 0, 1.0, norms)
        return vectors.tolist()

    def _check_texts(self, texts: Sequence[Any]) -> None:
        for i, text in enumerate(texts):
            if not isinstance(text, str):
                raise EmbeddingError(
                    f"Text at position {i} is {type(text).__name__}, expected str"
                )

    async def embed(self, text: str) -> List[float]:
        """Generate an embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Normalized embedding vector of length ``dimension``

        Raises:
            InitializationError: If the model cannot be loaded
            EmbeddingError: If the text cannot be vectorized
        """
        self._check_texts([text])

        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return list(cached)

        await self.initialize()

        try:
            vector = (await asyncio.to_thread(self._encode, [text]))[0]
        except EmbeddingError as e:
            logger.error(
                "embedding_generation_failed",
                text_preview=text[:100],
                error=str(e),
            )
            raise

        if self.cache_size > 0:
            self._cache[text] = vector
            if len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

        return list(vector)

    async def embed_batch(
        self,
        texts: Sequence[str],
        batch_size: int = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[List[float]]:
        """Generate embeddings for many texts, one model call per batch.

        A failure fails the whole batch it occurs in; earlier batches are
        complete and later ones never start. Cancelling the awaiting task
        stops before the next batch (the running batch is not interrupted).

        Args:
            texts: Texts to embed
            batch_size: Texts per model call (default from config)
            progress_callback: Optional callback(done_count, total_count)

        Returns:
            Embeddings in the same order as ``texts``

        Raises:
            InvalidConfigError: If batch_size is not positive
            InitializationError: If the model cannot be loaded
            EmbeddingError: If a batch fails
        """
        batch_size = config.EMBEDDING_BATCH_SIZE if batch_size is None else batch_size
        if batch_size <= 0:
            raise InvalidConfigError(f"Batch size must be positive, got {batch_size}")

        texts = list(texts)
        if not texts:
            return []
        self._check_texts(texts)

        await self.initialize()

        total_batches = (len(texts) + batch_size - 1) // batch_size
        embeddings: List[List[float]] = []

        for batch_number, i in enumerate(range(0, len(texts), batch_size), 1):
            batch = texts[i : i + batch_size]

            if batch_number > 1:
                # Cancellation point: a pending cancel lands before the next batch is submitted
                await asyncio.sleep(0)

            try:
                embeddings.extend(await asyncio.to_thread(self._encode, batch))
            except EmbeddingError as e:
                logger.error(
                    "embedding_batch_failed",
                    batch=batch_number,
                    total_batches=total_batches,
                    batch_size=len(batch),
                    error=str(e),
                )
                raise EmbeddingError(
                    f"Batch {batch_number}/{total_batches} failed: {e}"
                ) from e

            logger.debug(
                "embeddings_batch_generated",
                batch=batch_number,
                total_batches=total_batches,
                total_so_far=len(embeddings),
            )

            if progress_callback:
                progress_callback(len(embeddings), len(texts))

        return embeddings

    def clear_cache(self) -> None:
        self._cache.clear()


# Singleton instance for convenience
_generator_instance: Optional[EmbeddingGenerator] = None


def get_embedding_generator() -> EmbeddingGenerator:
    """Get or create the process-wide embedding generator.

    Returns:
        EmbeddingGenerator instance (model not loaded until first use)
    """
    global _generator_instance
    if _generator_instance is None:
        _generator_instance = EmbeddingGenerator()
    return _generator_instance
