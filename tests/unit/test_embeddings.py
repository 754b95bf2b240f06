"""Unit tests for the embedding generator (fake model, no downloads)."""
import asyncio
import threading

import numpy as np
import pytest

from docqa.rag.embeddings import EmbeddingGenerator
from docqa.rag.errors import EmbeddingError, InitializationError, InvalidConfigError


class CountingLoader:
    """Model loader that records how often it runs and can fail first."""

    def __init__(self, model, failures: int = 0):
        self.model = model
        self.failures = failures
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, name):
        with self._lock:
            self.calls += 1
            if self.calls <= self.failures:
                raise OSError("model files unavailable")
        return self.model


def make_generator(loader, dimension, **kwargs):
    return EmbeddingGenerator(
        model_name="fake-model",
        dimension=dimension,
        model_loader=loader,
        **kwargs,
    )


def test_embed_returns_normalized_vector(embedder):
    """Test that a single embedding has the configured length and unit norm."""
    vector = asyncio.run(embedder.embed("Hello world"))

    assert len(vector) == embedder.get_dimension()
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)


def test_embed_is_deterministic(embedder):
    """Test that the same text gives the same vector."""

    async def run():
        return await embedder.embed("stable text"), await embedder.embed("stable text")

    first, second = asyncio.run(run())
    assert first == second


def test_lazy_initialization(embedder):
    """Test that the model is loaded on first use."""
    assert embedder.state == "uninitialized"
    assert not embedder.is_initialized()

    asyncio.run(embedder.embed("trigger load"))

    assert embedder.state == "ready"
    assert embedder.is_initialized()


def test_concurrent_initialize_loads_once(fake_model):
    """Test that concurrent callers share a single model load."""
    loader = CountingLoader(fake_model)
    generator = make_generator(loader, fake_model.dimension)

    async def run():
        await asyncio.gather(*(generator.initialize() for _ in range(5)))
        await asyncio.gather(*(generator.embed(f"text {i}") for i in range(5)))

    asyncio.run(run())

    assert loader.calls == 1
    assert generator.is_initialized()


def test_failed_initialization_is_retryable(fake_model):
    """Test that a failed load leaves the generator ready to try again."""
    loader = CountingLoader(fake_model, failures=1)
    generator = make_generator(loader, fake_model.dimension)

    with pytest.raises(InitializationError):
        asyncio.run(generator.initialize())
    assert generator.state == "uninitialized"

    asyncio.run(generator.initialize())

    assert loader.calls == 2
    assert generator.state == "ready"


def test_model_dimension_mismatch(model_factory):
    """Test that a model with the wrong output size fails initialization."""
    generator = make_generator(lambda name: model_factory(dimension=64), dimension=32)

    with pytest.raises(InitializationError):
        asyncio.run(generator.embed("anything"))
    assert not generator.is_initialized()


def test_embed_rejects_non_text(embedder):
    """Test that non-string input is an embedding error."""
    with pytest.raises(EmbeddingError):
        asyncio.run(embedder.embed(None))


def test_embed_batch_order_and_batching(embedder, fake_model):
    """Test that batch output matches input order and batches are sized correctly."""
    texts = [f"passage number {i} about topic {i % 3}" for i in range(10)]

    async def run():
        batch = await embedder.embed_batch(texts, batch_size=4)
        singles = [await embedder.embed(t) for t in texts]
        return batch, singles

    batch, singles = asyncio.run(run())

    assert [len(call) for call in fake_model.calls[:3]] == [4, 4, 2]
    assert len(batch) == len(texts)
    for got, expected in zip(batch, singles):
        assert got == pytest.approx(expected, abs=1e-6)


def test_embed_batch_progress(embedder):
    """Test that progress is reported after each batch."""
    progress = []
    texts = [f"text {i}" for i in range(5)]

    def on_progress(done, total):
        progress.append((done, total))

    asyncio.run(embedder.embed_batch(texts, batch_size=2, progress_callback=on_progress))

    assert progress == [(2, 5), (4, 5), (5, 5)]


def test_embed_batch_empty(embedder):
    """Test that an empty batch returns nothing and does not load the model."""
    assert asyncio.run(embedder.embed_batch([])) == []
    assert not embedder.is_initialized()


def test_embed_batch_invalid_batch_size(embedder):
    """Test that a non-positive batch size is rejected."""
    with pytest.raises(InvalidConfigError):
        asyncio.run(embedder.embed_batch(["text"], batch_size=0))


def test_embed_batch_failure_is_whole_batch(model_factory):
    """Test that a failing text fails its batch and later batches never run."""
    texts = [f"text {i}" for i in range(6)]
    model = model_factory(fail_on={"text 3"})
    generator = make_generator(lambda name: model, model.dimension)

    with pytest.raises(EmbeddingError, match="Batch 2/3"):
        asyncio.run(generator.embed_batch(texts, batch_size=2))

    assert [len(call) for call in model.calls] == [2, 2]


def test_embed_batch_cancellation_stops_before_next_batch(embedder, fake_model):
    """Test that cancelling between batches prevents further model calls."""
    texts = [f"text {i}" for i in range(12)]

    async def run():
        task = None

        def on_progress(done, total):
            if done == 4:
                task.cancel()

        task = asyncio.create_task(
            embedder.embed_batch(texts, batch_size=4, progress_callback=on_progress)
        )
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert [len(call) for call in fake_model.calls] == [4]


def test_query_cache(fake_model):
    """Test that repeated texts are served from the cache."""
    generator = make_generator(lambda name: fake_model, fake_model.dimension, cache_size=2)

    async def run():
        await generator.embed("repeat me")
        await generator.embed("repeat me")

    asyncio.run(run())
    assert len(fake_model.calls) == 1

    generator.clear_cache()
    asyncio.run(generator.embed("repeat me"))
    assert len(fake_model.calls) == 2
