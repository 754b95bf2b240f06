"""Pytest configuration and fixtures for unit tests."""
import hashlib
import re
import threading

import numpy as np
import pytest

from docqa.rag.chunker import TextChunker
from docqa.rag.embeddings import EmbeddingGenerator
from docqa.rag.keyword import KeywordRanker
from docqa.rag.retriever import HybridRetriever
from docqa.rag.store_faiss import FAISSVectorStore


# Small dimension keeps the tests fast; nothing depends on 384
TEST_DIMENSION = 32


class FakeEmbeddingModel:
    """Deterministic bag-of-words model with the sentence-transformers surface.

    Texts sharing words get nearby vectors, which is enough to exercise
    semantic ranking without downloading a real model.
    """

    def __init__(self, dimension: int = TEST_DIMENSION, fail_on=()):
        self.dimension = dimension
        self.fail_on = set(fail_on)
        self.calls = []
        self._lock = threading.Lock()

    def get_sentence_embedding_dimension(self):
        return self.dimension

    def encode(
        self,
        texts,
        batch_size=32,
        normalize_embeddings=False,
        convert_to_numpy=True,
        show_progress_bar=False,
    ):
        with self._lock:
            self.calls.append(list(texts))
        for text in texts:
            if text in self.fail_on:
                raise RuntimeError(f"cannot embed {text!r}")
        return np.stack([self.vector(text) for text in texts])

    def vector(self, text: str) -> np.ndarray:
        v = np.zeros(self.dimension, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            slot = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
            v[slot] += 1.0
        if not v.any():
            v[0] = 1.0
        return v / np.linalg.norm(v)


@pytest.fixture
def model_factory():
    """Build fake models with a custom dimension or failing texts."""
    return FakeEmbeddingModel


@pytest.fixture
def fake_model():
    """A fresh fake embedding model."""
    return FakeEmbeddingModel()


@pytest.fixture
def embedder(fake_model):
    """Embedding generator backed by the fake model."""
    return EmbeddingGenerator(
        model_name="fake-model",
        dimension=TEST_DIMENSION,
        model_loader=lambda name: fake_model,
        cache_size=0,
    )


@pytest.fixture
def store(tmp_path):
    """Vector store rooted in a temporary directory."""
    return FAISSVectorStore(
        storage_path=tmp_path / "vectors",
        dimension=TEST_DIMENSION,
        embedding_model="fake-model",
    )


@pytest.fixture
def random_vectors():
    """Factory for reproducible unit-length vectors."""

    def make(count: int, seed: int = 0, dimension: int = TEST_DIMENSION):
        rng = np.random.default_rng(seed)
        vectors = rng.normal(size=(count, dimension)).astype(np.float32)
        vectors /= np.linalg.norm(vectors, axis=1, keepdims=True)
        return vectors.tolist()

    return make


@pytest.fixture
def retriever(store, embedder):
    """Hybrid retriever wired to the temporary store and fake model."""
    return HybridRetriever(
        vector_store=store,
        embedder=embedder,
        keyword_ranker=KeywordRanker(),
        chunker=TextChunker(chunk_size=200, chunk_overlap=20),
        top_k=3,
    )


@pytest.fixture
def sample_document():
    """Extracted text of a small multi-topic document."""
    return "\n\n".join(
        [
            "Volcanoes form where magma reaches the surface. Eruptions release lava, "
            "ash and volcanic gases into the atmosphere.",
            "Chlorophyll absorbs light in plant leaves. Chlorophyll drives photosynthesis, "
            "and photosynthesis turns carbon dioxide and water into sugar.",
            "Glaciers are slow rivers of ice. They carve valleys, move boulders and "
            "leave moraines behind when they retreat.",
            "Coral reefs are built by tiny animals called polyps. Reefs shelter fish "
            "and protect coastlines from waves.",
            "Tectonic plates drift a few centimetres each year. Earthquakes happen "
            "where plates grind against each other.",
        ]
    )
