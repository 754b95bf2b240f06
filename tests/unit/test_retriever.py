"""End-to-end tests for indexing and hybrid search (fake embedding model)."""
import asyncio

import pytest

from docqa.rag.chunker import TextChunker
from docqa.rag.embeddings import EmbeddingGenerator
from docqa.rag.errors import DimensionMismatchError, NotFoundError
from docqa.rag.keyword import KeywordRanker
from docqa.rag.retriever import HybridRetriever


def test_index_document(retriever, store, sample_document):
    """Test that indexing stores one row per chunk."""

    async def run():
        stats = await retriever.index_document("paper", sample_document)
        return stats, await store.get_passages("paper")

    stats, passages = asyncio.run(run())

    assert stats["document_id"] == "paper"
    assert stats["reused"] is False
    assert stats["chunk_count"] == len(passages) > 1
    assert stats["embedding_model"] == "fake-model"
    assert [p.ordinal_index for p in passages] == list(range(len(passages)))
    assert all(len(p.text) <= 200 for p in passages)


def test_unchanged_text_is_reused(retriever, fake_model, sample_document):
    """Test that re-indexing identical text skips embedding."""

    async def run():
        await retriever.index_document("paper", sample_document)
        calls = len(fake_model.calls)
        second = await retriever.index_document("paper", sample_document)
        return calls, second

    calls, second = asyncio.run(run())

    assert second["reused"] is True
    assert len(fake_model.calls) == calls


def test_changed_text_replaces_table(retriever, store, sample_document):
    """Test that new text rebuilds the table instead of appending."""

    async def run():
        await retriever.index_document("paper", sample_document)
        stats = await retriever.index_document("paper", "A completely different short text.")
        return stats, await store.get_passages("paper")

    stats, passages = asyncio.run(run())

    assert stats["reused"] is False
    assert stats["chunk_count"] == 1
    assert [p.text for p in passages] == ["A completely different short text."]


def test_force_rebuild(retriever, store, sample_document):
    """Test that force_rebuild re-embeds unchanged text."""

    async def run():
        first = await retriever.index_document("paper", sample_document)
        second = await retriever.index_document("paper", sample_document, force_rebuild=True)
        return first, second, await store.get_count("paper")

    first, second, count = asyncio.run(run())

    assert second["reused"] is False
    assert count == first["chunk_count"]


def test_concurrent_indexing_builds_once(retriever, store, sample_document):
    """Test that concurrent indexing of one document yields a single table."""

    async def run():
        results = await asyncio.gather(
            retriever.index_document("paper", sample_document),
            retriever.index_document("paper", sample_document),
        )
        return results, await store.get_count("paper")

    results, count = asyncio.run(run())

    assert sorted(r["reused"] for r in results) == [False, True]
    assert count == results[0]["chunk_count"]


def test_hybrid_search_finds_relevant_passage(retriever, sample_document):
    """Test that the passage about the query topic is ranked first."""

    async def run():
        await retriever.index_document("paper", sample_document)
        return await retriever.hybrid_search("paper", "How does chlorophyll drive photosynthesis?")

    results = asyncio.run(run())

    assert 1 <= len(results) <= 3
    top = results[0].text.lower()
    assert "chlorophyll" in top or "photosynthesis" in top
    assert results[0].lexical_rank is not None
    assert [r.rank for r in results] == list(range(1, len(results) + 1))
    assert len({r.id for r in results}) == len(results)
    scores = [r.fused_score for r in results]
    assert scores == sorted(scores, reverse=True)


def test_hybrid_search_with_query_vector(retriever, embedder, store, sample_document):
    """Test that a precomputed query vector is used for the semantic leg."""

    async def run():
        await retriever.index_document("paper", sample_document)
        passages = await store.get_passages("paper")
        target = passages[-1]
        vector = await embedder.embed(target.text)
        results = await retriever.hybrid_search(
            "paper", "unrelated words entirely", query_vector=vector, top_k=2
        )
        return target, results

    target, results = asyncio.run(run())

    assert results[0].id == target.id
    assert results[0].semantic_rank == 0
    assert results[0].distance == pytest.approx(0.0, abs=1e-5)


def test_hybrid_search_respects_top_k(retriever, sample_document):
    """Test that top_k caps the number of results."""

    async def run():
        await retriever.index_document("paper", sample_document)
        return await retriever.hybrid_search("paper", "plates and reefs", top_k=1)

    assert len(asyncio.run(run())) == 1


def test_hybrid_search_empty_query(retriever, sample_document):
    """Test that a blank question returns no passages."""

    async def run():
        await retriever.index_document("paper", sample_document)
        return await retriever.hybrid_search("paper", "   ")

    assert asyncio.run(run()) == []


def test_hybrid_search_unindexed_document(retriever):
    """Test that searching a document that was never indexed fails clearly."""
    with pytest.raises(NotFoundError):
        asyncio.run(retriever.hybrid_search("missing", "anything at all"))


def test_hybrid_search_wrong_query_dimension(retriever, sample_document):
    """Test that a query vector of the wrong length is rejected."""

    async def run():
        await retriever.index_document("paper", sample_document)
        short_vector = [0.1] * (retriever.embedder.get_dimension() - 1)
        await retriever.hybrid_search("paper", "glaciers", query_vector=short_vector)

    with pytest.raises(DimensionMismatchError):
        asyncio.run(run())


def test_empty_document(retriever):
    """Test that a document without text indexes to an empty table."""

    async def run():
        stats = await retriever.index_document("blank", "  \n ")
        return stats, await retriever.hybrid_search("blank", "anything")

    stats, results = asyncio.run(run())
    assert stats["chunk_count"] == 0
    assert results == []


def test_index_pages(retriever, store):
    """Test that pages are indexed as one document."""

    async def run():
        await retriever.index_pages("paged", ["Page one text.", "", "Page two text."])
        return await store.get_passages("paged")

    passages = asyncio.run(run())
    assert [p.text for p in passages] == ["Page one text.\n\nPage two text."]


def test_delete_document(retriever, sample_document):
    """Test that a deleted document can no longer be searched."""

    async def run():
        await retriever.index_document("paper", sample_document)
        await retriever.delete_document("paper")
        await retriever.hybrid_search("paper", "glaciers")

    with pytest.raises(NotFoundError):
        asyncio.run(run())


def test_clear_all(retriever, store, sample_document):
    """Test that clear_all removes every indexed document."""

    async def run():
        await retriever.index_document("one", sample_document)
        await retriever.index_document("two", "Second document text.")
        await retriever.clear_all()
        return await store.has_document("one"), await store.has_document("two")

    assert asyncio.run(run()) == (False, False)


class SlowQueryEmbedder(EmbeddingGenerator):
    """Embedding generator that waits before embedding a single query."""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def embed(self, text):
        await asyncio.sleep(self.delay)
        return await super().embed(text)


def make_retriever(store, embedder):
    return HybridRetriever(
        vector_store=store,
        embedder=embedder,
        keyword_ranker=KeywordRanker(),
        chunker=TextChunker(chunk_size=200, chunk_overlap=20),
        top_k=3,
    )


def test_rebuild_during_search_uses_one_table(store, fake_model, sample_document):
    """Test that a search overlapping a rebuild answers from the table it started with."""
    embedder = SlowQueryEmbedder(
        1.0,
        model_name="fake-model",
        dimension=fake_model.dimension,
        model_loader=lambda name: fake_model,
        cache_size=0,
    )
    retriever = make_retriever(store, embedder)

    async def run():
        await retriever.index_document("paper", sample_document)
        old_texts = {p.text for p in await store.get_passages("paper")}

        search = asyncio.create_task(
            retriever.hybrid_search("paper", "glaciers volcanoes plates reefs chlorophyll")
        )
        await asyncio.sleep(0.1)
        await retriever.index_document("paper", "A short replacement text.")
        overlapped = not search.done()

        results = await search
        return old_texts, overlapped, results, await store.get_passages("paper")

    old_texts, overlapped, results, new_passages = asyncio.run(run())

    assert overlapped
    assert results
    assert all(r.text in old_texts for r in results)
    assert [p.text for p in new_passages] == ["A short replacement text."]


def test_hybrid_search_zero_top_k(retriever, sample_document):
    """Test that asking for no results returns none instead of the default count."""

    async def run():
        await retriever.index_document("paper", sample_document)
        return (
            await retriever.hybrid_search("paper", "glaciers", top_k=0),
            await retriever.hybrid_search("paper", "glaciers", top_k=-2),
        )

    assert asyncio.run(run()) == ([], [])


def test_model_change_rebuilds_index(store, model_factory, retriever, sample_document):
    """Test that unchanged text embedded with another model is not reused."""
    other_model = model_factory()
    other = make_retriever(
        store,
        EmbeddingGenerator(
            model_name="other-model",
            dimension=other_model.dimension,
            model_loader=lambda name: other_model,
            cache_size=0,
        ),
    )

    async def run():
        await retriever.index_document("paper", sample_document)
        stats = await other.index_document("paper", sample_document)
        return stats, await store.get_metadata("paper")

    stats, metadata = asyncio.run(run())

    assert stats["reused"] is False
    assert stats["embedding_model"] == "other-model"
    assert metadata.embedding_model == "other-model"
    assert other_model.calls


def test_reuse_marks_document_accessed(retriever, store, sample_document):
    """Test that reusing an index refreshes its last-access time."""

    async def run():
        await retriever.index_document("paper", sample_document)
        before = await store.get_metadata("paper")
        await asyncio.sleep(0.01)
        stats = await retriever.index_document("paper", sample_document)
        return before, stats, await store.get_metadata("paper")

    before, stats, after = asyncio.run(run())

    assert stats["reused"] is True
    assert after.last_accessed > before.last_accessed


def test_prune_stale(retriever, store, sample_document):
    """Test that pruning drops idle indexes and keeps recent ones."""

    async def run():
        await retriever.index_document("paper", sample_document)
        kept = await retriever.prune_stale(max_age_days=30)
        dropped = await retriever.prune_stale(max_age_days=0)
        return kept, dropped, await store.has_document("paper")

    kept, dropped, exists = asyncio.run(run())

    assert kept == []
    assert dropped == ["paper"]
    assert not exists


def test_results_carry_section_type(retriever):
    """Test that retrieved passages report the section they open."""
    text = (
        "Abstract: Glaciers carve valleys and move boulders as they advance.\n\n"
        "Chlorophyll drives photosynthesis in leaves and turns light into sugar."
    )

    async def run():
        await retriever.index_document("paper", text)
        return await retriever.hybrid_search("paper", "glaciers carve valleys", top_k=1)

    results = asyncio.run(run())

    assert results[0].text.startswith("Abstract:")
    assert results[0].section_type == "abstract"


def test_index_locks_released(retriever, sample_document):
    """Test that per-document indexing locks do not outlive their use."""

    async def run():
        await asyncio.gather(
            *(retriever.index_document(f"doc{i}", sample_document) for i in range(3))
        )
        await retriever.delete_document("doc0")

    asyncio.run(run())

    assert len(retriever._index_locks) == 0
