"""Hybrid retriever for question answering over a single document.

Handles:
- Document indexing (normalize, chunk, embed, store)
- Semantic search over the document's vector table
- Lexical (BM25) ranking of the same passages
- Reciprocal Rank Fusion of both rankings
- Pruning of indexes left unused for too long
"""
import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from docqa import config
from docqa.rag.chunker import BODY_SECTION, TextChunker
from docqa.rag.clean import join_pages, normalize_text, text_hash
from docqa.rag.embeddings import EmbeddingGenerator, ProgressCallback, get_embedding_generator
from docqa.rag.errors import RetrievalError
from docqa.rag.fusion import fuse_scores
from docqa.rag.keyword import KeywordRanker
from docqa.rag.locks import KeyedLocks
from docqa.rag.store_faiss import DocumentTable, FAISSVectorStore, Passage, SearchResult

logger = structlog.get_logger()


@dataclass
class HybridResult:
    """A retrieved passage with its fusion diagnostics."""

    id: str
    text: str
    fused_score: float
    rank: int
    semantic_rank: Optional[int] = None
    lexical_rank: Optional[int] = None
    distance: Optional[float] = None
    section_type: str = BODY_SECTION


class HybridRetriever:
    """Semantic + lexical retriever for the chat pipeline."""

    def __init__(
        self,
        vector_store: Optional[FAISSVectorStore] = None,
        embedder: Optional[EmbeddingGenerator] = None,
        keyword_ranker: Optional[KeywordRanker] = None,
        chunker: Optional[TextChunker] = None,
        top_k: int = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: Vector store (default store is prepared lazily)
            embedder: Embedding generator (default: process-wide instance)
            keyword_ranker: BM25 ranker
            chunker: Text chunker (default config)
            top_k: Number of results to return (default from config)
        """
        self.vector_store = vector_store
        self.embedder = embedder or get_embedding_generator()
        self.keyword_ranker = keyword_ranker or KeywordRanker()
        self.chunker = chunker or TextChunker()
        self.top_k = top_k or config.RETRIEVAL_TOP_K

        self._index_locks = KeyedLocks()

        logger.debug(
            "retriever_initialized",
            embedding_model=self.embedder.get_model_name(),
            top_k=self.top_k,
        )

    async def _ensure_vector_store(self) -> FAISSVectorStore:
        """Ensure vector store is ready."""
        if self.vector_store is None:
            self.vector_store = FAISSVectorStore(
                embedding_model=self.embedder.get_model_name(),
                dimension=self.embedder.get_dimension(),
            )
            await self.vector_store.initialize()
        return self.vector_store

    # Indexing ------------------------------------------------------------

    async def index_document(
        self,
        document_id: str,
        text: str,
        force_rebuild: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Build (or reuse) the vector table for a document's text.

        An existing table built from the same text with the same embedding
        model is reused (and marked as accessed) unless ``force_rebuild`` is
        set; any other existing table is replaced.

        Args:
            document_id: Document id
            text: Extracted document text
            force_rebuild: Rebuild even if the stored text fingerprint matches
            progress_callback: Optional callback(done, total) per embedding batch

        Returns:
            Dictionary with indexing results
        """
        store = await self._ensure_vector_store()
        cleaned = normalize_text(text)
        fingerprint = text_hash(cleaned)

        model_name = self.embedder.get_model_name()

        async with self._index_locks.hold(document_id):
            metadata = await store.get_metadata(document_id)

            if (
                metadata is not None
                and not force_rebuild
                and metadata.text_hash == fingerprint
                and metadata.embedding_model == model_name
            ):
                await store.touch_document(document_id)
                logger.info(
                    "document_index_reused",
                    document_id=document_id,
                    chunk_count=metadata.vector_count,
                )
                return {
                    "document_id": document_id,
                    "chunk_count": metadata.vector_count,
                    "reused": True,
                    "embedding_model": metadata.embedding_model,
                }

            if metadata is not None:
                logger.info(
                    "document_index_replaced",
                    document_id=document_id,
                    force_rebuild=force_rebuild,
                    previous_model=metadata.embedding_model,
                )
                await store.delete_document(document_id)
                self.keyword_ranker.invalidate(document_id)

            chunks = self.chunker.chunk_text(cleaned)
            logger.info(
                "indexing_document",
                document_id=document_id,
                text_length=len(cleaned),
                chunk_count=len(chunks),
            )

            embeddings = await self.embedder.embed_batch(
                [chunk.content for chunk in chunks],
                progress_callback=progress_callback,
            )
            count = await store.add_chunks(
                document_id,
                chunks,
                embeddings,
                text_hash=fingerprint,
                embedding_model=model_name,
            )

        logger.info("document_indexed", document_id=document_id, chunk_count=count)

        return {
            "document_id": document_id,
            "chunk_count": count,
            "reused": False,
            "embedding_model": model_name,
            "chunk_stats": self.chunker.get_chunk_stats(chunks),
        }

    async def index_pages(
        self,
        document_id: str,
        pages: Iterable[str],
        force_rebuild: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Index an ordered sequence of page texts as one document."""
        return await self.index_document(
            document_id,
            join_pages(pages),
            force_rebuild=force_rebuild,
            progress_callback=progress_callback,
        )

    # Retrieval -----------------------------------------------------------

    async def _semantic_leg(
        self,
        store: FAISSVectorStore,
        table: DocumentTable,
        query_text: str,
        query_vector: Optional[Sequence[float]],
        candidates: int,
    ) -> List[SearchResult]:
        if query_vector is None:
            query_vector = await self.embedder.embed(query_text)
        return await store.search_table(table, query_vector, candidates)

    async def _lexical_leg(
        self,
        document_id: str,
        table: DocumentTable,
        query_text: str,
        candidates: int,
    ) -> List[str]:
        ranking = await asyncio.to_thread(
            self.keyword_ranker.rank, document_id, query_text, table.passages
        )
        return ranking[:candidates]

    async def hybrid_search(
        self,
        document_id: str,
        query_text: str,
        query_vector: Optional[Sequence[float]] = None,
        top_k: Optional[int] = None,
        semantic_candidates: Optional[int] = None,
        lexical_candidates: Optional[int] = None,
        rrf_k: Optional[float] = None,
    ) -> List[HybridResult]:
        """Retrieve the passages most relevant to a question.

        Runs vector search and keyword ranking concurrently and fuses the two
        rankings with Reciprocal Rank Fusion. Both rankings and the returned
        texts come from the table as it was when the search started, even if
        the document is rebuilt meanwhile.

        Args:
            document_id: Document id
            query_text: User question
            query_vector: Precomputed query embedding (computed if omitted)
            top_k: Number of results to return (overrides default)
            semantic_candidates: Depth of the vector search ranking
            lexical_candidates: Depth of the keyword ranking
            rrf_k: RRF constant

        Returns:
            List of HybridResult objects, best first

        Raises:
            NotFoundError: If the document has not been indexed
            EmbeddingError, DimensionMismatchError, StorageError: From either leg
        """
        if not query_text or not query_text.strip():
            logger.warning("empty_query_provided", document_id=document_id)
            return []

        top_k = self.top_k if top_k is None else top_k
        if top_k <= 0:
            return []
        semantic_candidates = max(semantic_candidates or config.SEMANTIC_CANDIDATES, top_k)
        lexical_candidates = max(lexical_candidates or config.LEXICAL_CANDIDATES, top_k)

        store = await self._ensure_vector_store()

        logger.info(
            "retrieval_started",
            document_id=document_id,
            query_length=len(query_text),
            top_k=top_k,
        )

        try:
            # One table for both rankings and the returned texts
            table = await store.get_table(document_id)

            semantic_results, lexical_ranking = await asyncio.gather(
                self._semantic_leg(
                    store, table, query_text, query_vector, semantic_candidates
                ),
                self._lexical_leg(document_id, table, query_text, lexical_candidates),
            )

        except RetrievalError as e:
            logger.error(
                "retrieval_failed",
                document_id=document_id,
                error=str(e),
                error_type=type(e).__name__,
                query_preview=query_text[:100],
            )
            raise

        # First row wins for duplicate ids
        passages = {p.id: p for p in reversed(table.passages)}
        distances: Dict[str, float] = {}
        for result in semantic_results:
            distances.setdefault(result.id, result.distance)

        fused = fuse_scores(
            [r.id for r in semantic_results],
            lexical_ranking,
            top_n=top_k,
            k=rrf_k,
        )

        results = []
        for position, item in enumerate(fused, 1):
            passage: Passage = passages[item.id]
            results.append(
                HybridResult(
                    id=item.id,
                    text=passage.text,
                    fused_score=item.score,
                    rank=position,
                    semantic_rank=item.semantic_rank,
                    lexical_rank=item.lexical_rank,
                    distance=distances.get(item.id),
                    section_type=passage.section_type,
                )
            )

        logger.info(
            "retrieval_completed",
            document_id=document_id,
            semantic_hits=len(semantic_results),
            lexical_hits=len(lexical_ranking),
            results_returned=len(results),
        )

        return results

    # Lifecycle -----------------------------------------------------------

    async def get_passages(self, document_id: str) -> List[Passage]:
        store = await self._ensure_vector_store()
        return await store.get_passages(document_id)

    async def delete_document(self, document_id: str) -> None:
        store = await self._ensure_vector_store()
        self.keyword_ranker.invalidate(document_id)
        await store.delete_document(document_id)

    async def clear_all(self) -> None:
        store = await self._ensure_vector_store()
        self.keyword_ranker.invalidate()
        await store.clear_all()

    async def prune_stale(self, max_age_days: Optional[float] = None) -> List[str]:
        """Drop indexes not built or reused within ``max_age_days``.

        Args:
            max_age_days: Maximum idle time in days (default from config)

        Returns:
            Ids of the documents that were dropped
        """
        store = await self._ensure_vector_store()
        days = config.INDEX_MAX_AGE_DAYS if max_age_days is None else max_age_days
        removed = await store.prune_stale(timedelta(days=days))
        for document_id in removed:
            self.keyword_ranker.invalidate(document_id)
        return removed


# Singleton instance for convenience
_retriever_instance: Optional[HybridRetriever] = None


async def get_retriever() -> HybridRetriever:
    """Get or create a singleton retriever instance.

    Returns:
        HybridRetriever instance
    """
    global _retriever_instance
    if _retriever_instance is None:
        _retriever_instance = HybridRetriever()
        # Pre-load vector store
        await _retriever_instance._ensure_vector_store()
    return _retriever_instance


# Convenience function
async def hybrid_search(
    document_id: str,
    query_text: str,
    query_vector: Optional[Sequence[float]] = None,
    top_k: Optional[int] = None,
) -> List[Dict[str, str]]:
    """Retrieve relevant passages as ``{"id", "text"}`` dicts (convenience function).

    Args:
        document_id: Document id
        query_text: User question
        query_vector: Precomputed query embedding
        top_k: Number of results to return

    Returns:
        List of passage dicts, best first
    """
    retriever = await get_retriever()
    results = await retriever.hybrid_search(
        document_id, query_text, query_vector=query_vector, top_k=top_k
    )
    return [{"id": r.id, "text": r.text} for r in results]
