"""FAISS vector store with one table per document.

Handles:
- Per-document table creation on first write
- Exact (brute-force) L2 nearest-neighbour search
- Metadata and passage persistence next to each index
- Per-document write serialization
- Pruning of tables left unused for too long
"""
import asyncio
import hashlib
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import faiss
import numpy as np
import structlog
from pydantic import BaseModel, ValidationError

from docqa import config
from docqa.rag.chunker import BODY_SECTION, TextChunk
from docqa.rag.errors import (
    DimensionMismatchError,
    InvalidPassageError,
    NotFoundError,
    StorageError,
)
from docqa.rag.locks import KeyedLocks

logger = structlog.get_logger()

TABLE_PREFIX = "doc_"
INDEX_FILE = "vectors.index"
PASSAGES_FILE = "passages.jsonl"
METADATA_FILE = "metadata.json"


class TableMetadata(BaseModel):
    """Persisted description of one document table (metadata.json)."""

    document_id: str
    embedding_model: str
    embedding_dimension: int
    index_type: str = "IndexFlatL2"
    vector_count: int = 0
    created_at: datetime
    updated_at: datetime
    # Missing in tables written before access tracking; updated_at stands in
    last_accessed: Optional[datetime] = None
    text_hash: Optional[str] = None


class StoredPassage(BaseModel):
    """One row of passages.jsonl; row order matches the FAISS index."""

    id: str
    text: str
    ordinal_index: int
    text_length: int
    section_type: str = BODY_SECTION


@dataclass
class Passage:
    """A stored unit of retrieval."""

    id: str
    text: str
    ordinal_index: int
    text_length: int
    section_type: str = BODY_SECTION


@dataclass
class SearchResult:
    """A passage returned by nearest-neighbour search."""

    id: str
    text: str
    score: float
    distance: float


@dataclass
class DocumentTable:
    """Loaded table: FAISS index plus rows. Replaced wholesale on write."""

    index: faiss.Index
    passages: List[Passage]
    metadata: TableMetadata

    @property
    def count(self) -> int:
        return self.index.ntotal


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _replace_file(path: Path, write) -> None:
    """Write to a temp file next to ``path`` then atomically move it in place."""
    tmp_path = path.with_name(path.name + ".tmp")
    write(tmp_path)
    os.replace(tmp_path, path)


class FAISSVectorStore:
    """Per-document FAISS store with exact L2 search."""

    def __init__(
        self,
        storage_path: Path = None,
        dimension: int = None,
        embedding_model: str = None,
    ):
        """Initialize the FAISS vector store.

        Args:
            storage_path: Root directory holding one subdirectory per document
                (default from config)
            dimension: Embedding dimension shared by all tables (default from config)
            embedding_model: Embedding model name recorded in table metadata
        """
        self.storage_path = Path(storage_path or config.VECTOR_STORE_DIR)
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

        self._tables: Dict[str, DocumentTable] = {}
        # Keyed by table name
        self._locks = KeyedLocks()

        logger.debug(
            "faiss_store_created",
            storage_path=str(self.storage_path),
            dimension=self.dimension,
        )

    # Paths and locks -----------------------------------------------------

    @staticmethod
    def table_name(document_id: str) -> str:
        """Directory name for a document id.

        Non-alphanumeric characters become ``_``; ids that needed rewriting get
        a short hash suffix so distinct ids never share a table.
        """
        safe = re.sub(r"[^0-9A-Za-z]", "_", document_id)
        if safe != document_id:
            digest = hashlib.sha1(document_id.encode("utf-8")).hexdigest()[:8]
            safe = f"{safe}_{digest}"
        return TABLE_PREFIX + safe

    def _table_dir(self, document_id: str) -> Path:
        return self.storage_path / self.table_name(document_id)

    def _list_table_names(self) -> List[str]:
        if not self.storage_path.exists():
            return []
        return [
            p.name for p in self.storage_path.iterdir()
            if p.is_dir() and p.name.startswith(TABLE_PREFIX)
        ]

    # Lifecycle -----------------------------------------------------------

    async def initialize(self, storage_path: Path = None) -> None:
        """Prepare the storage root. Safe to call repeatedly.

        Args:
            storage_path: Optional new root directory

        Raises:
            StorageError: If the directory cannot be created
        """
        if storage_path is not None and Path(storage_path) != self.storage_path:
            self.storage_path = Path(storage_path)
            self._tables.clear()

        try:
            await asyncio.to_thread(self.storage_path.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "vector_store_init_failed",
                storage_path=str(self.storage_path),
                error=str(e),
            )
            raise StorageError(
                f"Failed to prepare vector store at {self.storage_path}: {e}"
            ) from e

        logger.info("vector_store_initialized", storage_path=str(self.storage_path))

    # Loading and persistence (run in worker threads) ---------------------

    @staticmethod
    def _read_metadata(table_dir: Path) -> Optional[TableMetadata]:
        metadata_path = table_dir / METADATA_FILE
        if not metadata_path.exists():
            return None

        try:
            return TableMetadata.model_validate_json(
                metadata_path.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            raise StorageError(f"Failed to load metadata from {table_dir.name}: {e}") from e

    @staticmethod
    def _write_metadata(table_dir: Path, metadata: TableMetadata) -> None:
        _replace_file(
            table_dir / METADATA_FILE,
            lambda p: p.write_text(metadata.model_dump_json(indent=2), encoding="utf-8"),
        )

    def _load_table(self, document_id: str) -> Optional[DocumentTable]:
        table_dir = self._table_dir(document_id)
        metadata = self._read_metadata(table_dir)
        if metadata is None:
            return None

        if metadata.embedding_dimension != self.dimension:
            raise DimensionMismatchError(
                f"Table for {document_id} was built with dimension "
                f"{metadata.embedding_dimension} ({metadata.embedding_model}), "
                f"store expects {self.dimension}. Please rebuild the document."
            )

        try:
            index = faiss.read_index(str(table_dir / INDEX_FILE))
            with open(table_dir / PASSAGES_FILE, "r", encoding="utf-8") as f:
                passages = [
                    Passage(**StoredPassage.model_validate_json(line).model_dump())
                    for line in f
                    if line.strip()
                ]
        except (OSError, RuntimeError, ValidationError) as e:
            raise StorageError(f"Failed to load table for {document_id}: {e}") from e

        if index.d != self.dimension:
            raise DimensionMismatchError(
                f"Index for {document_id} has dimension {index.d}, expected {self.dimension}"
            )
        if index.ntotal != len(passages):
            raise StorageError(
                f"Table for {document_id} is inconsistent: {index.ntotal} vectors, "
                f"{len(passages)} passages"
            )

        logger.debug(
            "document_table_loaded",
            document_id=document_id,
            vector_count=index.ntotal,
        )
        return DocumentTable(index=index, passages=passages, metadata=metadata)

    def _write_table(
        self,
        document_id: str,
        current: Optional[DocumentTable],
        passages: List[Passage],
        vectors: np.ndarray,
        text_hash: Optional[str],
        embedding_model: Optional[str] = None,
    ) -> DocumentTable:
        now = _utcnow()

        if current is None:
            # IndexFlatL2: exact search, fine for per-document tables
            index = faiss.IndexFlatL2(self.dimension)
            rows: List[Passage] = []
            metadata = TableMetadata(
                document_id=document_id,
                embedding_model=embedding_model or self.embedding_model,
                embedding_dimension=self.dimension,
                created_at=now,
                updated_at=now,
                text_hash=text_hash,
            )
        else:
            index = faiss.clone_index(current.index)
            rows = list(current.passages)
            metadata = current.metadata.model_copy()
            if text_hash is not None:
                metadata.text_hash = text_hash

        if len(vectors):
            index.add(vectors)
        rows.extend(passages)
        metadata.vector_count = index.ntotal
        metadata.updated_at = now
        metadata.last_accessed = now

        table_dir = self._table_dir(document_id)
        try:
            table_dir.mkdir(parents=True, exist_ok=True)
            _replace_file(
                table_dir / INDEX_FILE,
                lambda p: faiss.write_index(index, str(p)),
            )
            _replace_file(
                table_dir / PASSAGES_FILE,
                lambda p: p.write_text(
                    "".join(
                        StoredPassage(
                            id=r.id,
                            text=r.text,
                            ordinal_index=r.ordinal_index,
                            text_length=r.text_length,
                            section_type=r.section_type,
                        ).model_dump_json()
                        + "\n"
                        for r in rows
                    ),
                    encoding="utf-8",
                ),
            )
            # Metadata last: a table exists once metadata.json is in place
            self._write_metadata(table_dir, metadata)
        except (OSError, RuntimeError) as e:
            raise StorageError(f"Failed to write table for {document_id}: {e}") from e

        return DocumentTable(index=index, passages=rows, metadata=metadata)

    def _remove_table_dir(self, table_dir: Path) -> None:
        try:
            shutil.rmtree(table_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete table {table_dir.name}: {e}") from e

    async def _get_table(self, document_id: str) -> Optional[DocumentTable]:
        name = self.table_name(document_id)
        table = self._tables.get(name)
        if table is not None:
            return table

        # Cold load under the document lock so a write in progress is never seen
        async with self._locks.hold(name):
            table = self._tables.get(name)
            if table is None:
                table = await asyncio.to_thread(self._load_table, document_id)
                if table is not None:
                    self._tables[name] = table
            return table

    # Validation ----------------------------------------------------------

    @staticmethod
    def _to_passage(chunk: Any, position: int) -> Passage:
        if isinstance(chunk, Passage):
            passage = chunk
        elif isinstance(chunk, TextChunk):
            passage = Passage(
                id=f"chunk_{chunk.chunk_index}",
                text=chunk.content,
                ordinal_index=chunk.chunk_index,
                text_length=len(chunk.content),
                section_type=chunk.section_type,
            )
        elif isinstance(chunk, Mapping):
            text = chunk.get("text")
            ordinal = chunk.get("ordinal_index", chunk.get("chunk_index", position))
            passage = Passage(
                id=chunk.get("id") or f"chunk_{ordinal}",
                text=text,
                ordinal_index=ordinal,
                text_length=chunk.get("text_length", len(text) if isinstance(text, str) else 0),
                section_type=chunk.get("section_type", BODY_SECTION),
            )
        else:
            raise InvalidPassageError(
                f"Unsupported chunk type at position {position}: {type(chunk).__name__}"
            )

        if not isinstance(passage.text, str) or not passage.text:
            raise InvalidPassageError(f"Chunk at position {position} has no text")
        if not isinstance(passage.ordinal_index, int) or passage.ordinal_index < 0:
            raise InvalidPassageError(
                f"Chunk at position {position} has invalid ordinal index {passage.ordinal_index!r}"
            )
        return passage

    def _to_matrix(self, embeddings: Sequence[Sequence[float]], expected: int) -> np.ndarray:
        if len(embeddings) != expected:
            raise DimensionMismatchError(
                f"Got {expected} chunks but {len(embeddings)} embeddings"
            )
        for i, embedding in enumerate(embeddings):
            if len(embedding) != self.dimension:
                raise DimensionMismatchError(
                    f"Embedding {i} has dimension {len(embedding)}, expected {self.dimension}"
                )

        vectors = np.asarray(embeddings, dtype=np.float32).reshape(expected, self.dimension)
        if not np.all(np.isfinite(vectors)):
            raise InvalidPassageError("Embeddings contain non-finite values")
        return np.ascontiguousarray(vectors)

    def _query_vector(self, query_vector: Sequence[float]) -> np.ndarray:
        if len(query_vector) != self.dimension:
            raise DimensionMismatchError(
                f"Query dimension mismatch: expected {self.dimension}, got {len(query_vector)}"
            )
        query = np.asarray([query_vector], dtype=np.float32)
        if not np.all(np.isfinite(query)):
            raise DimensionMismatchError("Query vector contains non-finite values")
        return query

    # Public operations ---------------------------------------------------

    async def add_chunks(
        self,
        document_id: str,
        chunks: Sequence[Any],
        embeddings: Sequence[Sequence[float]],
        text_hash: Optional[str] = None,
        embedding_model: Optional[str] = None,
    ) -> int:
        """Append passages and their vectors to a document's table.

        Creates the table if it does not exist. Rows are appended as given;
        existing rows with the same id are kept. Nothing is written if any
        chunk or embedding is invalid.

        Args:
            document_id: Document id
            chunks: Passage, TextChunk or mapping objects (text, ordinal index, optional id)
            embeddings: One vector of length ``dimension`` per chunk
            text_hash: Optional fingerprint of the source text
            embedding_model: Model recorded for a new table (default: the store's)

        Returns:
            Number of rows in the table after the write

        Raises:
            DimensionMismatchError: If counts or vector lengths do not match
            InvalidPassageError: If a chunk has no text or a bad ordinal index
            StorageError: If the table cannot be written
        """
        passages = [self._to_passage(chunk, i) for i, chunk in enumerate(chunks)]
        vectors = self._to_matrix(embeddings, len(passages))

        name = self.table_name(document_id)
        async with self._locks.hold(name):
            current = self._tables.get(name)
            if current is None:
                current = await asyncio.to_thread(self._load_table, document_id)

            try:
                table = await asyncio.to_thread(
                    self._write_table,
                    document_id,
                    current,
                    passages,
                    vectors,
                    text_hash,
                    embedding_model,
                )
            except StorageError as e:
                logger.error("add_chunks_failed", document_id=document_id, error=str(e))
                raise

            self._tables[name] = table

        logger.info(
            "chunks_added",
            document_id=document_id,
            added=len(passages),
            total_vectors=table.count,
        )
        return table.count

    async def search(
        self,
        document_id: str,
        query_vector: Sequence[float],
        top_k: int = None,
        timeout: Optional[float] = None,
    ) -> List[SearchResult]:
        """Find the passages nearest to a query vector.

        Args:
            document_id: Document id
            query_vector: Vector of length ``dimension``
            top_k: Maximum number of results (default from config)
            timeout: Seconds before giving up (default from config)

        Returns:
            Results by ascending L2 distance; ties keep insertion order

        Raises:
            DimensionMismatchError: If the query vector has the wrong length or non-finite values
            NotFoundError: If the document has no table
            StorageError: If the search fails or times out
        """
        query = self._query_vector(query_vector)
        table = await self.get_table(document_id)
        return await self._search_snapshot(table, query, top_k, timeout)

    async def search_table(
        self,
        table: DocumentTable,
        query_vector: Sequence[float],
        top_k: int = None,
        timeout: Optional[float] = None,
    ) -> List[SearchResult]:
        """Like :meth:`search`, against a table obtained from :meth:`get_table`."""
        query = self._query_vector(query_vector)
        return await self._search_snapshot(table, query, top_k, timeout)

    async def _search_snapshot(
        self,
        table: DocumentTable,
        query: np.ndarray,
        top_k: Optional[int],
        timeout: Optional[float],
    ) -> List[SearchResult]:
        document_id = table.metadata.document_id
        top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k
        timeout = config.STORE_TIMEOUT if timeout is None else timeout

        if top_k <= 0 or table.count == 0:
            return []

        try:
            results = await asyncio.wait_for(
                asyncio.to_thread(self._search_table, table, query, top_k),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                "vector_search_timeout",
                document_id=document_id,
                vector_count=table.count,
                timeout=timeout,
            )
            raise StorageError(
                f"Search in {document_id} timed out after {timeout}s"
            ) from e

        logger.debug(
            "vector_search_completed",
            document_id=document_id,
            top_k=top_k,
            results_found=len(results),
        )
        return results

    @staticmethod
    def _search_table(table: DocumentTable, query: np.ndarray, top_k: int) -> List[SearchResult]:
        try:
            # Rank the whole table so ties at the cut-off resolve by row order
            squared, indices = table.index.search(query, table.count)
        except RuntimeError as e:
            raise StorageError(f"FAISS search failed: {e}") from e

        ranked = sorted(
            (max(float(d), 0.0), int(i))
            for d, i in zip(squared[0], indices[0])
            if i != -1
        )

        results = []
        for squared_distance, row in ranked[:top_k]:
            passage = table.passages[row]
            distance = float(np.sqrt(squared_distance))
            results.append(
                SearchResult(
                    id=passage.id,
                    text=passage.text,
                    score=1.0 / (1.0 + distance),
                    distance=distance,
                )
            )
        return results

    async def get_table(self, document_id: str) -> DocumentTable:
        """Current table of a document.

        Tables are never changed in place: a later write or delete installs a
        new one, and the returned table keeps answering from the rows it was
        taken with.

        Raises:
            NotFoundError: If the document has no table
        """
        table = await self._get_table(document_id)
        if table is None:
            raise NotFoundError(f"No table for document {document_id}")
        return table

    async def has_document(self, document_id: str) -> bool:
        return await self._get_table(document_id) is not None

    async def get_count(self, document_id: str) -> int:
        """Number of rows in a document's table (0 if it has none)."""
        table = await self._get_table(document_id)
        return table.count if table is not None else 0

    async def get_passages(self, document_id: str) -> List[Passage]:
        """All passages of a document in insertion order.

        Raises:
            NotFoundError: If the document has no table
        """
        table = await self.get_table(document_id)
        return list(table.passages)

    async def get_metadata(self, document_id: str) -> Optional[TableMetadata]:
        table = await self._get_table(document_id)
        return table.metadata.model_copy() if table is not None else None

    async def touch_document(self, document_id: str) -> None:
        """Record that a document's table was just used.

        Raises:
            NotFoundError: If the document has no table
            StorageError: If the metadata cannot be written
        """
        name = self.table_name(document_id)
        async with self._locks.hold(name):
            current = self._tables.get(name)
            if current is None:
                current = await asyncio.to_thread(self._load_table, document_id)
            if current is None:
                raise NotFoundError(f"No table for document {document_id}")

            metadata = current.metadata.model_copy(update={"last_accessed": _utcnow()})
            try:
                await asyncio.to_thread(
                    self._write_metadata, self._table_dir(document_id), metadata
                )
            except OSError as e:
                raise StorageError(f"Failed to update metadata for {document_id}: {e}") from e

            self._tables[name] = DocumentTable(
                index=current.index, passages=current.passages, metadata=metadata
            )

        logger.debug("document_touched", document_id=document_id)

    async def prune_stale(self, max_age: Optional[timedelta] = None) -> List[str]:
        """Drop tables that have not been used for longer than ``max_age``.

        A table's age counts from its last write or reuse.

        Args:
            max_age: Maximum idle time (default: ``INDEX_MAX_AGE_DAYS`` days)

        Returns:
            Ids of the documents whose tables were removed

        Raises:
            StorageError: If metadata cannot be read or a table cannot be removed
        """
        max_age = timedelta(days=config.INDEX_MAX_AGE_DAYS) if max_age is None else max_age
        cutoff = _utcnow() - max_age

        names = set(await asyncio.to_thread(self._list_table_names)) | set(self._tables)
        removed = []

        for name in sorted(names):
            table_dir = self.storage_path / name
            async with self._locks.hold(name):
                table = self._tables.get(name)
                if table is not None:
                    metadata = table.metadata
                else:
                    metadata = await asyncio.to_thread(self._read_metadata, table_dir)
                if metadata is None:
                    continue

                last_used = metadata.last_accessed or metadata.updated_at
                if last_used >= cutoff:
                    continue

                self._tables.pop(name, None)
                await asyncio.to_thread(self._remove_table_dir, table_dir)
                removed.append(metadata.document_id)

        logger.info(
            "stale_tables_pruned",
            tables_removed=len(removed),
            max_age_seconds=max_age.total_seconds(),
        )
        return removed

    async def delete_document(self, document_id: str) -> None:
        """Drop a document's table. Deleting a missing document is a no-op.

        Raises:
            StorageError: If the table files cannot be removed
        """
        name = self.table_name(document_id)
        async with self._locks.hold(name):
            self._tables.pop(name, None)
            await asyncio.to_thread(self._remove_table_dir, self._table_dir(document_id))

        logger.info("document_deleted", document_id=document_id)

    async def clear_all(self) -> None:
        """Drop every document table under the storage root.

        Raises:
            StorageError: If a table cannot be removed
        """
        names = set(await asyncio.to_thread(self._list_table_names)) | set(self._tables)

        for name in sorted(names):
            async with self._locks.hold(name):
                self._tables.pop(name, None)
                await asyncio.to_thread(self._remove_table_dir, self.storage_path / name)

        logger.warning("vector_store_cleared", tables_removed=len(names))

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store.

        Returns:
            Dictionary with store statistics (loaded tables only)
        """
        return {
            "storage_path": str(self.storage_path),
            "dimension": self.dimension,
            "embedding_model": self.embedding_model,
            "loaded_tables": len(self._tables),
            "loaded_vectors": sum(t.count for t in self._tables.values()),
        }


# Singleton instance for convenience
_store_instance: Optional[FAISSVectorStore] = None


async def get_vector_store() -> FAISSVectorStore:
    """Get or create a singleton vector store instance.

    Returns:
        FAISSVectorStore instance with its storage root prepared
    """
    global _store_instance
    if _store_instance is None:
        store = FAISSVectorStore()
        await store.initialize()
        _store_instance = store
    return _store_instance
