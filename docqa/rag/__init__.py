"""Hybrid retrieval components for document question answering.

This package contains modules for:
- Extracted-text normalization and overlapping chunking
- Local embedding generation
- Per-document FAISS vector storage
- BM25 keyword ranking
- Reciprocal Rank Fusion and the hybrid retriever
"""
