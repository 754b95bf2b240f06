"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DOCQA_DATA_DIR", str(BASE_DIR / "data")))
VECTOR_STORE_DIR = Path(os.getenv("DOCQA_VECTOR_DIR", str(DATA_DIR / "vectors")))

# Embedding model (local, runs in-process)
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "384"))  # all-MiniLM-L6-v2
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "8"))
EMBEDDING_CACHE_SIZE = int(os.getenv("EMBEDDING_CACHE_SIZE", "256"))  # 0 disables
EMBEDDING_DEVICE = os.getenv("EMBEDDING_DEVICE") or None  # None = let torch decide

# Chunking parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "800"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "150"))

# Retrieval parameters
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
SEMANTIC_CANDIDATES = int(os.getenv("SEMANTIC_CANDIDATES", "20"))
LEXICAL_CANDIDATES = int(os.getenv("LEXICAL_CANDIDATES", "20"))
RRF_K = float(os.getenv("RRF_K", "60"))
BM25_K1 = float(os.getenv("BM25_K1", "1.5"))
BM25_B = float(os.getenv("BM25_B", "0.75"))

# Vector store
STORE_TIMEOUT = float(os.getenv("STORE_TIMEOUT", "30.0"))  # seconds, per search
INDEX_MAX_AGE_DAYS = int(os.getenv("INDEX_MAX_AGE_DAYS", "30"))  # idle tables older than this are pruned

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
