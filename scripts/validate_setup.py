#!/usr/bin/env python
"""Validate setup - check dependencies, embedding model and vector storage."""
import sys
import asyncio
import tempfile
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")

def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")

def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")

def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")

def print_section(title):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")

async def main():
    print_section("docqa - Setup Validation")

    errors = []
    warnings = []

    # 1. Python version check
    print_section("1. Python Environment")
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    print_info(f"Python version: {python_version}")
    if sys.version_info >= (3, 10):
        print_success("Python version >= 3.10")
    else:
        print_error("Python version < 3.10 (required)")
        errors.append("Python version too old")

    in_venv = hasattr(sys, 'real_prefix') or (hasattr(sys, 'base_prefix') and sys.base_prefix != sys.prefix)
    if in_venv:
        print_success("Running in virtual environment")
    else:
        print_warning("Not running in virtual environment (recommended)")
        warnings.append("Not in venv")

    # 2. Import core dependencies
    print_section("2. Core Dependencies")

    dependencies = [
        ("faiss", "FAISS vector search"),
        ("numpy", "NumPy"),
        ("sentence_transformers", "Sentence embeddings"),
        ("rank_bm25", "BM25 keyword ranking"),
        ("pydantic", "Data validation"),
        ("structlog", "Structured logging"),
        ("pytest", "Testing framework"),
    ]

    for module_name, description in dependencies:
        try:
            __import__(module_name)
            print_success(f"{description:30} ({module_name})")
        except ImportError as e:
            print_error(f"{description:30} ({module_name}) - {e}")
            errors.append(f"Missing: {module_name}")

    if errors:
        print_error("Cannot continue without core dependencies")
        return errors, warnings

    # 3. Test configuration
    print_section("3. Configuration")

    try:
        sys.path.insert(0, str(Path(__file__).parent.parent))
        from docqa import config
        from docqa.log import configure_logging

        configure_logging("WARNING", json_output=False)

        print_success("Config loaded successfully")
        print_info(f"  Embedding model: {config.EMBEDDING_MODEL}")
        print_info(f"  Embedding dimension: {config.EMBEDDING_DIMENSION}")
        print_info(f"  Chunk size / overlap: {config.CHUNK_SIZE} / {config.CHUNK_OVERLAP} chars")
        print_info(f"  Vector store: {config.VECTOR_STORE_DIR}")

        if config.CHUNK_OVERLAP >= config.CHUNK_SIZE:
            print_error("CHUNK_OVERLAP must be smaller than CHUNK_SIZE")
            errors.append("Invalid chunk configuration")

    except Exception as e:
        print_error(f"Failed to load config: {e}")
        errors.append("Config loading failed")
        return errors, warnings

    # 4. Embedding model
    print_section("4. Embedding Model")

    from docqa.rag.embeddings import EmbeddingGenerator

    embedder = EmbeddingGenerator()
    try:
        print_info(f"Loading {embedder.get_model_name()} (downloads on first use)...")
        await embedder.initialize()
        vector = await embedder.embed("test")
        print_success(f"Embedding model working (dimension: {len(vector)})")
    except Exception as e:
        print_error(f"Embedding model check failed: {e}")
        errors.append(f"Embedding error: {e}")
        return errors, warnings

    # 5. Vector store round trip
    print_section("5. Vector Store")

    from docqa.rag.store_faiss import FAISSVectorStore

    with tempfile.TemporaryDirectory() as tmp:
        store = FAISSVectorStore(storage_path=Path(tmp), embedding_model=embedder.get_model_name())
        try:
            await store.initialize()
            await store.add_chunks(
                "validate",
                [{"text": "test", "ordinal_index": 0}],
                [vector],
            )
            results = await store.search("validate", vector, 1)
            if results and results[0].distance < 1e-3:
                print_success("Write and exact-match search working")
            else:
                print_error("Exact-match search did not return the stored passage")
                errors.append("Vector search mismatch")
            await store.delete_document("validate")
            if await store.has_document("validate"):
                print_error("Delete did not remove the table")
                errors.append("Vector delete failed")
            else:
                print_success("Delete working")
        except Exception as e:
            print_error(f"Vector store check failed: {e}")
            errors.append(f"Vector store error: {e}")

    # 6. Summary
    print_section("Summary")

    if not errors:
        print_success("All checks passed! ✨")
        print_info("\n  Next step: python scripts/index_document.py <doc-id> --file <text file>")
    else:
        print_error(f"Found {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")

    if warnings:
        print_warning(f"\nFound {len(warnings)} warning(s):")
        for i, warning in enumerate(warnings, 1):
            print(f"  {i}. {warning}")

    print()
    return errors, warnings

if __name__ == "__main__":
    errors, warnings = asyncio.run(main())
    sys.exit(1 if errors else 0)
