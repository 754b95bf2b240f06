#!/usr/bin/env python
"""Index a document's extracted text and ask questions about it.

Usage:
    python scripts/index_document.py paper-1 --file paper.txt           # Index (reuses unchanged)
    python scripts/index_document.py paper-1 --file paper.txt --rebuild # Force rebuild
    python scripts/index_document.py paper-1 --query "What is the main result?"
    python scripts/index_document.py paper-1 --delete                   # Drop the table
    python scripts/index_document.py paper-1 --prune-days 30            # Drop tables idle for 30 days
"""
import argparse
import asyncio
import sys
from pathlib import Path
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docqa import config
from docqa.log import configure_logging
from docqa.rag.errors import RetrievalError
from docqa.rag.retriever import HybridRetriever
from docqa.rag.store_faiss import FAISSVectorStore
import structlog

logger = structlog.get_logger()

# Text extractors commonly separate pages with a form feed
PAGE_SEPARATOR = "\f"


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int):
        """Update progress after each embedding batch."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total} chunks embedded)",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        """Finish progress reporting."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Document:         {stats['document_id']}")
        print(f"  Chunks stored:    {stats['chunk_count']}")
        print(f"  Reused existing:  {'yes' if stats['reused'] else 'no'}")
        print(f"  Embedding model:  {stats['embedding_model']}")
        print(f"  Time elapsed:     {elapsed_seconds:.1f}s")

        if stats["chunk_count"] > 0 and not stats["reused"] and elapsed_seconds > 0:
            rate = stats["chunk_count"] / elapsed_seconds
            print(f"  Indexing rate:    {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")


def print_results(results) -> None:
    if not results:
        print("No matching passages.\n")
        return

    for result in results:
        legs = []
        if result.semantic_rank is not None:
            legs.append(f"semantic #{result.semantic_rank + 1}")
        if result.lexical_rank is not None:
            legs.append(f"keyword #{result.lexical_rank + 1}")
        preview = " ".join(result.text.split())[:300]
        print(
            f"[{result.rank}] {result.id} ({result.section_type})  "
            f"rrf={result.fused_score:.4f}  ({', '.join(legs)})"
        )
        print(f"    {preview}\n")


async def main():
    """Main entry point for the indexing script."""
    parser = argparse.ArgumentParser(
        description="Index a document and query it with hybrid retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/index_document.py paper-1 --file paper.txt
  python scripts/index_document.py paper-1 --file paper.txt --rebuild
  python scripts/index_document.py paper-1 --query "Which dataset is used?" --top-k 3
        """,
    )

    parser.add_argument("document_id", help="Document id (any string)")
    parser.add_argument(
        "--file",
        type=Path,
        default=None,
        help="UTF-8 text file with the extracted document text (pages split by form feeds)",
    )
    parser.add_argument("--query", "-q", default=None, help="Question to ask")
    parser.add_argument(
        "--top-k",
        type=int,
        default=config.RETRIEVAL_TOP_K,
        help=f"Number of passages to return (default: {config.RETRIEVAL_TOP_K})",
    )
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild the document table even if the text is unchanged",
    )
    parser.add_argument("--delete", action="store_true", help="Delete the document table")
    parser.add_argument(
        "--prune-days",
        type=float,
        default=None,
        help="Drop every document table not built or reused in this many days",
    )
    parser.add_argument(
        "--storage",
        type=Path,
        default=None,
        help=f"Vector store root (default: {config.VECTOR_STORE_DIR})",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress and debug logs",
    )

    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING", json_output=False)

    if not (args.file or args.query or args.delete or args.prune_days is not None):
        parser.error("nothing to do: pass --file, --query, --delete or --prune-days")

    store = FAISSVectorStore(storage_path=args.storage)
    await store.initialize()
    retriever = HybridRetriever(vector_store=store)
    progress = ProgressReporter(verbose=args.verbose)

    try:
        if args.prune_days is not None:
            removed = await retriever.prune_stale(args.prune_days)
            print(f"\nPruned {len(removed)} idle document table(s)")
            for document_id in removed:
                print(f"   - {document_id}")
            print()

        if args.delete:
            await retriever.delete_document(args.document_id)
            print(f"\nDeleted document {args.document_id}\n")
            return

        if args.file:
            print("\nConfiguration:")
            print(f"   Vector store:     {store.storage_path}")
            print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
            print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
            print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")

            pages = args.file.read_text(encoding="utf-8").split(PAGE_SEPARATOR)

            action = "Rebuilding" if args.rebuild else "Indexing"
            progress.start(f"{action} {args.file.name}")

            stats = await retriever.index_pages(
                args.document_id,
                pages,
                force_rebuild=args.rebuild,
                progress_callback=progress.update,
            )
            progress.finish(stats)

        if args.query:
            print(f"\nQuestion: {args.query}\n")
            results = await retriever.hybrid_search(
                args.document_id, args.query, top_k=args.top_k
            )
            print_results(results)

    except KeyboardInterrupt:
        print("\n\nCancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except RetrievalError as e:
        print(f"\nError: {e}\n")
        logger.error("index_document_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
