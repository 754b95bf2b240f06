"""Text chunking with overlap for the retrieval pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
"""
import re
from typing import Iterable, List
from dataclasses import dataclass
import structlog

from docqa import config
from docqa.rag.clean import join_pages
from docqa.rag.errors import InvalidConfigError

logger = structlog.get_logger()

# Sentence ends, with the minimum fraction of the window a cut must keep
# for a boundary to be accepted.
SENTENCE_BREAKS = [". ", "! ", "? ", ".\n", "!\n", "?\n"]
SENTENCE_MIN_FRACTION = 0.7
WORD_MIN_FRACTION = 0.8

# Headings that open a section of a paper, matched at the start of a chunk.
# Checked in order; "summary" counts as an abstract.
SECTION_PATTERNS = {
    "abstract": re.compile(r"^(abstract|summary)[\s:]", re.IGNORECASE),
    "introduction": re.compile(r"^(introduction|background)[\s:]", re.IGNORECASE),
    "methods": re.compile(
        r"^(methods?|methodology|experimental|materials?\s+and\s+methods?)[\s:]",
        re.IGNORECASE,
    ),
    "results": re.compile(r"^(results?|findings?)[\s:]", re.IGNORECASE),
    "discussion": re.compile(r"^(discussion|analysis)[\s:]", re.IGNORECASE),
    "conclusion": re.compile(
        r"^(conclusion|concluding\s+remarks?|summary)[\s:]", re.IGNORECASE
    ),
    "references": re.compile(r"^(references?|bibliography|citations?)[\s:]", re.IGNORECASE),
}
BODY_SECTION = "body"
TITLE_SECTION = "title"


def detect_section_type(text: str) -> str:
    """Classify a chunk by the section heading it starts with.

    A short capitalized line without closing punctuation counts as a title.
    Anything else is ``"body"``.
    """
    stripped = text.strip()
    for section_type, pattern in SECTION_PATTERNS.items():
        if pattern.match(stripped):
            return section_type

    if 10 < len(stripped) < 100 and stripped[0].isupper() and stripped[-1] not in ".!?":
        return TITLE_SECTION
    return BODY_SECTION


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int
    section_type: str = BODY_SECTION

    @property
    def text_length(self) -> int:
        return len(self.content)

    @property
    def has_title(self) -> bool:
        return self.section_type == TITLE_SECTION


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum size of each chunk in characters (default from config)
            chunk_overlap: Overlap between consecutive chunks in characters (default from config)

        Raises:
            InvalidConfigError: If size is not positive or overlap is not smaller than size
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        # Validate parameters
        if self.chunk_size <= 0:
            raise InvalidConfigError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise InvalidConfigError(
                f"Overlap must not be negative, got {self.chunk_overlap}"
            )
        if self.chunk_overlap >= self.chunk_size:
            raise InvalidConfigError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Each chunk after the first starts exactly ``chunk_overlap`` characters
        before the end of the previous one.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects
        """
        if not text or not text.strip():
            return []

        text_length = len(text)

        # Handle text shorter than chunk size
        if text_length <= self.chunk_size:
            return [
                TextChunk(
                    content=text,
                    char_start=0,
                    char_end=text_length,
                    chunk_index=0,
                    section_type=detect_section_type(text),
                )
            ]

        chunks = []
        start = 0

        while True:
            end = min(start + self.chunk_size, text_length)
            chunk_content = text[start:end]

            # Try to break at sentence or word boundary (not mid-word),
            # unless this chunk already reaches the end of the text
            if end < text_length:
                chunk_content = self._adjust_chunk_boundary(chunk_content)
                end = start + len(chunk_content)

            chunks.append(
                TextChunk(
                    content=chunk_content,
                    char_start=start,
                    char_end=end,
                    chunk_index=len(chunks),
                    section_type=detect_section_type(chunk_content),
                )
            )

            if end >= text_length:
                break

            # Adjusted chunks are always longer than the overlap, so this advances
            start = end - self.chunk_overlap

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(chunks),
            avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
        )

        return chunks

    def chunk_pages(self, pages: Iterable[str]) -> List[TextChunk]:
        """Chunk an ordered sequence of page texts as one document."""
        return self.chunk_text(join_pages(pages))

    def _adjust_chunk_boundary(self, chunk_content: str) -> str:
        """Move the cut back to a natural boundary near the end of the window.

        A cut is only accepted if it keeps the chunk longer than the overlap.

        Args:
            chunk_content: Current chunk content (a full window)

        Returns:
            Adjusted chunk content
        """
        window = len(chunk_content)

        def accept(cut: int, min_fraction: float) -> bool:
            return cut > self.chunk_overlap and cut > window * min_fraction

        # Break after the last sentence end (period, !, ?) of any kind
        sentence_cuts = [
            chunk_content.rfind(break_str) + len(break_str)
            for break_str in SENTENCE_BREAKS
            if break_str in chunk_content
        ]
        best_cut = max(sentence_cuts, default=-1)
        if best_cut != -1 and accept(best_cut, SENTENCE_MIN_FRACTION):
            return chunk_content[:best_cut]

        # Try to break at paragraph boundary (double newline)
        last_paragraph = chunk_content.rfind("\n\n")
        if last_paragraph != -1 and accept(last_paragraph + 2, SENTENCE_MIN_FRACTION):
            return chunk_content[: last_paragraph + 2]

        # Try to break at single newline
        last_newline = chunk_content.rfind("\n")
        if last_newline != -1 and accept(last_newline + 1, SENTENCE_MIN_FRACTION):
            return chunk_content[: last_newline + 1]

        # Try to break at word boundary (space)
        last_space = chunk_content.rfind(" ")
        if last_space != -1 and accept(last_space + 1, WORD_MIN_FRACTION):
            return chunk_content[: last_space + 1]

        # If no good break point found, keep the hard cut
        return chunk_content

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "overlap": self.chunk_overlap,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


# Singleton instance for convenience
_chunker_instance = None


def get_chunker() -> TextChunker:
    """Get a singleton text chunker instance.

    Returns:
        TextChunker instance with default config
    """
    global _chunker_instance
    if _chunker_instance is None:
        _chunker_instance = TextChunker()
    return _chunker_instance


# Convenience function
def chunk_text(text: str) -> List[TextChunk]:
    """Chunk text using default chunker (convenience function).

    Args:
        text: Text to chunk

    Returns:
        List of TextChunk objects
    """
    chunker = get_chunker()
    return chunker.chunk_text(text)
