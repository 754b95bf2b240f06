"""Normalization of text handed over by the PDF text-extraction step."""
import hashlib
import re
from typing import Iterable

BULLETS = ["•", "◦", "‣", "▪", "▸", "►", "●", "○", "■", "□"]


def normalize_text(text: str) -> str:
    """Tidy extracted text before chunking.

    Keeps paragraph breaks (blank lines) so the chunker can still prefer them.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    for bullet in BULLETS:
        text = text.replace(bullet, "- ")
    text = text.replace("\u00a0", " ")  # nbsp -> space
    # De-hyphenate line breaks like "configu-\nration" -> "configuration"
    text = re.sub(r"(\w)-\n(\w)", r"\1\2", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def join_pages(pages: Iterable[str]) -> str:
    """Concatenate page texts in order, separated by a blank line."""
    return "\n\n".join(p.strip() for p in pages if p and p.strip())


def text_hash(text: str) -> str:
    """Stable fingerprint used to detect that a document's text changed."""
    return hashlib.sha1(text.encode("utf-8", errors="ignore")).hexdigest()
