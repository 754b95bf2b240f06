"""Retrieval engine for asking questions about a document."""

__version__ = "0.1.0"
