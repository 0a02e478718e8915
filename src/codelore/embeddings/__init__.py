"""Embedding adapters."""

from .service import EmbeddingError, ModelLoadError, SentenceTransformerEmbedder

__all__ = ["EmbeddingError", "ModelLoadError", "SentenceTransformerEmbedder"]
