"""SentenceTransformer-backed embedding service.

The model is loaded lazily on the first ``embed`` call and encoding runs in
a worker thread so the event loop is not blocked.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


class EmbeddingError(Exception):
    """Base exception for embedding failures."""


class ModelLoadError(EmbeddingError):
    """Raised when the embedding model fails to load."""


class SentenceTransformerEmbedder:
    """Embeds text into L2-normalised vectors (384 dims for the default model)."""

    def __init__(self, model_name: str = DEFAULT_MODEL, *, device: Optional[str] = None) -> None:
        self._model_name = model_name
        self._device = device
        self._model: Any = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _load_model(self) -> Any:
        """Load the SentenceTransformer model.

        Raises:
            ModelLoadError: If the package is missing or the model fails to load
        """
        with self._lock:
            if self._model is not None:
                return self._model
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(self._model_name, device=self._device)
                logger.info(
                    "Loaded SentenceTransformer",
                    extra={"model_name": self._model_name},
                )
            except ImportError as e:
                raise ModelLoadError(
                    "sentence-transformers package not installed. "
                    "Please install it with: pip install codelore[embeddings]"
                ) from e
            except Exception as e:
                raise ModelLoadError(
                    f"Failed to load SentenceTransformer model {self._model_name}: {e}"
                ) from e
            return self._model

    def _encode(self, text: str) -> List[float]:
        model = self._load_model()
        vector = np.asarray(model.encode(text), dtype=np.float32)
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    async def embed(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._encode, text)
