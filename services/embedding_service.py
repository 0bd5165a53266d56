# services/embedding_service.py
import asyncio
import logging
import os
from functools import lru_cache
from typing import List, Literal, Union

import numpy as np
from dotenv import load_dotenv

from utils.errors import DependencyFailureError

load_dotenv()

logger = logging.getLogger(__name__)

EmbeddingKind = Literal["document", "query"]


class EmbeddingService:
    """
    Service quản lý embedding model (sentence-transformers).
    Model, device và prefix được cấu hình từ .env.

    Query và document có thể dùng prefix khác nhau cho các model asymmetric
    (ví dụ nomic-embed-text: "search_query: " / "search_document: ").
    Với model symmetric như bge-m3 để trống cả hai prefix.
    """

    def __init__(self, model_name: str = None, device: str = None, cache_folder: str = None,
                 query_prefix: str = None, document_prefix: str = None):
        self.model_name = model_name or os.getenv("EMBEDDING_MODEL", "BAAI/bge-m3")
        self.cache_folder = cache_folder or os.getenv("EMBEDDING_CACHE_FOLDER", None)
        self.device = device or os.getenv("EMBEDDING_DEVICE", "cpu")
        self.query_prefix = query_prefix if query_prefix is not None else os.getenv("EMBEDDING_QUERY_PREFIX", "")
        self.document_prefix = (
            document_prefix if document_prefix is not None else os.getenv("EMBEDDING_DOCUMENT_PREFIX", "")
        )
        self.trust_remote_code = os.getenv("EMBEDDING_TRUST_REMOTE_CODE", "false").lower() == "true"
        self._model = None

    def _ensure_model(self):
        """Lazy-load model ở lần encode đầu tiên."""
        if self._model is not None:
            return self._model

        import torch
        from sentence_transformers import SentenceTransformer

        logger.info(f"[Embedding] Loading embedding model: {self.model_name}")
        logger.info(f"[Embedding] Cache folder: {self.cache_folder or 'default (~/.cache/huggingface/)'}")

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("[Embedding] CUDA requested but not available, falling back to CPU")
            self.device = "cpu"

        self._model = SentenceTransformer(
            self.model_name,
            device=self.device,
            cache_folder=self.cache_folder,
            trust_remote_code=self.trust_remote_code,
        )
        logger.info(f"[Embedding] Model loaded on {self.device}")
        return self._model

    def encode(
        self,
        texts: Union[str, List[str]],
        batch_size: int = 64,
        show_progress_bar: bool = False,
        normalize_embeddings: bool = True
    ) -> np.ndarray:
        """
        Encode text(s) thành embeddings (blocking, chạy trên thread hiện tại).

        Args:
            texts: String hoặc list of strings (đã gắn prefix)
            batch_size: Batch size cho encoding
            show_progress_bar: Hiển thị progress bar
            normalize_embeddings: Normalize về unit vector (cosine)
        """
        model = self._ensure_model()
        return model.encode(
            texts,
            batch_size=batch_size,
            show_progress_bar=show_progress_bar,
            convert_to_numpy=True,
            normalize_embeddings=normalize_embeddings,
        )

    def _prefix(self, kind: EmbeddingKind) -> str:
        return self.query_prefix if kind == "query" else self.document_prefix

    async def embed(self, text: str, kind: EmbeddingKind = "document") -> List[float]:
        vectors = await self.embed_batch([text], kind=kind)
        return vectors[0]

    async def embed_query(self, query: str) -> List[float]:
        return await self.embed(query, kind="query")

    async def embed_documents(self, texts: List[str], batch_size: int = 64) -> List[List[float]]:
        return await self.embed_batch(texts, kind="document", batch_size=batch_size)

    async def embed_batch(self, texts: List[str], kind: EmbeddingKind = "document",
                          batch_size: int = 64) -> List[List[float]]:
        if not texts:
            return []
        prefix = self._prefix(kind)
        prefixed = [f"{prefix}{text}" for text in texts]
        try:
            embeddings = await asyncio.to_thread(self.encode, prefixed, batch_size)
        except Exception as e:
            raise DependencyFailureError("embedding", f"{type(e).__name__}: {e}") from e
        return np.asarray(embeddings).tolist()

    def get_model_info(self) -> dict:
        """Lấy thông tin về model"""
        return {
            "model_name": self.model_name,
            "device": self.device,
            "cache_folder": self.cache_folder,
            "query_prefix": self.query_prefix,
            "document_prefix": self.document_prefix,
            "loaded": self._model is not None,
        }


@lru_cache(maxsize=1)
def get_embedding_service() -> EmbeddingService:
    """
    Singleton factory cho EmbeddingService với @lru_cache.
    """
    return EmbeddingService()
