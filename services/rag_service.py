# services/rag_service.py
import asyncio
import logging
import os
import time
from functools import lru_cache
from typing import Dict, List, Optional

import redis
from dotenv import load_dotenv

from models import RetrievedChunk
from services.embedding_service import get_embedding_service
from services.vector_store_service import get_vector_store_service
from utils.redis_conn import get_redis_connection

load_dotenv()

logger = logging.getLogger(__name__)


class RAGService:
    """
    Retrieval trên hai partition:
    - user partition: kiến thức riêng của tenant, luôn filter theo user_id
    - platform partition: kiến thức dùng chung, không filter
    """

    def __init__(self, embedding_service=None, vector_store=None, redis_cache=None,
                 user_partition: str = None, platform_partition: str = None):
        if embedding_service is None:
            self.embedding_service = get_embedding_service()
        else:
            self.embedding_service = embedding_service

        if vector_store is None:
            self.vector_store = get_vector_store_service()
        else:
            self.vector_store = vector_store

        self.redis_cache = redis_cache
        self.user_partition = user_partition or os.getenv("USER_KNOWLEDGE_COLLECTION", "user_knowledge")
        self.platform_partition = platform_partition or os.getenv(
            "PLATFORM_KNOWLEDGE_COLLECTION", "platform_knowledge"
        )

    async def embed_query(self, query: str) -> List[float]:
        if self.redis_cache:
            try:
                cached = await asyncio.to_thread(self.redis_cache.get_query_embedding, query)
                if cached:
                    logger.debug("[RAG] Using cached query embedding")
                    return cached
            except redis.RedisError as e:
                logger.warning(f"[RAG] Cache check error: {e}")

        t0 = time.perf_counter()
        query_embedding = await self.embedding_service.embed_query(query)
        logger.debug(f"[RAG] Query embedding took: {(time.perf_counter() - t0) * 1000:.2f}ms")

        if self.redis_cache:
            try:
                await asyncio.to_thread(self.redis_cache.cache_query_embedding, query, query_embedding)
            except redis.RedisError as e:
                logger.warning(f"[RAG] Cache save error: {e}")
        return query_embedding

    async def retrieve(
        self,
        query: str,
        user_id: str,
        top_k: int = 5,
        user_weight: float = 1.2,
        platform_weight: float = 1.0,
        score_threshold: float = 0.5,
    ) -> List[RetrievedChunk]:
        """
        Embed query một lần → search song song hai partition → merge theo weighted score.

        Returns:
            Tối đa top_k chunk, giảm dần theo weighted score.
        """
        query_vector = await self.embed_query(query)

        t0 = time.perf_counter()
        user_results, platform_results = await asyncio.gather(
            self.vector_store.search(
                self.user_partition,
                query_vector,
                limit=top_k,
                filter={"user_id": str(user_id)},
            ),
            self.vector_store.search(
                self.platform_partition,
                query_vector,
                limit=top_k,
            ),
        )
        logger.debug(f"[RAG] Partition search took: {(time.perf_counter() - t0) * 1000:.2f}ms")

        merged = self.merge_and_rank(
            user_results,
            platform_results,
            user_weight=user_weight,
            platform_weight=platform_weight,
            score_threshold=score_threshold,
        )
        logger.info(
            f"[RAG] Retrieved {len(user_results)} user + {len(platform_results)} platform hits, "
            f"{len(merged)} above threshold, returning {min(len(merged), top_k)}"
        )
        return merged[:top_k]

    @staticmethod
    def _to_chunk(result: Dict, source: str, weight: float) -> RetrievedChunk:
        payload = result.get("payload") or {}
        return RetrievedChunk(
            text=payload.get("text", ""),
            score=result["score"] * weight,
            raw_score=result["score"],
            source=source,
            document_id=payload.get("document_id"),
            file_name=payload.get("file_name"),
            chunk_index=payload.get("chunk_index"),
        )

    def merge_and_rank(
        self,
        user_results: List[Dict],
        platform_results: List[Dict],
        user_weight: float = 1.2,
        platform_weight: float = 1.0,
        score_threshold: float = 0.5,
    ) -> List[RetrievedChunk]:
        """
        Lọc theo raw score (trước khi nhân weight), nhân weight theo partition
        rồi sort giảm dần. Sort stable: cùng score thì user đứng trước platform.
        """
        scored = [
            self._to_chunk(result, "user", user_weight)
            for result in user_results
            if result["score"] >= score_threshold
        ]
        scored += [
            self._to_chunk(result, "platform", platform_weight)
            for result in platform_results
            if result["score"] >= score_threshold
        ]
        return sorted(scored, key=lambda chunk: chunk.score, reverse=True)


@lru_cache(maxsize=1)
def get_rag_service() -> RAGService:
    """
    FastAPI dependency factory that returns a singleton RAGService instance.
    """
    return RAGService(redis_cache=get_redis_connection())
