# services/vector_store_service.py
import asyncio
import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import chromadb
from dotenv import load_dotenv

from utils.errors import DependencyFailureError

load_dotenv()

logger = logging.getLogger(__name__)


def build_where(filter: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Chuyển filter dạng {field: value} (so sánh bằng) sang where clause của Chroma."""
    if not filter:
        return None
    clauses = [{key: {"$eq": value}} for key, value in filter.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class VectorStoreService:
    """
    Vector store trên ChromaDB. Mỗi partition là một collection (cosine space).
    Score trả về là similarity = 1 - cosine distance.
    Các call của Chroma là blocking nên được đẩy sang worker thread.
    """

    def __init__(self, chroma_client=None):
        if chroma_client is None:
            chroma_path = os.getenv("CHROMADB_PATH", "./chroma_db")
            self.chroma_client = chromadb.PersistentClient(path=chroma_path)
        else:
            self.chroma_client = chroma_client

    def _collection(self, partition: str):
        return self.chroma_client.get_or_create_collection(
            name=partition, metadata={"hnsw:space": "cosine"}
        )

    def _search_sync(self, partition: str, vector: List[float], limit: int,
                     filter: Optional[Dict[str, Any]]) -> List[Dict]:
        collection = self._collection(partition)
        results = collection.query(
            query_embeddings=[vector],
            n_results=limit,
            where=build_where(filter),
            include=["documents", "metadatas", "distances"],
        )

        hits = []
        ids = results["ids"][0] if results.get("ids") else []
        for i, point_id in enumerate(ids):
            payload = dict(results["metadatas"][0][i] or {})
            payload["text"] = results["documents"][0][i]
            hits.append({
                "id": point_id,
                "score": 1.0 - results["distances"][0][i],
                "payload": payload,
            })
        hits.sort(key=lambda hit: hit["score"], reverse=True)
        return hits

    async def search(self, partition: str, vector: List[float], limit: int = 5,
                     filter: Optional[Dict[str, Any]] = None) -> List[Dict]:
        """
        Returns:
            List[{"id", "score", "payload"}] xếp giảm dần theo score.
            payload chứa metadata đã lưu + "text".
        """
        try:
            return await asyncio.to_thread(self._search_sync, partition, vector, limit, filter)
        except Exception as e:
            raise DependencyFailureError("vector_store", f"search on {partition} failed: {e}") from e

    def _upsert_sync(self, partition: str, points: List[Dict]):
        collection = self._collection(partition)
        metadatas = []
        for point in points:
            metadata = {k: v for k, v in point["payload"].items() if k != "text" and v is not None}
            metadatas.append(metadata)
        collection.upsert(
            ids=[point["id"] for point in points],
            embeddings=[point["vector"] for point in points],
            documents=[point["payload"]["text"] for point in points],
            metadatas=metadatas,
        )

    async def upsert(self, partition: str, points: List[Dict]):
        """points: [{"id", "vector", "payload": {"text", ...}}]"""
        if not points:
            return
        try:
            await asyncio.to_thread(self._upsert_sync, partition, points)
        except Exception as e:
            raise DependencyFailureError("vector_store", f"upsert on {partition} failed: {e}") from e
        logger.info(f"[VectorStore] Upserted {len(points)} points into {partition}")

    def _delete_sync(self, partition: str, ids: Optional[List[str]], filter: Optional[Dict[str, Any]]) -> int:
        collection = self._collection(partition)
        where = build_where(filter)
        matched = collection.get(ids=ids, where=where, include=[])
        matched_ids = matched.get("ids") or []
        if matched_ids:
            collection.delete(ids=matched_ids)
        return len(matched_ids)

    async def delete(self, partition: str, ids: Optional[List[str]] = None,
                     filter: Optional[Dict[str, Any]] = None) -> int:
        """Xóa theo ids hoặc filter. Trả về số point đã xóa."""
        if ids is None and not filter:
            raise ValueError("delete requires ids or a filter")
        try:
            return await asyncio.to_thread(self._delete_sync, partition, ids, filter)
        except Exception as e:
            raise DependencyFailureError("vector_store", f"delete on {partition} failed: {e}") from e


@lru_cache(maxsize=1)
def get_vector_store_service() -> VectorStoreService:
    return VectorStoreService()
