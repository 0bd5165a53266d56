# services/document_service.py
import logging
import os
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from models import Document, DocumentInfo
from services.embedding_service import get_embedding_service
from services.guardrail_service import get_guardrail_service
from services.vector_store_service import get_vector_store_service
from utils.errors import AppError, DependencyFailureError, NotFoundError, ValidationFailureError
from utils.mongodb_conn import get_mongodb_connection
from utils.text_splitter import chunk_text

load_dotenv()

logger = logging.getLogger(__name__)


class DocumentService:
    """
    Ingest tài liệu vào knowledge base: sanitize → chunk → embed (document) → upsert.
    Chunk của partition "user" mang user_id trong payload để retrieval filter theo tenant.

    Mỗi lần ingest có một bản ghi trong collection `documents` (MongoDB):
    processing → ready (kèm chunk_ids) hoặc failed (kèm error_message).
    """

    def __init__(self, embedding_service=None, vector_store=None, guardrail_service=None, db=None,
                 user_partition: str = None, platform_partition: str = None):
        self.embedding_service = embedding_service or get_embedding_service()
        self.vector_store = vector_store or get_vector_store_service()
        self.guardrail_service = guardrail_service or get_guardrail_service()

        if db is None:
            mongodb_connection = get_mongodb_connection()
            db = mongodb_connection.get_database(os.getenv("MONGODB_DATABASE", "rag_chat"))
        self.db = db

        self.partitions = {
            "user": user_partition or os.getenv("USER_KNOWLEDGE_COLLECTION", "user_knowledge"),
            "platform": platform_partition or os.getenv("PLATFORM_KNOWLEDGE_COLLECTION", "platform_knowledge"),
        }

    @property
    def collection(self):
        return self.db.documents

    async def ingest_text(
        self,
        user_id: str,
        text: str,
        file_name: Optional[str] = None,
        partition: Literal["user", "platform"] = "user",
        chunk_size: int = None,
        chunk_overlap: int = None,
    ) -> Dict:
        """
        Ingest text vào partition. Route public chỉ dùng partition "user";
        partition "platform" dành cho công cụ của operator (scripts/ingest_platform.py).
        """
        if partition not in self.partitions:
            raise ValidationFailureError(f"Unknown partition: {partition}")

        document = Document(
            document_id=str(uuid.uuid4()),
            user_id=str(user_id),
            file_name=file_name or "text",
            partition=partition,
        )
        try:
            await self.collection.insert_one(document.model_dump())
        except PyMongoError as e:
            raise DependencyFailureError("document_store", f"create failed: {e}") from e

        try:
            points = await self._build_points(document, text, chunk_size, chunk_overlap)
            await self.vector_store.upsert(self.partitions[partition], points)
        except Exception as e:
            await self._mark_failed(document.document_id, e.message if isinstance(e, AppError) else str(e))
            raise

        chunk_ids = [point["id"] for point in points]
        await self._update(document.document_id, {
            "status": "ready",
            "chunk_ids": chunk_ids,
            "chunk_count": len(chunk_ids),
        })
        logger.info(
            f"[Ingest] Document {document.document_id} ({document.file_name}): "
            f"{len(chunk_ids)} chunks into {partition}"
        )

        return {
            "document_id": document.document_id,
            "partition": partition,
            "chunk_count": len(chunk_ids),
            "chunk_ids": chunk_ids,
            "status": "ready",
        }

    async def _build_points(self, document: Document, text: str, chunk_size: int,
                            chunk_overlap: int) -> List[Dict]:
        sanitized = self.guardrail_service.sanitize_document_text(text)
        chunks = chunk_text(sanitized, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        if not chunks:
            raise ValidationFailureError("No text could be extracted from the document")

        embeddings = await self.embedding_service.embed_documents(chunks)

        created_at = datetime.now().isoformat()
        points = []
        for index, chunk in enumerate(chunks):
            points.append({
                "id": str(uuid.uuid4()),
                "vector": embeddings[index],
                "payload": {
                    "user_id": document.user_id,
                    "document_id": document.document_id,
                    "file_name": document.file_name,
                    "chunk_index": index,
                    "total_chunks": len(chunks),
                    "text": chunk,
                    "created_at": created_at,
                },
            })
        return points

    async def _update(self, document_id: str, fields: Dict):
        fields["updated_at"] = datetime.now()
        try:
            await self.collection.update_one({"document_id": document_id}, {"$set": fields})
        except PyMongoError as e:
            raise DependencyFailureError("document_store", f"update failed: {e}") from e

    async def _mark_failed(self, document_id: str, error_message: str):
        try:
            await self._update(document_id, {"status": "failed", "error_message": error_message})
        except DependencyFailureError as e:
            # Lỗi ingest gốc vẫn được raise tiếp ở caller
            logger.error(f"[Ingest] Could not mark document {document_id} as failed: {e.message}")

    async def list_documents(self, user_id: str, limit: int = 50) -> List[DocumentInfo]:
        try:
            cursor = self.collection.find(
                {"user_id": str(user_id)},
                {"chunk_ids": 0},
            ).sort("created_at", DESCENDING).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise DependencyFailureError("document_store", f"list failed: {e}") from e
        return [DocumentInfo.model_validate(doc) for doc in docs]

    async def delete_document(self, user_id: str, document_id: str,
                              partition: Literal["user", "platform"] = "user") -> Dict:
        """Xóa chunk theo chunk_ids đã lưu, rồi xóa bản ghi."""
        if partition not in self.partitions:
            raise ValidationFailureError(f"Unknown partition: {partition}")

        query = {"document_id": document_id, "user_id": str(user_id), "partition": partition}
        try:
            doc = await self.collection.find_one(query)
        except PyMongoError as e:
            raise DependencyFailureError("document_store", f"find failed: {e}") from e
        if doc is None:
            raise NotFoundError("Document not found")

        document = Document.model_validate(doc)
        if document.chunk_ids:
            await self.vector_store.delete(self.partitions[partition], ids=document.chunk_ids)

        try:
            await self.collection.delete_one(query)
        except PyMongoError as e:
            raise DependencyFailureError("document_store", f"delete failed: {e}") from e

        logger.info(f"[Ingest] Deleted document {document_id}: {len(document.chunk_ids)} chunks")
        return {"deleted": True, "chunks_removed": len(document.chunk_ids)}


@lru_cache(maxsize=1)
def get_document_service() -> DocumentService:
    return DocumentService()
