# models/Document_schema.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

DocumentStatus = Literal["processing", "ready", "failed"]


class Document(BaseModel):
    """Bản ghi của một tài liệu đã upload; chunk thật nằm trong vector store."""

    document_id: str
    user_id: str
    file_name: str
    partition: Literal["user", "platform"] = "user"
    chunk_ids: List[str] = Field(default_factory=list)
    chunk_count: int = 0
    status: DocumentStatus = "processing"
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class DocumentInfo(BaseModel):
    """Metadata dùng cho list, không kèm chunk_ids."""

    document_id: str
    file_name: str
    partition: Literal["user", "platform"] = "user"
    chunk_count: int = 0
    status: DocumentStatus
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
