# models/Message_schema.py
import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "assistant", "system"]


class RetrievedChunkRecord(BaseModel):
    """Bản rút gọn của chunk đã dùng, lưu kèm assistant message."""

    text: str
    score: float
    source: Literal["user", "platform"]
    file_name: Optional[str] = None


class MessageMetadata(BaseModel):
    retrieved_chunks: List[RetrievedChunkRecord] = Field(default_factory=list)
    model_used: Optional[str] = None
    token_estimate: Optional[int] = None


class Message(BaseModel):
    # Message là immutable sau khi append
    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Optional[MessageMetadata] = None
