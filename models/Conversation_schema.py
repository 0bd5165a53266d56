# models/Conversation_schema.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .Message_schema import Message


class Conversation(BaseModel):
    conversation_id: str
    user_id: str
    title: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    # Running summary của các message cũ (compaction)
    summary: str = ""
    # Các message [0, summary_up_to_index) đã được gộp vào summary
    summary_up_to_index: int = 0
    message_count: int = 0
    version: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    metadata: dict = Field(default_factory=dict)


class ConversationInfo(BaseModel):
    """Metadata của conversation dùng cho list, không kèm messages."""

    conversation_id: str
    title: Optional[str] = None
    message_count: int = 0
    created_at: datetime
    updated_at: datetime
