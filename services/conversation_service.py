# services/conversation_service.py
import logging
import os
import uuid
from datetime import datetime
from functools import lru_cache
from typing import List, Optional, Sequence

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from models import Conversation, ConversationInfo, Message
from utils.errors import DependencyFailureError, NotFoundError
from utils.mongodb_conn import get_mongodb_connection

logger = logging.getLogger(__name__)


class ConversationService:
    """
    Conversation store trên MongoDB. Mỗi conversation là một document,
    messages được embed trong document nên mỗi update là atomic.
    """

    def __init__(self, db=None):
        if db is None:
            mongodb_connection = get_mongodb_connection()
            db = mongodb_connection.get_database(os.getenv("MONGODB_DATABASE", "rag_chat"))
        self.db = db

    @property
    def collection(self):
        return self.db.conversations

    async def create_conversation(
        self,
        user_id: str,
        title: str = None,
        messages: Optional[Sequence[Message]] = None,
    ) -> Conversation:
        """
        Tạo conversation mới. Nếu truyền messages thì conversation được tạo
        cùng các message đó trong một lần insert.
        """
        now = datetime.now()
        messages = list(messages or [])
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            user_id=str(user_id),
            title=title or f"Conversation {now.strftime('%Y-%m-%d %H:%M')}",
            messages=messages,
            message_count=len(messages),
            created_at=now,
            updated_at=now,
        )
        try:
            await self.collection.insert_one(conversation.model_dump())
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"create failed: {e}") from e
        logger.info(f"[Conversation] Created {conversation.conversation_id} for user {user_id}")
        return conversation

    async def find_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        """Tìm conversation thuộc về user (tenant-scoped)."""
        try:
            doc = await self.collection.find_one(
                {"conversation_id": conversation_id, "user_id": str(user_id), "is_active": True}
            )
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"find failed: {e}") from e
        return Conversation.model_validate(doc) if doc else None

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            doc = await self.collection.find_one({"conversation_id": conversation_id})
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"get failed: {e}") from e
        return Conversation.model_validate(doc) if doc else None

    async def list_conversations(self, user_id: str, limit: int = 50) -> List[ConversationInfo]:
        try:
            cursor = self.collection.find(
                {"user_id": str(user_id), "is_active": True},
                {"messages": 0, "summary": 0},
            ).sort("updated_at", DESCENDING).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"list failed: {e}") from e
        return [ConversationInfo.model_validate(doc) for doc in docs]

    async def add_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """
        Append nhiều message trong một update duy nhất ($push $each):
        hoặc tất cả được ghi, hoặc không message nào.
        """
        try:
            result = await self.collection.update_one(
                {"conversation_id": conversation_id},
                {
                    "$push": {"messages": {"$each": [m.model_dump() for m in messages]}},
                    "$inc": {"message_count": len(messages), "version": 1},
                    "$set": {"updated_at": datetime.now()},
                },
            )
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"append failed: {e}") from e
        if result.matched_count == 0:
            raise NotFoundError("Conversation not found")

    async def update_summary(
        self,
        conversation_id: str,
        summary: str,
        summary_up_to_index: int,
        expected_up_to_index: int,
    ) -> bool:
        """
        Compare-and-set summary: chỉ ghi khi summary_up_to_index hiện tại
        vẫn bằng expected_up_to_index. Trả về False nếu có writer khác đã ghi trước.
        """
        if summary_up_to_index < expected_up_to_index:
            raise ValueError("summary_up_to_index must never decrease")
        try:
            result = await self.collection.update_one(
                {
                    "conversation_id": conversation_id,
                    "summary_up_to_index": expected_up_to_index,
                    "message_count": {"$gte": summary_up_to_index},
                },
                {
                    "$set": {
                        "summary": summary,
                        "summary_up_to_index": summary_up_to_index,
                        "updated_at": datetime.now(),
                    },
                    "$inc": {"version": 1},
                },
            )
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"summary update failed: {e}") from e
        return result.modified_count == 1

    async def deactivate_conversation(self, conversation_id: str, user_id: str) -> None:
        try:
            result = await self.collection.update_one(
                {"conversation_id": conversation_id, "user_id": str(user_id), "is_active": True},
                {"$set": {"is_active": False, "updated_at": datetime.now()}},
            )
        except PyMongoError as e:
            raise DependencyFailureError("conversation_store", f"deactivate failed: {e}") from e
        if result.matched_count == 0:
            raise NotFoundError("Conversation not found")


@lru_cache(maxsize=1)
def get_conversation_service() -> ConversationService:
    """
    FastAPI dependency factory that returns a singleton ConversationService instance.
    """
    return ConversationService()
