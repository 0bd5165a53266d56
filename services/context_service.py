# services/context_service.py
import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Sequence

import redis

from models import Conversation, Message
from services.conversation_service import get_conversation_service
from services.llm_service import get_llm_service
from utils.errors import DependencyFailureError, NotFoundError
from utils.redis_conn import get_redis_connection

logger = logging.getLogger(__name__)


@dataclass
class ConversationContext:
    summary: str = ""
    recent_messages: List[Message] = field(default_factory=list)


class ContextService:
    """
    Quản lý context của conversation: summary + cửa sổ message gần nhất,
    và recursive summarization (compaction) khi số message chưa summary vượt ngưỡng.
    """

    RECENT_WINDOW = 10          # Giữ nguyên văn 10 message cuối
    COMPACTION_THRESHOLD = 20   # Compact khi có >= 20 message chưa summary
    MAX_SUMMARY_TOKENS = 500

    def __init__(self, conversation_service=None, llm_service=None, redis_cache=None,
                 recent_window: int = None, compaction_threshold: int = None, max_summary_tokens: int = None):
        if conversation_service is None:
            self.conversation_service = get_conversation_service()
        else:
            self.conversation_service = conversation_service

        if llm_service is None:
            self.llm_service = get_llm_service()
        else:
            self.llm_service = llm_service

        self.redis_cache = redis_cache
        self.recent_window = recent_window or self.RECENT_WINDOW
        self.compaction_threshold = compaction_threshold or self.COMPACTION_THRESHOLD
        self.max_summary_tokens = max_summary_tokens or self.MAX_SUMMARY_TOKENS
        self._locks = weakref.WeakValueDictionary()

    def get_context(self, conversation: Conversation) -> ConversationContext:
        messages = conversation.messages

        if len(messages) <= self.recent_window:
            # Conversation ngắn: trả về toàn bộ, chưa cần summary
            return ConversationContext(summary="", recent_messages=list(messages))

        return ConversationContext(
            summary=conversation.summary,
            recent_messages=list(messages[-self.recent_window:]),
        )

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def compact_if_needed(self, conversation_id: str) -> bool:
        """
        Gộp các message cũ vào summary nếu cần.
        Serialize theo conversation: asyncio.Lock trong process, Redis lock giữa
        các worker, và compare-and-set trên summary_up_to_index khi ghi.

        Returns:
            True nếu compaction đã chạy và được ghi.
        """
        async with self._lock_for(conversation_id):
            distributed_lock = None
            if self.redis_cache:
                try:
                    distributed_lock = await asyncio.to_thread(
                        self.redis_cache.try_acquire_lock, f"compaction:{conversation_id}"
                    )
                    if distributed_lock is None:
                        logger.info(f"[Context] Compaction already running for {conversation_id}, skipping")
                        return False
                except redis.RedisError as e:
                    logger.warning(f"[Context] Redis lock unavailable, relying on store check: {e}")

            try:
                return await self._compact(conversation_id)
            finally:
                if distributed_lock is not None:
                    await asyncio.to_thread(self.redis_cache.release_lock, distributed_lock)

    async def _compact(self, conversation_id: str) -> bool:
        conversation = await self.conversation_service.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        messages = conversation.messages
        summarized_up_to = conversation.summary_up_to_index
        boundary = len(messages) - self.recent_window

        unsummarized = boundary - summarized_up_to
        if unsummarized < self.compaction_threshold:
            logger.debug(f"[Context] {unsummarized} unsummarized messages in {conversation_id}, no compaction")
            return False

        to_summarize = messages[summarized_up_to:boundary]
        new_summary = await self.generate_summary(conversation.summary, to_summarize)

        updated = await self.conversation_service.update_summary(
            conversation_id,
            new_summary,
            boundary,
            expected_up_to_index=summarized_up_to,
        )
        if not updated:
            logger.warning(f"[Context] Summary of {conversation_id} changed concurrently, discarding this compaction")
            return False

        logger.info(
            f"[Context] Compacted {len(to_summarize)} messages of {conversation_id}, "
            f"summary_up_to_index {summarized_up_to} -> {boundary}"
        )
        return True

    async def generate_summary(self, existing_summary: str, new_messages: Sequence[Message]) -> str:
        """Recursive summary: gộp summary cũ với các message mới."""
        messages_text = "\n".join(f"{m.role}: {m.content}" for m in new_messages)

        if existing_summary:
            prompt = (
                "Here is a summary of the conversation so far:\n"
                f"{existing_summary}\n\n"
                "Here are the new messages since that summary:\n"
                f"{messages_text}\n\n"
                "Update the summary so it also covers the new messages. "
                "Keep it under 300 words and focus on:\n"
                "- key facts, decisions and agreements\n"
                "- user preferences and requirements\n"
                "- important questions asked and the answers given\n"
                "- open follow-ups\n\n"
                "Return ONLY the updated summary."
            )
        else:
            prompt = (
                "Summarize the following conversation. Focus on key facts, decisions, "
                "preferences and important questions and answers. Keep it under 300 words.\n\n"
                f"{messages_text}\n\n"
                "Return ONLY the summary."
            )

        summary = (await self.llm_service.generate_from_prompt(prompt, max_tokens=self.max_summary_tokens)).strip()
        if not summary:
            raise DependencyFailureError("llm", "summarization returned an empty summary")
        return summary


@lru_cache(maxsize=1)
def get_context_service() -> ContextService:
    return ContextService(redis_cache=get_redis_connection())
