# services/query_rewrite_service.py
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Sequence

from models import Message
from services.llm_service import get_llm_service

logger = logging.getLogger(__name__)


@dataclass
class RewriteResult:
    query: str
    rewritten: bool = False
    error: Optional[str] = None


class QueryRewriteService:
    """Viết lại câu hỏi follow-up thành search query độc lập."""

    HISTORY_MESSAGES = 4
    MAX_REWRITE_TOKENS = 100

    def __init__(self, llm_service=None):
        if llm_service is None:
            self.llm_service = get_llm_service()
        else:
            self.llm_service = llm_service

    async def try_rewrite(self, user_message: str, history: Sequence[Message]) -> RewriteResult:
        if not history:
            return RewriteResult(query=user_message)

        recent_context = "\n".join(f"{m.role}: {m.content}" for m in history[-self.HISTORY_MESSAGES:])
        prompt = (
            f"Given this conversation:\n{recent_context}\n\n"
            f'The user just asked: "{user_message}"\n\n'
            "Rewrite it as a standalone search query. Return ONLY the query."
        )

        try:
            rewritten = await self.llm_service.generate_from_prompt(
                prompt, temperature=0.0, max_tokens=self.MAX_REWRITE_TOKENS
            )
        except Exception as e:
            # Rewrite chỉ để tăng chất lượng retrieval, lỗi thì dùng câu gốc
            logger.warning(f"[Rewrite] Falling back to original message: {type(e).__name__}: {e}")
            return RewriteResult(query=user_message, error=f"{type(e).__name__}: {e}")

        rewritten = (rewritten or "").strip()
        if not rewritten:
            logger.warning("[Rewrite] Empty rewrite, using original message")
            return RewriteResult(query=user_message, error="empty rewrite")

        logger.debug(f"[Rewrite] {user_message!r} -> {rewritten!r}")
        return RewriteResult(query=rewritten, rewritten=True)

    async def rewrite(self, user_message: str, history: Sequence[Message]) -> str:
        return (await self.try_rewrite(user_message, history)).query


@lru_cache(maxsize=1)
def get_query_rewrite_service() -> QueryRewriteService:
    return QueryRewriteService()
