# services/chat_service.py
import logging
import time
from contextlib import aclosing
from functools import lru_cache
from typing import AsyncIterator, Dict, List, Optional

from models import Conversation, Message, MessageMetadata, RetrievedChunk, TurnEvent, TurnState
from services.context_service import ConversationContext, get_context_service
from services.conversation_service import get_conversation_service
from services.guardrail_service import get_guardrail_service
from services.llm_service import get_llm_service
from services.prompt_service import DEFAULT_SYSTEM_PROMPT, build_rag_prompt
from services.query_rewrite_service import get_query_rewrite_service
from services.rag_service import get_rag_service
from utils.errors import (
    AppError,
    DependencyFailureError,
    NotFoundError,
    RejectedInputError,
    ValidationFailureError,
)

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Sorry, something went wrong while answering your question. Please try again."
UNRECORDED_ANSWER_MESSAGE = "Your answer was generated but could not be saved to this conversation. Please try again."


class ChatService:
    """
    Điều phối một turn hội thoại:
    validate → load context → rewrite query → retrieve → stream answer → persist → compact.

    `chat()` là async generator trả về TurnEvent; consumer pull từng event,
    ngừng pull (aclose) thì LLM stream bị đóng và không có gì được lưu.
    """

    TITLE_MAX_CHARS = 50
    STORED_CHUNK_CHARS = 200

    def __init__(
        self,
        guardrail_service=None,
        conversation_service=None,
        context_service=None,
        query_rewrite_service=None,
        rag_service=None,
        llm_service=None,
        system_prompt: str = None,
        retrieval_options: Optional[Dict] = None,
        validate_output: bool = True,
    ):
        self.guardrail_service = guardrail_service or get_guardrail_service()
        self.conversation_service = conversation_service or get_conversation_service()
        self.context_service = context_service or get_context_service()
        self.query_rewrite_service = query_rewrite_service or get_query_rewrite_service()
        self.rag_service = rag_service or get_rag_service()
        self.llm_service = llm_service or get_llm_service()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.retrieval_options = {
            "top_k": 5,
            "user_weight": 1.2,
            "platform_weight": 1.0,
            "score_threshold": 0.5,
        }
        self.retrieval_options.update(retrieval_options or {})
        self.validate_output = validate_output

    async def chat(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        stream: bool = True,
    ) -> AsyncIterator[TurnEvent]:
        """
        Xử lý một turn và yield các TurnEvent.

        Args:
            user_id: tenant sở hữu conversation và partition kiến thức riêng
            message: câu hỏi của user
            conversation_id: conversation đã có, None để tạo mới
            stream: True thì forward từng token; False thì buffer toàn bộ câu trả lời,
                chạy output guardrail rồi mới gửi một token event duy nhất
        """
        timings = {}
        start_total = time.perf_counter()
        state = TurnState.VALIDATING

        if not isinstance(message, str) or not user_id:
            error = ValidationFailureError("A message and a user are required.")
            logger.warning(f"[Chat] Malformed turn input (user={user_id!r})")
            yield TurnEvent.error(error.message)
            return

        check = self.guardrail_service.validate_input(message)
        if not check.safe:
            state = TurnState.REJECTED
            logger.warning(f"[Chat] Turn {state.value} for user {user_id}")
            yield TurnEvent.error(RejectedInputError(check.reason).message)
            return

        try:
            state = TurnState.CONTEXT_LOADING
            t0 = time.perf_counter()
            conversation = await self._load_conversation(user_id, conversation_id)
            if conversation is not None:
                context = self.context_service.get_context(conversation)
            else:
                context = ConversationContext()
            timings["context"] = (time.perf_counter() - t0) * 1000

            state = TurnState.REWRITING
            t0 = time.perf_counter()
            rewrite = await self.query_rewrite_service.try_rewrite(message, context.recent_messages)
            if rewrite.error:
                logger.info(f"[Chat] Query rewrite fell back to original message ({rewrite.error})")
            timings["rewrite"] = (time.perf_counter() - t0) * 1000

            state = TurnState.RETRIEVING
            t0 = time.perf_counter()
            retrieved_chunks = await self.rag_service.retrieve(rewrite.query, user_id, **self.retrieval_options)
            timings["retrieve"] = (time.perf_counter() - t0) * 1000

            state = TurnState.GENERATING
            t0 = time.perf_counter()
            prompt = build_rag_prompt(
                question=message,
                system_prompt=self.system_prompt,
                summary=context.summary,
                retrieved_chunks=retrieved_chunks,
                recent_messages=context.recent_messages,
            )
            parts = []
            async with aclosing(self.llm_service.stream_generate(prompt)) as tokens:
                async for token in tokens:
                    parts.append(token)
                    if stream:
                        yield TurnEvent.token(token)
            answer = "".join(parts)
            if not answer.strip():
                raise DependencyFailureError("llm", "empty response")
            answer = self._check_output(answer)
            if not stream:
                yield TurnEvent.token(answer)
            timings["generate"] = (time.perf_counter() - t0) * 1000
        except Exception as e:
            logger.info(f"[Chat] Turn failed in state {state.value}")
            state = TurnState.FAILED
            yield self._error_event(e)
            return

        state = TurnState.PERSISTING
        t0 = time.perf_counter()
        turn_messages = self._build_turn_messages(message, answer, retrieved_chunks)
        try:
            if conversation is None:
                conversation = await self.conversation_service.create_conversation(
                    user_id,
                    title=message.strip()[:self.TITLE_MAX_CHARS],
                    messages=turn_messages,
                )
            else:
                await self.conversation_service.add_messages(conversation.conversation_id, turn_messages)
        except Exception as e:
            logger.error(
                f"[Chat] UNRECORDED ANSWER: answer of {len(answer)} chars was delivered but not saved "
                f"(conversation={conversation.conversation_id if conversation else 'new'}, user={user_id}): "
                f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            state = TurnState.FAILED
            yield TurnEvent.error(UNRECORDED_ANSWER_MESSAGE)
            return
        timings["persist"] = (time.perf_counter() - t0) * 1000

        state = TurnState.COMPACTING
        t0 = time.perf_counter()
        try:
            await self.context_service.compact_if_needed(conversation.conversation_id)
        except Exception:
            # Token đã gửi đi rồi, compaction lỗi không làm fail turn
            logger.exception(f"[Chat] Compaction failed for {conversation.conversation_id}")
        timings["compact"] = (time.perf_counter() - t0) * 1000

        state = TurnState.DONE
        timings["total"] = (time.perf_counter() - start_total) * 1000
        logger.info(
            "[PERF] Turn timings (ms): " + ", ".join(f"{step}={duration:.2f}" for step, duration in timings.items())
        )
        yield TurnEvent.done(conversation.conversation_id)

    async def _load_conversation(self, user_id: str, conversation_id: Optional[str]) -> Optional[Conversation]:
        """
        Conversation mới chưa được ghi xuống store ở bước này:
        nó được tạo cùng hai message đầu tiên khi turn thành công.
        """
        if not conversation_id:
            return None
        conversation = await self.conversation_service.find_conversation(conversation_id, user_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    def _check_output(self, answer: str) -> str:
        if not self.validate_output:
            return answer
        result = self.guardrail_service.validate_output(answer)
        if result.safe:
            return answer
        return result.filtered_response

    def _build_turn_messages(self, question: str, answer: str,
                             retrieved_chunks: List[RetrievedChunk]) -> List[Message]:
        metadata = MessageMetadata(
            retrieved_chunks=[chunk.to_record(self.STORED_CHUNK_CHARS) for chunk in retrieved_chunks],
            model_used=self.llm_service.current_model,
            token_estimate=len(answer) // 4,
        )
        return [
            Message(role="user", content=question),
            Message(role="assistant", content=answer, metadata=metadata),
        ]

    def _error_event(self, error: Exception) -> TurnEvent:
        if isinstance(error, (NotFoundError, ValidationFailureError, RejectedInputError)):
            logger.warning(f"[Chat] {type(error).__name__}: {error.message}")
            return TurnEvent.error(error.message)
        if isinstance(error, AppError):
            logger.error(f"[Chat] {type(error).__name__}: {error.message}", exc_info=error)
        else:
            logger.error(f"[Chat] Unexpected error: {type(error).__name__}: {error}", exc_info=error)
        return TurnEvent.error(GENERIC_FAILURE_MESSAGE)


@lru_cache(maxsize=1)
def get_chat_service() -> ChatService:
    """
    FastAPI dependency factory that returns a singleton ChatService instance.
    """
    return ChatService()
