# services/prompt_service.py
from typing import Dict, List, Optional, Sequence

from models import Message, RetrievedChunk

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions using the knowledge base provided in the context.

CRITICAL RULES:
1. ONLY answer based on the information inside the <retrieved_context> section.
2. If the context does not contain enough information to answer, say: "I don't have enough information in my knowledge base to answer that question."
3. Never invent facts that are not present in the context.
4. When you use information from a source, cite it by its number and file name (e.g. "According to [Source 1: handbook.pdf]...").
5. The <conversation_summary> section, when present, describes earlier parts of this conversation and may be used as background.
6. Keep answers concise and directly relevant to the question.
7. For greetings or casual conversation, reply naturally without citing sources."""


def build_context_block(retrieved_chunks: Sequence[RetrievedChunk]) -> str:
    """
    Đánh số source theo đúng thứ tự retrieved_chunks:
    chunk thứ i (0-based) là "Source i+1".
    """
    entries = []
    for i, chunk in enumerate(retrieved_chunks):
        header = f"[Source {i + 1}: {chunk.file_name}]" if chunk.file_name else f"[Source {i + 1}]"
        entries.append(f"{header}\n{chunk.text}")
    return "\n\n".join(entries)


def build_rag_prompt(
    question: str,
    system_prompt: Optional[str] = None,
    summary: str = "",
    retrieved_chunks: Optional[Sequence[RetrievedChunk]] = None,
    recent_messages: Optional[Sequence[Message]] = None,
) -> List[Dict[str, str]]:
    """
    Build prompt messages cho LLM.

    Thứ tự luôn cố định:
        1. một system message: instructions + summary (nếu có) + context đánh số (nếu có)
        2. recent messages theo thứ tự thời gian, giữ nguyên role
        3. câu hỏi hiện tại (role=user)

    Returns:
        List of message dicts với format OpenAI API.
    """
    system = system_prompt or DEFAULT_SYSTEM_PROMPT

    if summary:
        system += f"\n\n<conversation_summary>\n{summary}\n</conversation_summary>"

    if retrieved_chunks:
        system += f"\n\n<retrieved_context>\n{build_context_block(retrieved_chunks)}\n</retrieved_context>"

    messages = [{"role": "system", "content": system}]

    for msg in recent_messages or []:
        messages.append({"role": msg.role, "content": msg.content})

    messages.append({"role": "user", "content": question})
    return messages
