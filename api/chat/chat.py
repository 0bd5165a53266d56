# api/chat/chat.py
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Form, HTTPException
from fastapi.responses import StreamingResponse

from models import TurnEvent
from services.chat_service import ChatService, get_chat_service
from services.conversation_service import ConversationService, get_conversation_service

router = APIRouter(prefix="/chat", tags=["chat"])


async def render_events(events: AsyncIterator[TurnEvent]) -> AsyncIterator[str]:
    """Render TurnEvent thành Server-Sent Events: data: <json>\\n\\n"""
    async for event in events:
        yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"


@router.post("/")
async def chat(
    user_id: str = Form(...),
    message: Optional[str] = Form(None),
    conversation_id: Optional[str] = Form(None),
    stream: bool = Form(True),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Gửi một message và nhận câu trả lời dạng stream (SSE)"""
    if message is None or not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    events = chat_service.chat(
        user_id=user_id,
        message=message,
        conversation_id=conversation_id or None,
        stream=stream,
    )
    return StreamingResponse(
        render_events(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/conversations")
async def list_conversations(
    user_id: str,
    limit: int = 50,
    conv_service: ConversationService = Depends(get_conversation_service),
):
    """Lấy danh sách conversation của user (không kèm messages)"""
    conversations = await conv_service.list_conversations(user_id, limit=limit)
    return {"success": True, "data": [c.model_dump() for c in conversations]}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user_id: str,
    conv_service: ConversationService = Depends(get_conversation_service),
):
    """Lấy conversation kèm toàn bộ messages"""
    conversation = await conv_service.find_conversation(conversation_id, user_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True, "data": conversation.model_dump()}


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user_id: str,
    conv_service: ConversationService = Depends(get_conversation_service),
):
    await conv_service.deactivate_conversation(conversation_id, user_id)
    return {"success": True, "conversation_id": conversation_id}
