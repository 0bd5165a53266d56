from .Conversation_schema import Conversation, ConversationInfo
from .Document_schema import Document, DocumentInfo
from .Guardrail_schema import GuardrailResult
from .Message_schema import Message, MessageMetadata, RetrievedChunkRecord
from .Retrieval_schema import RetrievedChunk
from .Turn_schema import TurnEvent, TurnState

__all__ = [
    "Conversation",
    "ConversationInfo",
    "Document",
    "DocumentInfo",
    "GuardrailResult",
    "Message",
    "MessageMetadata",
    "RetrievedChunk",
    "RetrievedChunkRecord",
    "TurnEvent",
    "TurnState",
]
