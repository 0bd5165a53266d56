# models/Turn_schema.py
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel


class TurnState(str, Enum):
    VALIDATING = "validating"
    CONTEXT_LOADING = "context_loading"
    REWRITING = "rewriting"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    PERSISTING = "persisting"
    COMPACTING = "compacting"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


class TurnEvent(BaseModel):
    """
    Event của một turn gửi ra ngoài:
    0..n lần {type: token}, sau đó đúng một {type: done} hoặc {type: error}.
    """

    type: Literal["token", "done", "error"]
    content: Optional[str] = None
    conversation_id: Optional[str] = None

    @classmethod
    def token(cls, content: str) -> "TurnEvent":
        return cls(type="token", content=content)

    @classmethod
    def done(cls, conversation_id: str) -> "TurnEvent":
        return cls(type="done", conversation_id=conversation_id)

    @classmethod
    def error(cls, content: str) -> "TurnEvent":
        return cls(type="error", content=content)
