# models/Retrieval_schema.py
from typing import Literal, Optional

from pydantic import BaseModel

from .Message_schema import RetrievedChunkRecord

Partition = Literal["user", "platform"]


class RetrievedChunk(BaseModel):
    text: str
    # weighted score, chỉ dùng để xếp hạng
    score: float
    raw_score: float
    source: Partition
    document_id: Optional[str] = None
    file_name: Optional[str] = None
    chunk_index: Optional[int] = None

    def to_record(self, max_chars: int = 200) -> RetrievedChunkRecord:
        return RetrievedChunkRecord(
            text=self.text[:max_chars],
            score=self.score,
            source=self.source,
            file_name=self.file_name,
        )
