# models/Guardrail_schema.py
from typing import Optional

from pydantic import BaseModel


class GuardrailResult(BaseModel):
    safe: bool
    reason: Optional[str] = None
    filtered_response: Optional[str] = None
