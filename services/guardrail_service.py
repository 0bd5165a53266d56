# services/guardrail_service.py
import logging
import os
import re
from functools import lru_cache
from typing import List, Optional, Pattern

from dotenv import load_dotenv

from models import GuardrailResult
from services.prompt_service import DEFAULT_SYSTEM_PROMPT

load_dotenv()

logger = logging.getLogger(__name__)

# Prompt injection / jailbreak patterns (case-insensitive)
INJECTION_PATTERNS: List[Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"ignore\s+(all\s+)?(the\s+)?(previous|prior|above)\s+(instructions|prompts|rules)",
        r"disregard\s+(all\s+)?(the\s+)?(previous|prior|above)\s+(instructions|prompts|rules)",
        r"you\s+are\s+now\s+(a|an|in)\s+",
        r"system\s*prompt",
        r"reveal\s+(your|the)\s+(system\s+)?(instructions|prompt|rules)",
        r"pretend\s+(you|to\s+be)",
        r"\bact\s+as\s+(if|an?)\b",
        r"forget\s+(everything|all|your)",
        r"override\s+(your|the|all)",
        r"jailbreak",
        r"\bDAN\s+mode",
    ]
]

# Dấu hiệu output đang lộ system prompt
LEAK_PATTERNS: List[Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"CRITICAL RULES:",
        r"ONLY answer based on",
        r"you are a helpful assistant that",
    ]
]

# Các khối chỉ dẫn ẩn trong tài liệu upload
HIDDEN_INSTRUCTION_PATTERNS: List[Pattern] = [
    re.compile(r"\[(SYSTEM|INST)\].*?\[/\1\]", re.IGNORECASE | re.DOTALL),
    re.compile(r"<!--\s*(ignore|forget|override|system|instruction).*?-->", re.IGNORECASE | re.DOTALL),
]
ZERO_WIDTH_CHARS = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")

REJECTION_MESSAGE = "I can only help with questions related to your knowledge base. Could you rephrase your question?"
SAFE_REPLACEMENT_RESPONSE = "I'm here to help with questions about your knowledge base. What would you like to know?"


class GuardrailService:
    # Đoạn system prompt ngắn hơn mức này thì không dùng làm leak signature
    MIN_SIGNATURE_CHARS = 40

    def __init__(self, max_input_length: Optional[int] = None, system_prompt: Optional[str] = None):
        if max_input_length is None:
            max_input_length = int(os.getenv("GUARDRAIL_MAX_INPUT_LENGTH", 10000))
        self.max_input_length = max_input_length
        self.leak_signatures = self._build_leak_signatures(system_prompt or DEFAULT_SYSTEM_PROMPT)

    def _build_leak_signatures(self, system_prompt: str) -> List[str]:
        signatures = []
        for line in system_prompt.splitlines():
            # bỏ số thứ tự "1. " để match được cả khi model đánh số lại
            fragment = re.sub(r"^\s*\d+[.)]\s*", "", line).strip().lower()
            if len(fragment) >= self.MIN_SIGNATURE_CHARS:
                signatures.append(fragment)
        return signatures

    def validate_input(self, message: str) -> GuardrailResult:
        """
        Kiểm tra input theo thứ tự, dừng ở lỗi đầu tiên:
        injection pattern → quá dài → rỗng.
        Lý do trả về không bao giờ nhắc lại pattern đã match.
        """
        for pattern in INJECTION_PATTERNS:
            if pattern.search(message):
                logger.warning(f"[Guardrail] Input matched injection pattern: {pattern.pattern!r}")
                return GuardrailResult(safe=False, reason=REJECTION_MESSAGE)

        if len(message) > self.max_input_length:
            return GuardrailResult(
                safe=False,
                reason=f"Your message is too long. Please keep it under {self.max_input_length:,} characters.",
            )

        if not message.strip():
            return GuardrailResult(safe=False, reason="Please enter a message.")

        return GuardrailResult(safe=True)

    def validate_output(self, response: str) -> GuardrailResult:
        """
        Quét response hoàn chỉnh để tìm đoạn system prompt bị lộ.
        Chỉ có tác dụng trên response đã buffer đủ: token đã stream ra thì không thu hồi được.
        """
        leaked = any(pattern.search(response) for pattern in LEAK_PATTERNS)
        if not leaked:
            lowered = response.lower()
            leaked = any(signature in lowered for signature in self.leak_signatures)

        if leaked:
            logger.warning("[Guardrail] Response contains system prompt fragments, replacing")
            return GuardrailResult(
                safe=False,
                reason="Response filtered for safety.",
                filtered_response=SAFE_REPLACEMENT_RESPONSE,
            )
        return GuardrailResult(safe=True)

    def sanitize_document_text(self, text: str) -> str:
        """Loại bỏ chỉ dẫn ẩn trong tài liệu trước khi chunk (chống indirect injection)."""
        sanitized = text
        for pattern in HIDDEN_INSTRUCTION_PATTERNS:
            sanitized = pattern.sub("", sanitized)
        return ZERO_WIDTH_CHARS.sub("", sanitized)


@lru_cache(maxsize=1)
def get_guardrail_service() -> GuardrailService:
    return GuardrailService()
