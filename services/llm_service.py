# services/llm_service.py
import logging
import os
import time
from functools import lru_cache
from typing import AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv
from openai import AsyncOpenAI

from utils.errors import DependencyFailureError

load_dotenv()

logger = logging.getLogger(__name__)


class LLMService:
    """
    Service để quản lý LLM client (OpenAI, Ollama, etc.)
    Cấu hình từ .env, không cần truyền tham số.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        """
        Load LLM client từ .env.
        """
        self.provider = os.getenv("LLM_PROVIDER", "ollama").lower()
        self.model_name = os.getenv("LLM_MODEL", "llama3.2")
        self.api_key = os.getenv("LLM_API_KEY", "")
        self.base_url = os.getenv("LLM_BASE_URL", None)
        self.temperature = float(os.getenv("LLM_TEMPERATURE", "0.3"))
        self.max_tokens = int(os.getenv("LLM_MAX_TOKENS", "1024"))
        self.timeout = float(os.getenv("LLM_TIMEOUT", "120"))

        if client is not None:
            self.client = client
            return

        if self.provider == "ollama":
            self.base_url = self.base_url or "http://localhost:11434/v1"
            if not self.base_url.endswith("/v1"):
                self.base_url = self.base_url.rstrip("/") + "/v1"
            self.api_key = "ollama"
            logger.info(f"[LLM] Ollama API compatible mode - make sure Ollama is running on {self.base_url}")
        else:
            if not self.api_key:
                raise ValueError("LLM_API_KEY is required for OpenAI provider")
            self.base_url = self.base_url or "https://api.openai.com/v1"

        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
        )
        logger.info(f"[LLM] Initialized: provider={self.provider} model={self.model_name} base_url={self.base_url}")

    @property
    def current_model(self) -> str:
        return self.model_name

    def _options(self, temperature: Optional[float], max_tokens: Optional[int]) -> Dict:
        return {
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }

    async def generate(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Generate response (non-streaming) từ messages.

        Args:
            messages: List of message dicts với format:
                [{"role": "system", "content": "..."},
                 {"role": "user", "content": "..."}]
            temperature: Override temperature (optional)
            max_tokens: Override max_tokens (optional)

        Returns:
            Generated response string
        """
        total_chars = sum(len(msg.get("content", "")) for msg in messages)
        logger.debug(f"[LLM] Generating with {self.model_name}: {len(messages)} messages, ~{total_chars // 4} tokens")

        request_start = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                **self._options(temperature, max_tokens),
            )
        except Exception as e:
            logger.error(f"[LLM] Generation error: {type(e).__name__}: {e}")
            raise DependencyFailureError("llm", f"generation failed: {e}") from e

        result = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                f"[LLM] Token usage: prompt={usage.prompt_tokens} completion={usage.completion_tokens}"
            )
        logger.debug(f"[LLM] Request time: {(time.perf_counter() - request_start) * 1000:.2f}ms")
        return result

    async def generate_from_prompt(
        self,
        user_prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Generate từ một prompt đơn (dùng cho rewrite query và summary).
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return await self.generate(messages, temperature, max_tokens)

    async def stream_generate(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[str]:
        """
        Stream response theo từng fragment.
        Consumer ngừng pull (aclose) thì HTTP stream được đóng ngay.
        """
        try:
            stream = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                stream=True,
                **self._options(temperature, max_tokens),
            )
        except Exception as e:
            logger.error(f"[LLM] Streaming request error: {type(e).__name__}: {e}")
            raise DependencyFailureError("llm", f"streaming failed: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except Exception as e:
            logger.error(f"[LLM] Stream interrupted: {type(e).__name__}: {e}")
            raise DependencyFailureError("llm", f"stream interrupted: {e}") from e
        finally:
            await stream.close()


@lru_cache(maxsize=1)
def get_llm_service() -> LLMService:
    """
    Singleton factory cho LLMService.
    """
    return LLMService()
