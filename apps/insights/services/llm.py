"""LLM client with retry logic for the insight extraction service.

Talks to any OpenAI-compatible chat completions endpoint (settings.llm_base_url).
"""

import re

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from config import get_settings
from utils.logging import get_logger
from utils.retry import retry_call

logger = get_logger(__name__)


def strip_thinking_tags(text: str) -> str:
    """Remove <think>...</think> tags from model output.

    Handles various formats:
    - <think>...</think>  (reasoning-model style)
    - <think attr>...</think>  (any attributes)
    - <thinking>...</thinking>
    - Unclosed tags (removes from opening tag to true end-of-string)
    """
    if not text:
        return text

    patterns = [
        r"<think\b[^>]*>.*?</think>\s*",
        r"<thinking\b[^>]*>.*?</thinking>\s*",
    ]
    for pattern in patterns:
        text = re.sub(pattern, "", text, flags=re.DOTALL | re.IGNORECASE)

    # Use \Z (not $) so re.DOTALL doesn't stop at \n.
    unclosed_patterns = [
        r"<think\b[^>]*>.*\Z",
        r"<thinking\b[^>]*>.*\Z",
    ]
    for pattern in unclosed_patterns:
        text = re.sub(pattern, "", text, flags=re.DOTALL | re.IGNORECASE)

    return text.strip()


# HTTP status codes that should trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class LLMClient:
    """Chat completion client.

    Features:
    - Exponential backoff with jitter for transient failures
    - Retries on 429, 500, 502, 503, 504 status codes
    - Thinking tag stripping from model output
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self.settings = get_settings()
        self.model = self.settings.llm_model
        self.client = client or AsyncOpenAI(
            base_url=self.settings.llm_base_url,
            api_key=self.settings.get_llm_api_key() or "not-set",
        )

    def _is_retryable_error(self, error: Exception) -> bool:
        """Check if an error is transient and should be retried."""
        if isinstance(
            error, (TimeoutError, ConnectionError, APIConnectionError, APITimeoutError)
        ):
            return True
        if isinstance(error, APIStatusError):
            return error.status_code in RETRYABLE_STATUS_CODES
        return False

    def _log_token_usage(self, usage) -> None:
        if usage is None:
            logger.debug("Token usage not available in response")
            return
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        logger.info(
            "LLM token usage",
            extra={
                "token_usage": {
                    "model": self.model,
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": getattr(usage, "total_tokens", 0)
                    or prompt_tokens + completion_tokens,
                }
            },
        )

    async def _complete(self, messages: list[dict], temperature: float, max_tokens: int) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        self._log_token_usage(response.usage)
        return response.choices[0].message.content or ""

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int | None = None,
    ) -> str:
        """Generate a completion with retry logic.

        Args:
            prompt: The user prompt
            system_prompt: Optional system prompt
            temperature: Sampling temperature (default: from settings)
            max_tokens: Maximum tokens to generate (default: from settings)
            max_retries: Retry attempts after the first (default: from settings)

        Returns:
            The generated text with thinking tags stripped
        """
        if max_retries is None:
            max_retries = self.settings.llm_max_retries
        if temperature is None:
            temperature = self.settings.llm_temperature
        if max_tokens is None:
            max_tokens = self.settings.llm_max_tokens

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        text = await retry_call(
            lambda: self._complete(messages, temperature, max_tokens),
            max_attempts=max_retries + 1,
            backoff_base=self.settings.llm_retry_base_delay,
            retry_if=self._is_retryable_error,
            name=f"LLM call with {self.model}",
        )
        return strip_thinking_tags(text)

    async def close(self) -> None:
        await self.client.close()


# Singleton instance
_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    """Get the LLM client singleton."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
