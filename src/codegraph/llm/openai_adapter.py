import json
import logging
import time
from functools import wraps
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from codegraph.errors import LLMError
from codegraph.llm.base import LLMAdapter

logger = logging.getLogger(__name__)


def retry_on_openai_error(max_retries=3, delay=1.0):
    """
    Decorator to retry OpenAI API calls on transient errors.

    Args:
        max_retries: Maximum number of retry attempts
        delay: Delay between retries in seconds (with exponential backoff)
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except (openai.RateLimitError, openai.APIConnectionError, openai.APITimeoutError) as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        wait_time = delay * (2 ** attempt)  # Exponential backoff
                        logger.warning(f"OpenAI API error (attempt {attempt + 1}/{max_retries}): {e}. Retrying in {wait_time:.1f}s...")
                        time.sleep(wait_time)
                    else:
                        logger.error(f"OpenAI API failed after {max_retries} attempts: {e}")
                        raise
            raise last_exception
        return wrapper
    return decorator


class OpenAIAdapter(LLMAdapter):
    """Chat-completions adapter with retry and token usage tracking."""

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 2048,
        client: Optional[OpenAI] = None,
        **config: Any,
    ):
        super().__init__(model=model, max_tokens=max_tokens, **config)
        self.model = model or self.DEFAULT_MODEL
        self.max_tokens = max_tokens
        if client is None:
            try:
                client = OpenAI(api_key=api_key)
            except openai.OpenAIError as e:
                raise LLMError(f"Cannot create OpenAI client: {e}") from e
        self.client = client

    @property
    def provider_name(self) -> str:
        return "openai"

    def supports_structured_output(self) -> bool:
        return True

    @retry_on_openai_error(max_retries=3, delay=1.0)
    def _complete(self, messages: List[Dict[str, str]]):
        return self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=0,
        )

    def generate_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        context: Optional[Any] = None,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        content = prompt
        if context is not None:
            content = f"{prompt}\n\nContext:\n{json.dumps(context, indent=2, default=str)}"
        messages.append({"role": "user", "content": content})

        try:
            response = self._complete(messages)
        except openai.OpenAIError as e:
            raise LLMError(f"OpenAI request failed: {e}") from e

        usage = getattr(response, "usage", None)
        if usage is not None:
            self.record_usage(usage.prompt_tokens or 0, usage.completion_tokens or 0)

        return response.choices[0].message.content or ""
