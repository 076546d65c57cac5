"""Language-model adapter interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class LLMAdapter(ABC):
    """
    Text-in/text-out language model provider.

    Concrete adapters are constructed through the registry in
    ``codegraph.llm`` (``get_adapter`` / ``register_provider``).
    """

    def __init__(self, **config: Any):
        self.config = config
        self.token_usage: Dict[str, int] = {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "calls": 0,
        }

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Registry key of the provider."""

    @abstractmethod
    def generate_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        context: Optional[Any] = None,
    ) -> str:
        """
        Generate text from a prompt.

        Args:
            prompt: The user prompt
            system_prompt: Optional system prompt
            context: Optional structured context, serialized into the request

        Raises:
            LLMError: if the provider call fails after retries.
        """

    def supports_structured_output(self) -> bool:
        return False

    def record_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.token_usage["prompt_tokens"] += prompt_tokens
        self.token_usage["completion_tokens"] += completion_tokens
        self.token_usage["calls"] += 1
