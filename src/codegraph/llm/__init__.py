"""
Language-model provider registry.

    adapter = get_adapter("openai", api_key=key, model="gpt-4o-mini")

Adapters are cached per provider and configuration.
"""

import json
from typing import Any, Dict, List, Type

from codegraph.errors import LLMError
from codegraph.llm.base import LLMAdapter
from codegraph.llm.openai_adapter import OpenAIAdapter

_providers: Dict[str, Type[LLMAdapter]] = {
    "openai": OpenAIAdapter,
}

_instances: Dict[str, LLMAdapter] = {}


def get_adapter(provider: str = "openai", **config: Any) -> LLMAdapter:
    """
    Create or retrieve an adapter instance.

    Raises:
        LLMError: if the provider is not registered.
    """
    cache_key = f"{provider}:{json.dumps(config, sort_keys=True, default=str)}"
    if cache_key in _instances:
        return _instances[cache_key]

    adapter_class = _providers.get(provider)
    if adapter_class is None:
        raise LLMError(f"Unknown LLM provider: {provider}. Available: {', '.join(_providers)}")

    instance = adapter_class(**config)
    _instances[cache_key] = instance
    return instance


def register_provider(name: str, adapter_class: Type[LLMAdapter]) -> None:
    if not (isinstance(adapter_class, type) and issubclass(adapter_class, LLMAdapter)):
        raise TypeError("adapter_class must subclass LLMAdapter")
    _providers[name] = adapter_class


def list_providers() -> List[str]:
    return list(_providers)


def clear_cache() -> None:
    _instances.clear()


__all__ = [
    "LLMAdapter",
    "OpenAIAdapter",
    "clear_cache",
    "get_adapter",
    "list_providers",
    "register_provider",
]
