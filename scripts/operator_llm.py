"""Chat model factory for the providers the operator supports."""

import os
from typing import Optional

from operator_errors import ConfigurationError


def create_llm(model: str, provider: str, api_key: Optional[str] = None, *, temperature: float = 0):
    """Create a browser-use chat model for ``provider`` ("anthropic" or "openai")."""
    provider = (provider or "").lower()

    if provider == "anthropic":
        from browser_use import ChatAnthropic

        return ChatAnthropic(model=model, api_key=api_key, temperature=temperature)

    if provider == "openai":
        from browser_use import ChatOpenAI

        # OpenAI-compatible gateways are selected with LLM_BASE_URL
        base_url = os.environ.get("LLM_BASE_URL") or None
        return ChatOpenAI(model=model, api_key=api_key, base_url=base_url, temperature=temperature)

    raise ConfigurationError(f"Unsupported LLM provider '{provider}'")
