"""Completion provider selection."""

from meterproxy.config import Settings
from meterproxy.core.errors import MeterProxyError

from .base import Completion, CompletionProvider
from .openai_compat import OpenAICompatibleProvider

__all__ = ["Completion", "CompletionProvider", "OpenAICompatibleProvider", "create_completion_provider"]

OPENAI_BASE_URL = "https://api.openai.com/v1"
VENICE_BASE_URL = "https://api.venice.ai/api/v1"


def create_completion_provider(settings: Settings) -> CompletionProvider:
    """Build the provider named by METERPROXY_AI_PROVIDER.

    Raises MeterProxyError (configuration) for an unknown provider or a
    missing API key.
    """
    provider = (settings.ai_provider or "").strip().lower()

    if provider == "venice":
        api_key, base_url, model = settings.venice_api_key, VENICE_BASE_URL, settings.venice_model
    elif provider == "openai":
        api_key, base_url, model = settings.openai_api_key, OPENAI_BASE_URL, settings.openai_model
    else:
        raise MeterProxyError(
            "MPX-CFG-002",
            detail=f"unknown AI provider {settings.ai_provider!r}",
            context={"provider": settings.ai_provider},
        )

    if not api_key:
        raise MeterProxyError(
            "MPX-CFG-001",
            detail=f"METERPROXY_{provider.upper()}_API_KEY is not set",
            context={"provider": provider},
        )

    return OpenAICompatibleProvider(
        name=provider,
        api_key=api_key,
        base_url=base_url,
        model=model,
        timeout_s=settings.completion_timeout_s,
    )
