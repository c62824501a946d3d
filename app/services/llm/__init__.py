from app.services.llm.base import LLMProvider, LLMResponse
from app.services.llm.openai_provider import OpenAIProvider


def create_provider(settings) -> LLMProvider:
    """Chat backend used for AI replies; only OpenAI is wired today."""
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=settings.openai_model,
        timeout_seconds=settings.llm_timeout_seconds,
    )


__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider", "create_provider"]
