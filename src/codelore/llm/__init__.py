"""Language model clients."""

from .client import (
    OllamaLLMClient,
    OpenAICompatibleLLMClient,
    build_llm_client,
    extract_json_object,
    parse_structured,
)

__all__ = [
    "OllamaLLMClient",
    "OpenAICompatibleLLMClient",
    "build_llm_client",
    "extract_json_object",
    "parse_structured",
]
