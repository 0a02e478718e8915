"""HTTP clients for the language model used by the research agent.

Two backends are supported: a local Ollama server (``/api/generate``) and
any OpenAI-compatible chat completions endpoint. Both open one
``httpx.AsyncClient`` per request.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from codelore.enrichment.config import LLMConfig
from codelore.enrichment.exceptions import (
    ConfigurationError,
    EnrichmentParseError,
    LLMRequestError,
)

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first JSON object in ``text``, fenced or bare.

    Raises:
        EnrichmentParseError: If no JSON object can be decoded
    """
    fenced = _FENCED_JSON.search(text)
    if fenced:
        try:
            value = json.loads(fenced.group(1))
        except json.JSONDecodeError as exc:
            raise EnrichmentParseError(f"Malformed JSON in fenced block: {exc}") from exc
        if isinstance(value, dict):
            return value

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)

    raise EnrichmentParseError("No JSON object found in model response")


def parse_structured(text: str, schema: Type[SchemaT]) -> SchemaT:
    """Validate the first JSON object in ``text`` against ``schema``."""
    data = extract_json_object(text)
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise EnrichmentParseError(
            f"Model response does not match {schema.__name__}: {exc.error_count()} errors"
        ) from exc


def structured_prompt(prompt: str, schema: Type[BaseModel]) -> str:
    return (
        f"{prompt}\n\n"
        "Respond with a single JSON object that conforms to this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema(), indent=2)}"
    )


class OllamaLLMClient:
    """Client for a local Ollama server."""

    def __init__(
        self,
        model: str,
        *,
        base_url: str = "http://localhost:11434",
        temperature: float = 0.1,
        timeout: float = 120.0,
    ) -> None:
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._timeout = timeout

    @property
    def model_name(self) -> str:
        return self._model

    async def chat(self, prompt: str) -> str:
        return await self._generate(prompt)

    async def generate_structured(self, prompt: str, schema: Type[SchemaT]) -> SchemaT:
        text = await self._generate(structured_prompt(prompt, schema), json_mode=True)
        return parse_structured(text, schema)

    async def _generate(self, prompt: str, *, json_mode: bool = False) -> str:
        request_data: Dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self._temperature},
        }
        if json_mode:
            request_data["format"] = "json"

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/api/generate", json=request_data
                )
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPError as exc:
            logger.error(
                "Ollama request failed",
                extra={"model": self._model, "error": str(exc)},
            )
            raise LLMRequestError(f"Ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise LLMRequestError(f"Ollama returned invalid JSON: {exc}") from exc

        text = result.get("response") if isinstance(result, dict) else None
        if not isinstance(text, str):
            raise LLMRequestError("Ollama response is missing the 'response' field")
        return text


class OpenAICompatibleLLMClient:
    """Client for servers exposing ``/chat/completions``."""

    def __init__(
        self,
        model: str,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        temperature: float = 0.1,
        timeout: float = 120.0,
    ) -> None:
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._temperature = temperature
        self._timeout = timeout

    @property
    def model_name(self) -> str:
        return self._model

    async def chat(self, prompt: str) -> str:
        return await self._complete(prompt)

    async def generate_structured(self, prompt: str, schema: Type[SchemaT]) -> SchemaT:
        text = await self._complete(structured_prompt(prompt, schema), json_mode=True)
        return parse_structured(text, schema)

    async def _complete(self, prompt: str, *, json_mode: bool = False) -> str:
        request_data: Dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self._temperature,
        }
        if json_mode:
            request_data["response_format"] = {"type": "json_object"}

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    json=request_data,
                    headers=headers,
                )
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPError as exc:
            logger.error(
                "Chat completion request failed",
                extra={"model": self._model, "error": str(exc)},
            )
            raise LLMRequestError(f"Chat completion request failed: {exc}") from exc
        except ValueError as exc:
            raise LLMRequestError(f"Chat completion returned invalid JSON: {exc}") from exc

        try:
            text = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMRequestError("Malformed chat completion response") from exc
        if not isinstance(text, str):
            raise LLMRequestError("Chat completion content is not text")
        return text


def build_llm_client(config: LLMConfig):
    """Create the client selected by ``config.provider``."""
    if config.provider == "ollama":
        return OllamaLLMClient(
            config.model,
            base_url=config.base_url,
            temperature=config.temperature,
            timeout=config.timeout_seconds,
        )
    if config.provider == "openai_compatible":
        return OpenAICompatibleLLMClient(
            config.model,
            base_url=config.base_url,
            api_key=config.api_key,
            temperature=config.temperature,
            timeout=config.timeout_seconds,
        )
    raise ConfigurationError(f"Unknown LLM provider: {config.provider}")
