"""Async chat-completion client for the supported LLM backends.

openai, mistral and groq speak the OpenAI chat-completions dialect;
anthropic uses its messages API; ollama uses its local /api/chat endpoint
and needs no key.

Usage::

    async with ChatClient(LLMConfig(provider="openai", api_key="sk-...")) as client:
        text = await client.complete(system="...", prompt="Classify this email: ...")
"""

import logging

import httpx
from pydantic import BaseModel

from emailcat.schemas.processing import LLMConfig, LLMProviderName

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class Backend(BaseModel):
    """Endpoint and default model of one chat backend."""

    url: str
    default_model: str
    dialect: str  # "openai" | "anthropic" | "ollama"


BACKENDS: dict[LLMProviderName, Backend] = {
    LLMProviderName.OPENAI: Backend(
        url="https://api.openai.com/v1/chat/completions",
        default_model="gpt-4o-mini",
        dialect="openai",
    ),
    LLMProviderName.ANTHROPIC: Backend(
        url="https://api.anthropic.com/v1/messages",
        default_model="claude-3-haiku-20240307",
        dialect="anthropic",
    ),
    LLMProviderName.MISTRAL: Backend(
        url="https://api.mistral.ai/v1/chat/completions",
        default_model="mistral-small-latest",
        dialect="openai",
    ),
    LLMProviderName.GROQ: Backend(
        url="https://api.groq.com/openai/v1/chat/completions",
        default_model="llama-3.1-8b-instant",
        dialect="openai",
    ),
    LLMProviderName.OLLAMA: Backend(
        url="http://localhost:11434/api/chat",
        default_model="llama3.2",
        dialect="ollama",
    ),
}


class ChatClient:
    """Single-turn chat client returning the assistant's raw text."""

    def __init__(
        self,
        config: LLMConfig,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._backend = BACKENDS[config.provider]
        self.model = config.model or self._backend.default_model
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def provider(self) -> LLMProviderName:
        return self._config.provider

    @property
    def url(self) -> str:
        if self._backend.dialect == "ollama" and self._config.base_url:
            return self._config.base_url.rstrip("/") + "/api/chat"
        return self._backend.url

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 150,
    ) -> str:
        """Send one system+user exchange and return the reply text.

        Raises:
            httpx.HTTPError: On transport failure or a non-2xx response.
            KeyError, IndexError: If the response body has an unexpected shape.
        """
        dialect = self._backend.dialect
        headers = {"Content-Type": "application/json"}

        if dialect == "anthropic":
            headers["x-api-key"] = self._config.api_key
            headers["anthropic-version"] = ANTHROPIC_VERSION
            payload = {
                "model": self.model,
                "system": system,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        elif dialect == "ollama":
            payload = {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "stream": False,
                "format": "json",
                "options": {"temperature": temperature, "num_predict": max_tokens},
            }
        else:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
            payload = {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }

        response = await self._client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()
        data = response.json()

        if dialect == "anthropic":
            text = data["content"][0]["text"] if data.get("content") else ""
        elif dialect == "ollama":
            text = data["message"]["content"]
        else:
            text = data["choices"][0]["message"]["content"] or ""

        logger.debug(
            "%s/%s replied with %d chars", self._config.provider.value, self.model, len(text)
        )
        return text
