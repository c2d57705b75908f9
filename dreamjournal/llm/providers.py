"""Chat-completion backends behind one interface.

Each provider turns (system prompt, user prompt, options) into one HTTP call
(raw httpx for OpenAI and Yandex, the official SDK for Anthropic). The whole
call, body included, runs under asyncio.wait_for with a fixed deadline, and
every failure maps onto the provider exception family in
dreamjournal.core.exceptions:

- timeout               -> ProviderTimeoutError
- transport failure     -> ProviderConnectionError
- non-2xx status        -> ProviderHttpError(status, hint)
- 2xx, unusable body    -> ProviderResponseError

Retries live in dreamjournal.llm.retry, not here.
"""

import asyncio
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import anthropic
import httpx
import structlog

from dreamjournal.core.config import Settings, get_settings
from dreamjournal.core.exceptions import (
    ConfigurationError,
    ProviderConnectionError,
    ProviderHttpError,
    ProviderResponseError,
    ProviderTimeoutError,
)

logger = structlog.get_logger(__name__)

HINT_MAX_CHARS = 400


@dataclass(frozen=True)
class ChatOptions:
    temperature: float = 0.3
    max_tokens: int = 1024


@dataclass(frozen=True)
class ChatResult:
    text: str
    model: str
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ChatProvider(Protocol):
    name: str
    model: str

    async def chat(self, system: str, user: str, options: ChatOptions | None = None) -> ChatResult: ...

    async def aclose(self) -> None: ...


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 chars per token) for backends that omit usage."""
    return max(1, len(text) // 4) if text else 0


def _error_hint(raw: str) -> str:
    """Best-effort error.message from a JSON error body, else the start of the raw body."""
    try:
        body = json.loads(raw)
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return raw[:HINT_MAX_CHARS]


class HttpChatProvider:
    """Shared HTTP plumbing. Subclasses build the request and read the response."""

    name = "http"

    def __init__(
        self,
        api_key: str,
        model: str,
        url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def headers(self) -> dict[str, str]:
        raise NotImplementedError

    def build_body(self, system: str, user: str, options: ChatOptions) -> dict[str, Any]:
        raise NotImplementedError

    def parse_body(self, body: dict[str, Any], system: str, user: str) -> ChatResult:
        raise NotImplementedError

    async def chat(self, system: str, user: str, options: ChatOptions | None = None) -> ChatResult:
        if not self.api_key:
            raise ConfigurationError(f"{self.name} API key is not set", missing=[f"{self.name.upper()}_API_KEY"])

        options = options or ChatOptions()
        payload = self.build_body(system, user, options)

        try:
            response = await asyncio.wait_for(
                self.client.post(
                    self.url,
                    json=payload,
                    headers=self.headers(),
                    timeout=self.timeout_seconds,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ProviderTimeoutError(self.name, self.timeout_seconds) from e
        except httpx.TransportError as e:
            raise ProviderConnectionError(self.name, str(e) or type(e).__name__) from e

        raw = response.text
        if not response.is_success:
            hint = _error_hint(raw)
            logger.warning("llm_http_error", provider=self.name, status=response.status_code, hint=hint[:200])
            raise ProviderHttpError(self.name, response.status_code, hint)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderResponseError(f"{self.name} returned non-JSON", provider=self.name) from e
        if not isinstance(body, dict):
            raise ProviderResponseError(f"{self.name} returned non-object JSON", provider=self.name)

        result = self.parse_body(body, system, user)
        if not result.text or not result.text.strip():
            raise ProviderResponseError(f"{self.name} LLM: empty response", provider=self.name)
        return result


class OpenAIProvider(HttpChatProvider):
    name = "openai"

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def build_body(self, system: str, user: str, options: ChatOptions) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }

    def parse_body(self, body: dict[str, Any], system: str, user: str) -> ChatResult:
        choices = body.get("choices") or [{}]
        text = ((choices[0] or {}).get("message") or {}).get("content") or ""
        usage = body.get("usage") or {}
        return ChatResult(
            text=text,
            model=body.get("model") or self.model,
            prompt_tokens=int(usage.get("prompt_tokens") or estimate_tokens(system + user)),
            completion_tokens=int(usage.get("completion_tokens") or estimate_tokens(text)),
        )


class YandexProvider(HttpChatProvider):
    """YandexGPT foundation models. `model` is the full modelUri (gpt://...)."""

    name = "yandex"

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Api-Key {self.api_key}", "Content-Type": "application/json"}

    def build_body(self, system: str, user: str, options: ChatOptions) -> dict[str, Any]:
        if not self.model.startswith("gpt://"):
            raise ConfigurationError("YANDEX_MODEL (modelUri) is not set correctly", missing=["YANDEX_MODEL"])
        return {
            "modelUri": self.model,
            "completionOptions": {
                "stream": False,
                "temperature": options.temperature,
                "maxTokens": options.max_tokens,
            },
            "messages": [
                {"role": "system", "text": system},
                {"role": "user", "text": user},
            ],
        }

    def parse_body(self, body: dict[str, Any], system: str, user: str) -> ChatResult:
        result = body.get("result") or {}
        alternatives = result.get("alternatives") or []
        text = ""
        if alternatives:
            text = ((alternatives[0] or {}).get("message") or {}).get("text") or ""
        # Yandex reports token counts as strings
        usage = result.get("usage") or {}
        return ChatResult(
            text=text,
            model=self.model,
            prompt_tokens=int(usage.get("inputTextTokens") or estimate_tokens(system + user)),
            completion_tokens=int(usage.get("completionTokens") or estimate_tokens(text)),
        )


class AnthropicProvider:
    """Anthropic Messages API through the official SDK.

    SDK-level retries are disabled; the retry policy in dreamjournal.llm.retry
    owns every re-attempt.
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def chat(self, system: str, user: str, options: ChatOptions | None = None) -> ChatResult:
        if not self.api_key:
            raise ConfigurationError("anthropic API key is not set", missing=["ANTHROPIC_API_KEY"])

        options = options or ChatOptions()
        try:
            message = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.model,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    temperature=options.temperature,
                    max_tokens=options.max_tokens,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, anthropic.APITimeoutError) as e:
            raise ProviderTimeoutError(self.name, self.timeout_seconds) from e
        except anthropic.APIConnectionError as e:
            raise ProviderConnectionError(self.name, str(e) or type(e).__name__) from e
        except anthropic.APIStatusError as e:
            hint = _error_hint(e.response.text)
            logger.warning("llm_http_error", provider=self.name, status=e.status_code, hint=hint[:200])
            raise ProviderHttpError(self.name, e.status_code, hint) from e
        except anthropic.APIError as e:
            raise ProviderResponseError(f"{self.name} returned an unusable response", provider=self.name) from e

        text = "".join(block.text for block in message.content if block.type == "text")
        if not text.strip():
            raise ProviderResponseError(f"{self.name} LLM: empty response", provider=self.name)
        return ChatResult(
            text=text,
            model=message.model or self.model,
            prompt_tokens=message.usage.input_tokens,
            completion_tokens=message.usage.output_tokens,
        )


def build_provider(settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> ChatProvider:
    """Select the backend named by settings.llm_provider."""
    settings = settings or get_settings()
    provider = (settings.llm_provider or "").lower()
    timeout = settings.llm_timeout_seconds

    if provider == "openai":
        return OpenAIProvider(settings.openai_api_key, settings.openai_model, settings.openai_base_url, timeout, client)
    if provider == "yandex":
        return YandexProvider(
            settings.yandex_api_key, settings.resolved_yandex_model, settings.yandex_base_url, timeout, client
        )
    if provider == "anthropic":
        return AnthropicProvider(
            settings.anthropic_api_key, settings.anthropic_model, settings.anthropic_base_url, timeout
        )
    raise ConfigurationError(f"Unknown LLM provider: {settings.llm_provider!r}", missing=["LLM_PROVIDER"])


@lru_cache
def get_provider() -> ChatProvider:
    """Process-wide provider, resolved once from settings."""
    provider = build_provider()
    logger.info("llm_provider_selected", provider=provider.name, model=provider.model)
    return provider
