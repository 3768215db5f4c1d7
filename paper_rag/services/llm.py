# =============================================================================
# LLM Providers: Completion and Streaming Behind One Protocol
# =============================================================================
#
# The research agent streams every answer; `complete()` remains for callers
# that want a single response with token usage.
#
#   LLMProvider (Protocol)
#   ├── AnthropicProvider         Claude, native SDK (system= kwarg)
#   └── OpenAICompatibleProvider  OpenAI, Gemini, DeepSeek, ... (system message)
#
# Both read model, temperature and max_tokens from settings; per-call
# overrides win when given (a temperature of 0.0 is an override, not a
# missing value). SDK errors surface as UpstreamUnavailable. No retries.
#
# Pointing at another OpenAI-style endpoint needs only environment changes:
#   LLM_PROVIDER=openai_compatible
#   LLM_BASE_URL=https://generativelanguage.googleapis.com/v1beta/openai/
#   LLM_MODEL=gemini-2.5-flash
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

from paper_rag.config import settings
from paper_rag.errors import ConfigurationError, UpstreamUnavailable

logger = logging.getLogger(__name__)

Messages = list[dict[str, str]]


@dataclass
class LLMResponse:
    """One finished completion plus token usage."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: Messages,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Return the whole completion at once.

        `messages` holds only "user" / "assistant" turns; the system
        prompt travels separately.
        """
        ...

    def stream(
        self,
        messages: Messages,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield the completion as text deltas."""
        ...


# ---------------------------------------------------------------------------
# Shared configuration
# ---------------------------------------------------------------------------


def _resolve_api_key(explicit: str | None, provider_key: str, hint: str) -> str:
    key = explicit or settings.llm_api_key or provider_key
    if not key:
        raise ConfigurationError(f"No API key configured. Set LLM_API_KEY or {hint}")
    return key


class _ProviderBase:
    """Model name and sampling defaults common to every provider."""

    def __init__(self, model: str | None) -> None:
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

    def _sampling(
        self,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        return {
            "model": self._model,
            "temperature": self._temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self._max_tokens,
        }


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicProvider(_ProviderBase):
    """Claude through `anthropic.AsyncAnthropic`."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: Any | None = None,
    ) -> None:
        super().__init__(model)
        if client is None:
            from anthropic import AsyncAnthropic

            client = AsyncAnthropic(api_key=_resolve_api_key(
                api_key, settings.anthropic_api_key, "ANTHROPIC_API_KEY",
            ))
        self._client = client
        logger.info("Anthropic provider ready (model=%s)", self._model)

    def _request_kwargs(
        self,
        messages: Messages,
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        kwargs = self._sampling(temperature, max_tokens)
        kwargs["messages"] = messages
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: Messages,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        import anthropic

        try:
            reply = await self._client.messages.create(
                **self._request_kwargs(messages, system, temperature, max_tokens)
            )
        except anthropic.APIError as exc:
            raise UpstreamUnavailable(f"Anthropic request failed: {exc}") from exc

        text = next(
            (block.text for block in reply.content if block.type == "text"), "",
        )
        return LLMResponse(
            content=text,
            model=reply.model,
            input_tokens=reply.usage.input_tokens,
            output_tokens=reply.usage.output_tokens,
        )

    async def stream(
        self,
        messages: Messages,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        import anthropic

        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            async with self._client.messages.stream(**kwargs) as events:
                async for delta in events.text_stream:
                    yield delta
        except anthropic.APIError as exc:
            raise UpstreamUnavailable(f"Anthropic stream failed: {exc}") from exc


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider(_ProviderBase):
    """Any chat-completions API that follows OpenAI's request format."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        super().__init__(model)
        self._base_url = base_url or settings.llm_base_url
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(
                api_key=_resolve_api_key(
                    api_key, settings.openai_api_key, "OPENAI_API_KEY",
                ),
                base_url=self._base_url,
            )
        self._client = client
        logger.info(
            "OpenAI-compatible provider ready (model=%s, base_url=%s)",
            self._model, self._base_url or "default",
        )

    def _request_kwargs(
        self,
        messages: Messages,
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        kwargs = self._sampling(temperature, max_tokens)
        prefix = [{"role": "system", "content": system}] if system else []
        kwargs["messages"] = prefix + list(messages)
        return kwargs

    async def complete(
        self,
        messages: Messages,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        import openai

        try:
            reply = await self._client.chat.completions.create(
                **self._request_kwargs(messages, system, temperature, max_tokens)
            )
        except openai.APIError as exc:
            raise UpstreamUnavailable(f"LLM request failed: {exc}") from exc

        usage = reply.usage
        return LLMResponse(
            content=reply.choices[0].message.content or "",
            model=reply.model or self._model,
            input_tokens=getattr(usage, "prompt_tokens", 0),
            output_tokens=getattr(usage, "completion_tokens", 0),
        )

    async def stream(
        self,
        messages: Messages,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        import openai

        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            events = await self._client.chat.completions.create(**kwargs, stream=True)
            async for event in events:
                delta = event.choices[0].delta.content if event.choices else None
                if delta:
                    yield delta
        except openai.APIError as exc:
            raise UpstreamUnavailable(f"LLM stream failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_PROVIDERS = {
    "anthropic": AnthropicProvider,
    "openai_compatible": OpenAICompatibleProvider,
}


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """Build a new provider of the configured `llm_provider` type."""
    provider_cls = _PROVIDERS.get(settings.llm_provider)
    if provider_cls is None:
        raise ConfigurationError(
            f"Unknown llm_provider '{settings.llm_provider}'. "
            f"Use one of: {', '.join(_PROVIDERS)}."
        )
    return provider_cls()
