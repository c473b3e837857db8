# =============================================================================
# Multi-Provider LLM Abstraction — Backend for the Relevance Judge
# =============================================================================
#
# A common `complete()` interface over Anthropic (Claude) and any
# OpenAI-compatible chat API (OpenAI, DeepSeek, Qwen, GLM, local servers).
# The relevance judge and the metadata extractor are its consumers; both
# accept a per-call model id resolved by create_provider_from_id().
#
# SDK errors are translated at this boundary:
#   timeout            → ProviderTimeoutError
#   any other API error → ProviderError
# Retries with backoff are the SDK's job (max_retries from settings).
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — system prompt as first message
#   ├── get_llm_provider()       — factory, reads from config
#   └── create_provider_from_id() — "anthropic/claude-..." style ids
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ragindex.config import Settings, get_settings
from ragindex.exceptions import ProviderError, ProviderTimeoutError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Provider-neutral completion result."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """Anything with an async `complete()` returning an LLMResponse."""

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Dicts with "role" ("user" / "assistant") and "content".
            system: System prompt, placed the way each provider expects.
            temperature: Override sampling temperature.
            max_tokens: Override max output tokens.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Claude via the native SDK.

    Anthropic takes the system prompt as a top-level `system=` kwarg,
    not as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        cfg = settings or get_settings()
        resolved_key = api_key or cfg.llm_api_key or cfg.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(
            api_key=resolved_key,
            max_retries=cfg.provider_max_retries,
            timeout=cfg.provider_timeout_seconds,
        )
        self._model = model or cfg.llm_model
        self._temperature = cfg.llm_temperature
        self._max_tokens = cfg.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        import anthropic

        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APITimeoutError as e:
            raise ProviderTimeoutError(f"Anthropic request timed out: {e}", provider="anthropic") from e
        except anthropic.AnthropicError as e:
            raise ProviderError(f"Anthropic request failed: {e}", provider="anthropic") from e

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Any chat API that follows the OpenAI spec, selected by base_url.

        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        cfg = settings or get_settings()
        resolved_key = api_key or cfg.llm_api_key or cfg.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": cfg.provider_max_retries,
            "timeout": cfg.provider_timeout_seconds,
        }
        resolved_base_url = base_url or cfg.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or cfg.llm_model
        self._temperature = cfg.llm_temperature
        self._max_tokens = cfg.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        import openai

        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=all_messages,
                max_tokens=max_tokens or self._max_tokens,
                temperature=self._temperature if temperature is None else temperature,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(f"Chat request timed out: {e}", provider="openai") from e
        except openai.OpenAIError as e:
            raise ProviderError(f"Chat request failed: {e}", provider="openai") from e

        content = response.choices[0].message.content or ""
        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def get_llm_provider(
    settings: Settings | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build the configured LLM provider (a new instance per call).

    - "anthropic" → AnthropicProvider
    - "openai_compatible" → OpenAICompatibleProvider
    """
    cfg = settings or get_settings()
    if cfg.llm_provider == "anthropic":
        return AnthropicProvider(settings=cfg)
    return OpenAICompatibleProvider(settings=cfg)


_KNOWN_PROVIDER_TYPES = {"anthropic", "openai_compatible"}


def _parse_provider_id(provider_id: str) -> tuple[str, str, str | None]:
    """
    Parse a provider_id string into (provider_type, model, base_url).

        "anthropic/claude-sonnet-4-6"
            → ("anthropic", "claude-sonnet-4-6", None)
        "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"
            → ("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

    Raises:
        ValidationError: Unrecognisable format or unknown provider type.
    """
    if "/" not in provider_id:
        raise ValidationError(
            f"Invalid provider_id '{provider_id}'. "
            "Expected format: 'provider_type/model' or "
            "'provider_type/model@base_url'"
        )

    provider_type, rest = provider_id.split("/", 1)

    base_url: str | None = None
    if "@" in rest:
        model, base_url = rest.split("@", 1)
    else:
        model = rest

    if provider_type not in _KNOWN_PROVIDER_TYPES:
        raise ValidationError(
            f"Unknown provider type '{provider_type}'. "
            f"Supported types: {sorted(_KNOWN_PROVIDER_TYPES)}"
        )

    return provider_type, model, base_url


def create_provider_from_id(
    provider_id: str,
    api_key: str | None = None,
    settings: Settings | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """Create an LLM provider for an explicit model id (judge or extractor)."""
    provider_type, model, base_url = _parse_provider_id(provider_id)

    if provider_type == "anthropic":
        return AnthropicProvider(api_key=api_key, model=model, settings=settings)

    return OpenAICompatibleProvider(
        api_key=api_key, model=model, base_url=base_url, settings=settings,
    )
