"""Reasoning-backend provider abstraction and vendor-specific implementations."""

from __future__ import annotations

from dataclasses import dataclass, field
from os import environ
from typing import Any, Protocol

#: Reply length cap sent with every request.
MAX_TOKENS = 4096


@dataclass
class TokenUsage:
    """Token counts for a single LLM call."""

    input_tokens: int
    output_tokens: int


@dataclass
class LLMResponse:
    """Normalised response from any LLM provider."""

    content: str | None
    usage: TokenUsage = field(default_factory=lambda: TokenUsage(0, 0))


class LLMProvider(Protocol):
    """Protocol every provider must implement."""

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
    ) -> LLMResponse: ...


# --------------------------------------------------------------------------- #
# Anthropic
# --------------------------------------------------------------------------- #


class AnthropicProvider:
    """Anthropic (Claude) provider using the async SDK."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
        from anthropic import AsyncAnthropic

        key = api_key or environ.get("ANTHROPIC_API_KEY", "")
        kwargs: dict[str, Any] = {"api_key": key}
        if base_url:
            kwargs["base_url"] = base_url
        self._client = AsyncAnthropic(**kwargs)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
    ) -> LLMResponse:
        # Anthropic wants system as a separate kwarg, not in messages.
        system_text = ""
        api_messages: list[dict[str, Any]] = []
        for msg in messages:
            if msg.get("role") == "system":
                system_text = str(msg.get("content", ""))
            else:
                api_messages.append(msg)

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": MAX_TOKENS,
            "messages": api_messages,
        }
        if system_text:
            kwargs["system"] = system_text

        response = await self._client.messages.create(**kwargs)

        text_parts = [block.text for block in response.content if block.type == "text"]
        content = "\n".join(text_parts) if text_parts else None
        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return LLMResponse(content=content, usage=usage)


# --------------------------------------------------------------------------- #
# OpenAI-compatible (OpenAI, MiniMax, ...)
# --------------------------------------------------------------------------- #


class OpenAIProvider:
    """OpenAI chat-completions provider; ``base_url`` points it at compatible APIs."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
        from openai import AsyncOpenAI

        key = api_key or environ.get("OPENAI_API_KEY", "")
        self._client = AsyncOpenAI(api_key=key, base_url=base_url or None)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
    ) -> LLMResponse:
        response = await self._client.chat.completions.create(
            model=model,
            messages=messages,  # type: ignore[arg-type]
            max_tokens=MAX_TOKENS,
        )

        content: str | None = None
        if response.choices:
            content = response.choices[0].message.content

        usage = TokenUsage(0, 0)
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens or 0,
            )

        return LLMResponse(content=content, usage=usage)


# --------------------------------------------------------------------------- #
# Google
# --------------------------------------------------------------------------- #


class GoogleProvider:
    """Google Gemini provider using the google-genai async SDK."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
        from google import genai

        key = api_key or environ.get("GOOGLE_API_KEY") or None
        self._client = genai.Client(api_key=key) if key else None

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
    ) -> LLMResponse:
        from google.genai import types

        if self._client is None:
            msg = (
                "Google API key not set. "
                "Set GOOGLE_API_KEY or pass credentials."
            )
            raise ValueError(msg)

        system_text: str | None = None
        contents: list[types.Content] = []

        for m in messages:
            role = m.get("role", "user")
            text = str(m.get("content", ""))
            if role == "system":
                system_text = text
                continue
            # Google uses "user" and "model" roles.
            g_role = "model" if role == "assistant" else "user"
            contents.append(
                types.Content(
                    role=g_role,
                    parts=[types.Part.from_text(text=text)],
                )
            )

        config_kwargs: dict[str, Any] = {"max_output_tokens": MAX_TOKENS}
        if system_text:
            config_kwargs["system_instruction"] = system_text

        response = await self._client.aio.models.generate_content(
            model=model,
            contents=contents,
            config=types.GenerateContentConfig(**config_kwargs),
        )

        text_parts: list[str] = []
        if response.candidates:
            content_obj = response.candidates[0].content
            parts = content_obj.parts if content_obj else None
            for part in parts or []:
                if part.text:
                    text_parts.append(part.text)

        content = "\n".join(text_parts) if text_parts else None
        usage = TokenUsage(0, 0)
        if response.usage_metadata:
            usage = TokenUsage(
                input_tokens=response.usage_metadata.prompt_token_count or 0,
                output_tokens=response.usage_metadata.candidates_token_count or 0,
            )

        return LLMResponse(content=content, usage=usage)


# --------------------------------------------------------------------------- #
# Factory
# --------------------------------------------------------------------------- #

_PROVIDER_MAP: dict[str, type[AnthropicProvider | OpenAIProvider | GoogleProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google": GoogleProvider,
}


def create_provider(
    model_string: str,
    api_key: str | None = None,
    base_url: str | None = None,
) -> tuple[LLMProvider, str]:
    """Parse ``provider/model-name`` and return ``(provider_instance, model_name)``.

    Raises ``ValueError`` for unknown providers.
    """
    if "/" not in model_string:
        msg = (
            f"Invalid model string {model_string!r} -- "
            "expected format 'provider/model-name'"
        )
        raise ValueError(msg)

    provider_name, model_name = model_string.split("/", 1)

    provider_cls = _PROVIDER_MAP.get(provider_name)
    if provider_cls is None:
        known = ", ".join(sorted(_PROVIDER_MAP))
        msg = f"Unknown provider {provider_name!r} -- supported providers: {known}"
        raise ValueError(msg)

    return provider_cls(api_key=api_key, base_url=base_url), model_name
