"""
AI provider adapter — one completion call across OpenAI, Anthropic and Gemini.

  complete(provider, model, user_prompt, system_prompt, context_messages,
           temperature, max_tokens) -> text

Clients are created lazily per provider from the API keys in settings.
Every provider failure surfaces as AIProviderError.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import anthropic
import httpx
import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from config.settings import AIConfig
from models.schemas import AIProvider

logger = structlog.get_logger()

DEFAULT_MODELS = {
    AIProvider.OPENAI.value: "gpt-4o-mini",
    AIProvider.ANTHROPIC.value: "claude-3-5-haiku-latest",
    AIProvider.GEMINI.value: "gemini-2.0-flash",
}


class AIProviderError(Exception):
    def __init__(self, message: str, provider: str = ""):
        self.provider = provider
        super().__init__(message)


class AIClient:
    """Unified completion call that handles the OpenAI, Anthropic and Gemini APIs."""

    def __init__(self, config: AIConfig, timeout: float = 60.0):
        self.config = config
        self.timeout = timeout
        self._clients: dict[str, Any] = {}

    def _api_key(self, provider: str) -> str:
        key = {
            AIProvider.OPENAI.value: self.config.openai_api_key,
            AIProvider.ANTHROPIC.value: self.config.anthropic_api_key,
            AIProvider.GEMINI.value: self.config.gemini_api_key,
        }.get(provider, "")
        if not key:
            raise AIProviderError(f"{provider} API key is not configured", provider)
        return key

    def _get_client(self, provider: str):
        if provider not in self._clients:
            api_key = self._api_key(provider)
            if provider == AIProvider.OPENAI.value:
                self._clients[provider] = openai.AsyncOpenAI(api_key=api_key, timeout=self.timeout)
            elif provider == AIProvider.ANTHROPIC.value:
                self._clients[provider] = anthropic.AsyncAnthropic(api_key=api_key, timeout=self.timeout)
            else:
                self._clients[provider] = genai.Client(
                    api_key=api_key,
                    http_options=genai_types.HttpOptions(timeout=int(self.timeout * 1000)),
                )
            logger.info("llm_client_initialized", provider=provider)
        return self._clients[provider]

    async def complete(
        self,
        provider: str,
        model: str,
        user_prompt: str,
        system_prompt: Optional[str] = None,
        context_messages: Optional[list[dict[str, str]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        provider = (provider or AIProvider.OPENAI.value).upper()
        if provider not in DEFAULT_MODELS:
            raise AIProviderError(f"Unsupported AI provider: {provider}", provider)

        model = model or DEFAULT_MODELS[provider]
        temperature = temperature if temperature is not None else self.config.default_temperature
        max_tokens = max_tokens or self.config.default_max_tokens
        messages = [*(context_messages or []), {"role": "user", "content": user_prompt}]

        if provider == AIProvider.OPENAI.value:
            text = await self._call_openai(model, system_prompt, messages, temperature, max_tokens)
        elif provider == AIProvider.ANTHROPIC.value:
            text = await self._call_anthropic(model, system_prompt, messages, temperature, max_tokens)
        else:
            text = await self._call_gemini(model, system_prompt, messages, temperature, max_tokens)

        logger.info("llm_completion", provider=provider, model=model, chars=len(text))
        return text

    async def _call_openai(self, model, system_prompt, messages, temperature, max_tokens) -> str:
        # OpenAI: system prompt is a message in the messages list
        if system_prompt:
            messages = [{"role": "system", "content": system_prompt}, *messages]
        try:
            response = await self._get_client(AIProvider.OPENAI.value).chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
            )
        except openai.OpenAIError as e:
            raise AIProviderError(f"OpenAI call failed: {e}", AIProvider.OPENAI.value) from e
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def _call_anthropic(self, model, system_prompt, messages, temperature, max_tokens) -> str:
        # Anthropic: system prompt is a separate parameter
        kwargs: dict[str, Any] = {}
        if system_prompt:
            kwargs["system"] = system_prompt
        try:
            response = await self._get_client(AIProvider.ANTHROPIC.value).messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
                **kwargs,
            )
        except anthropic.AnthropicError as e:
            raise AIProviderError(f"Anthropic call failed: {e}", AIProvider.ANTHROPIC.value) from e
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    async def _call_gemini(self, model, system_prompt, messages, temperature, max_tokens) -> str:
        # Gemini: context messages are folded into one prompt
        prompt = "\n".join(
            m["content"] if m is messages[-1] else f"{m['role']}: {m['content']}"
            for m in messages
        )
        config = genai_types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        try:
            response = await self._get_client(AIProvider.GEMINI.value).aio.models.generate_content(
                model=model,
                contents=prompt,
                config=config,
            )
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise AIProviderError(f"Gemini call failed: {e}", AIProvider.GEMINI.value) from e
        return response.text or ""
