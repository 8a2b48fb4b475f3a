"""
LLM client implementations for SerialForge.
The generative capability is opaque to the engine: a prompt pair goes in, text
comes out or an exception is raised. SDK clients are created lazily so that
importing this module never needs credentials.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..config import LLMConfiguration, LLMProvider


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    model: str = ""
    provider: str = ""

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Generate a response from the LLM."""
        pass


class OpenAIClient(LLMClient):
    """OpenAI-compatible client (OpenAI, OpenRouter, DeepSeek)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        provider: str = "openai",
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.provider = provider
        self.timeout = timeout
        self._client = None

    async def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        client = await self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class ClaudeClient(LLMClient):
    """Anthropic Claude API client implementation."""

    def __init__(self, api_key: str, model: str, timeout: float = 120.0):
        self.api_key = api_key
        self.model = model
        self.provider = "claude"
        self.timeout = timeout
        self._client = None

    async def _get_client(self):
        if self._client is None:
            from anthropic import AsyncAnthropic
            self._client = AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        client = await self._get_client()
        response = await client.messages.create(
            model=self.model,
            max_tokens=max_tokens or 4096,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=temperature,
        )
        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        return "".join(parts)


class GeminiClient(LLMClient):
    """Google Gemini API client implementation."""

    def __init__(self, api_key: str, model: str):
        self.api_key = api_key
        self.model = model
        self.provider = "gemini"
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(self.model)
        return self._client

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        client = await self._get_client()
        full_prompt = f"{system_prompt}\n\n---\n\n{user_prompt}"
        response = await client.generate_content_async(
            full_prompt,
            generation_config={"temperature": temperature, "max_output_tokens": max_tokens},
        )
        # .text raises when the candidate was blocked; surface that as a policy error
        try:
            return response.text
        except ValueError as e:
            raise ValueError(f"content policy: Gemini returned no text ({e})") from e


def create_llm_client(
    provider: LLMProvider,
    config: LLMConfiguration,
    model: Optional[str] = None,
) -> LLMClient:
    """Factory function to create the client for a provider."""

    provider_config = config.get_provider_config(provider)
    if not provider_config:
        raise ValueError(f"{provider.value} configuration not provided")

    model = model or provider_config.default_model
    api_key = provider_config.api_key.get_secret_value()

    if provider in (LLMProvider.OPENAI, LLMProvider.OPENROUTER, LLMProvider.DEEPSEEK):
        return OpenAIClient(
            api_key=api_key,
            model=model,
            base_url=provider_config.base_url,
            provider=provider.value,
            timeout=float(config.timeout_seconds),
        )

    elif provider == LLMProvider.CLAUDE:
        return ClaudeClient(api_key=api_key, model=model, timeout=float(config.timeout_seconds))

    elif provider == LLMProvider.GEMINI:
        return GeminiClient(api_key=api_key, model=model)

    else:
        raise ValueError(f"Unsupported provider: {provider}")
