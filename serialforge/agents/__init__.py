"""
SerialForge LLM clients.
"""

from .base import (
    ClaudeClient,
    GeminiClient,
    LLMClient,
    OpenAIClient,
    create_llm_client,
)

__all__ = [
    "LLMClient",
    "OpenAIClient",
    "ClaudeClient",
    "GeminiClient",
    "create_llm_client",
]
