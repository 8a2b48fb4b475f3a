"""
Generation service for SerialForge

Wraps an LLMClient with the behaviour the engine relies on:
- Empty responses are treated as failures, never as text
- Provider errors are classified as retryable or non-retryable
- Retryable errors are retried with exponential backoff plus jitter, capped
- Backoff sleeps observe the run's cancellation signal
- Structured output goes through the json_repair stage and, optionally,
  pydantic validation
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..agents.base import LLMClient
from ..config import RetrySettings
from ..core.cancellation import CancellationSignal
from ..core.errors import (
    EmptyResponseError,
    GenerationError,
    NonRetryableGenerationError,
    RetryableGenerationError,
    RunCancelledError,
)
from ..core.json_repair import parse_json

logger = logging.getLogger("serialforge.generation")

M = TypeVar("M", bound=BaseModel)

RETRYABLE_PATTERNS = [
    "429", "rate limit", "rate_limit", "ratelimit", "quota",
    "500", "502", "503", "504",
    "timeout", "timed out", "connection", "network",
    "overloaded", "overload", "capacity",
    "temporarily unavailable", "service unavailable",
    "internal server error", "bad gateway", "gateway timeout",
]

NON_RETRYABLE_PATTERNS = [
    "401", "403", "400", "422",
    "content policy", "content_policy", "content_filter", "safety", "blocked",
    "invalid request", "invalid_request",
    "invalid api key", "invalid_api_key", "authentication",
    "unauthorized", "forbidden", "invalid model",
    "model not found", "does not exist",
]

RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504, 529}


def is_retryable_error(error: BaseException) -> bool:
    """Check whether a provider error is transient.

    Explicit non-retryable patterns win over retryable ones, so a 400 that
    mentions a timeout parameter is still treated as permanent.
    """
    if isinstance(error, GenerationError):
        return error.retryable

    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    for pattern in NON_RETRYABLE_PATTERNS:
        if pattern in error_str:
            return False

    for pattern in RETRYABLE_PATTERNS:
        if pattern in error_str:
            return True

    for rtype in ("timeout", "connection", "network", "ratelimit"):
        if rtype in error_type:
            return True

    if isinstance(error, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True

    return False


def classify_error(error: BaseException) -> GenerationError:
    """Map an arbitrary provider exception onto the engine taxonomy."""
    if isinstance(error, GenerationError):
        return error
    if is_retryable_error(error):
        return RetryableGenerationError(str(error) or type(error).__name__, cause=error)
    return NonRetryableGenerationError(str(error) or type(error).__name__, cause=error)


def _chained(error: GenerationError, cause: BaseException) -> GenerationError:
    if error is not cause and error.__cause__ is None:
        error.__cause__ = cause
    return error


class GenerationService:
    """Retrying façade over a single LLM client."""

    def __init__(
        self,
        client: LLMClient,
        retry: Optional[RetrySettings] = None,
        temperature: float = 0.7,
        event_callback: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.retry = retry or RetrySettings()
        self.temperature = temperature
        self.event_callback = event_callback
        self._rng = rng or random.Random()
        self.calls = 0
        self.failures = 0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based): base**attempt + jitter, capped."""
        base_delay = self.retry.base ** attempt
        jitter = self._rng.uniform(0, self.retry.jitter_seconds) if self.retry.jitter_seconds else 0.0
        return min(base_delay + jitter, self.retry.max_delay_seconds)

    def _emit_event(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.event_callback:
            self.event_callback(event_type, data)

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel: Optional[CancellationSignal] = None,
        label: str = "generate",
    ) -> str:
        """Call the provider with retry; returns non-empty text or raises."""
        temperature = self.temperature if temperature is None else temperature
        max_attempts = self.retry.max_attempts
        last_error: Optional[GenerationError] = None

        for attempt in range(max_attempts):
            if attempt > 0:
                delay = self.backoff_delay(attempt)
                logger.info(f"[invoke] {label}: retry {attempt + 1}/{max_attempts} after {delay:.1f}s")
                self._emit_event("generation_retry", {
                    "label": label,
                    "attempt": attempt + 1,
                    "max_attempts": max_attempts,
                    "delay": delay,
                    "error": str(last_error) if last_error else None,
                })
                if cancel is not None:
                    if not await cancel.sleep(delay):
                        raise RunCancelledError(f"{label} cancelled during backoff")
                else:
                    await asyncio.sleep(delay)

            start = time.monotonic()
            self.calls += 1
            try:
                text = await self.client.generate(
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                if text is None or not text.strip():
                    raise EmptyResponseError(f"{label}: empty response from provider")
                logger.debug(
                    f"[invoke] {label}: {len(text)} chars in {time.monotonic() - start:.2f}s "
                    f"(model={getattr(self.client, 'model', '?')})"
                )
                return text
            except Exception as e:
                self.failures += 1
                last_error = classify_error(e)
                logger.warning(f"[invoke] {label} attempt {attempt + 1}/{max_attempts} failed: {e}")

                if not last_error.retryable:
                    logger.error(f"[invoke] Non-retryable error for {label}: {e}")
                    self._emit_event("generation_failed", {
                        "label": label,
                        "error": str(e),
                        "retryable": False,
                        "attempts": attempt + 1,
                    })
                    raise _chained(last_error, e)

                if attempt == max_attempts - 1:
                    logger.error(f"[invoke] All {max_attempts} attempts exhausted for {label}")
                    self._emit_event("generation_failed", {
                        "label": label,
                        "error": str(e),
                        "retryable": True,
                        "attempts": max_attempts,
                    })
                    raise _chained(last_error, e)

        raise last_error if last_error else RuntimeError(f"Unexpected error in invoke({label})")

    async def invoke_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel: Optional[CancellationSignal] = None,
        label: str = "generate_json",
    ) -> Optional[Any]:
        """Call the provider and run the output through the repair stage."""
        text = await self.invoke(
            system_prompt,
            user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            cancel=cancel,
            label=label,
        )
        parsed = parse_json(text)
        if parsed is None:
            logger.warning(f"[invoke_json] {label}: output could not be parsed as JSON")
        return parsed

    async def invoke_model(
        self,
        system_prompt: str,
        user_prompt: str,
        model_cls: Type[M],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel: Optional[CancellationSignal] = None,
        label: str = "generate_model",
    ) -> Optional[M]:
        """Like invoke_json, validated against ``model_cls``; None when invalid."""
        parsed = await self.invoke_json(
            system_prompt,
            user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            cancel=cancel,
            label=label,
        )
        if not isinstance(parsed, dict):
            return None
        try:
            return model_cls.model_validate(parsed)
        except ValidationError as e:
            logger.warning(f"[invoke_model] {label}: {model_cls.__name__} validation failed ({e.error_count()} errors)")
            return None
