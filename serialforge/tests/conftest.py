"""
Pytest configuration and fixtures for SerialForge tests.

This module provides:
- Network blocking fixture to prevent accidental API calls in CI
- FakeLLMClient, a scripted stand-in for every generation role
- Fast engine settings (no pacing delays, no backoff, small installments)
"""

import json
import re
import socket
from typing import Dict, List, Optional, Set, Tuple

import pytest
from unittest.mock import patch

from serialforge.agents.base import LLMClient
from serialforge.config import (
    ArcSettings,
    EngineSettings,
    QualitySettings,
    RetrySettings,
    RunnerConfig,
)
from serialforge.prompts import (
    EXTRACTOR_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    SUMMARIZER_SYSTEM_PROMPT,
    WRITER_SYSTEM_PROMPT,
)
from serialforge.services.generation import GenerationService
from serialforge.services.store import InMemoryStore


class NetworkBlockedError(Exception):
    """Raised when a test attempts to make a network connection."""
    pass


def _block_socket_connect(*args, **kwargs):
    """Block all socket connections to prevent accidental API calls."""
    raise NetworkBlockedError(
        "Network access is blocked in unit tests. "
        "If you need to test network functionality, use mocks. "
        "This prevents accidental OpenAI/Anthropic API calls that cost money."
    )


@pytest.fixture(autouse=True)
def block_network():
    """
    Automatically block all network connections in tests.

    If a test needs to make real network calls (integration tests),
    it should be marked with @pytest.mark.integration and run separately.
    """
    with patch.object(socket.socket, 'connect', _block_socket_connect):
        with patch.object(socket, 'create_connection', _block_socket_connect):
            yield


# ============================================================================
# Scripted LLM
# ============================================================================

OPENERS = [
    "Mira reached the waystone before dawn",
    "Rain hammered the ferry landing",
    "Nobody in the valley slept that night",
    "The archive doors were already open",
    "Smoke drifted over the salt flats",
    "Oren counted the coins twice",
    "A courier waited beside the broken bridge",
]

CLOSERS = [
    "Then the bell rang, once, from a tower that had no bell.",
    "Behind them, the lantern went out on its own.",
    "The letter was signed with a name she had buried years ago.",
    "Far below, something answered her call.",
    "When she turned around, the road was gone.",
]


def installment_text(n: int) -> str:
    """A ~60 word installment with dialogue, three paragraphs and a varied opening."""
    opener = OPENERS[n % len(OPENERS)]
    closer = CLOSERS[n % len(CLOSERS)]
    return (
        f"{opener}, carrying marker {n} in her coat. The road behind her was quiet "
        f"and the lantern burned low.\n\n"
        f"\"We keep moving,\" said Oren. \"Nobody waits for us at marker {n}.\"\n\n"
        f"She studied the map while the wind shifted across the ridge. {closer}"
    )


class FakeLLMClient(LLMClient):
    """
    Routes on the system prompt and the markers each user prompt carries.

    Every call is recorded as (kind, user_prompt) so tests can assert which
    roles were invoked.
    """

    model = "fake-model"
    provider = "fake"

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.outline_response: Optional[str] = None
        self.fail_writer_for: Set[int] = set()
        self.fail_all_writes = False
        self.short_for: Set[int] = set()
        self.summary_facts: Dict[int, List[dict]] = {}
        self.fail_summaries = False

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    def prompts(self, kind: str) -> List[str]:
        return [p for k, p in self.calls if k == kind]

    async def generate(self, system_prompt, user_prompt, temperature=0.7, max_tokens=None) -> str:
        kind = self._classify(system_prompt, user_prompt)
        self.calls.append((kind, user_prompt))
        return getattr(self, f"_{kind}")(user_prompt)

    def _classify(self, system_prompt: str, user_prompt: str) -> str:
        if system_prompt == EXTRACTOR_SYSTEM_PROMPT:
            return "extract"
        if system_prompt == PLANNER_SYSTEM_PROMPT:
            return "outline" if "**Planned Length:**" in user_prompt else "arc_plan"
        if system_prompt == WRITER_SYSTEM_PROMPT:
            return "rewrite" if "=== PREVIOUS DRAFT" in user_prompt else "write"
        if system_prompt == SUMMARIZER_SYSTEM_PROMPT:
            if "## Previous Synopsis" in user_prompt:
                return "synopsis"
            if "## Current Story Bible" in user_prompt:
                return "bible"
            return "summary"
        raise AssertionError("unexpected system prompt")

    def _outline(self, prompt: str) -> str:
        if self.outline_response is not None:
            return self.outline_response
        return json.dumps({
            "title": "The Long Road",
            "premise": "A courier crosses a haunted country.",
            "protagonist": "Mira",
            "genre": "fantasy",
            "themes": ["duty", "memory"],
            "world_summary": "The Long Road has exactly one thousand markers.",
            "bible": "Mira is a courier. Oren is her guide. The road has one thousand markers.",
            "main_goal": "Deliver the last letter.",
        })

    def _extract(self, prompt: str) -> str:
        return json.dumps([
            {
                "subject": "The Long Road",
                "predicate": "marker_count",
                "value": "1000",
                "context": "The Long Road has exactly one thousand markers.",
                "category": "quantity",
                "immutable": True,
            },
            {
                "subject": "Oren",
                "predicate": "role",
                "value": "guide",
                "context": "Oren is her guide.",
                "category": "character_limit",
                "immutable": False,
            },
        ])

    def _arc_plan(self, prompt: str) -> str:
        match = re.search(r"\*\*Installments:\*\* (\d+)-(\d+)", prompt)
        start, end = int(match.group(1)), int(match.group(2))
        return json.dumps({
            "plan": f"Mira crosses markers {start} to {end}.",
            "briefs": [{"installment": i, "brief": f"Reach marker {i}."} for i in range(start, end + 1)],
        })

    def _write(self, prompt: str) -> str:
        n = int(re.search(r"Write installment (\d+)\.", prompt).group(1))
        if self.fail_all_writes or n in self.fail_writer_for:
            raise ValueError("400 invalid request: writer refused")
        if n in self.short_for:
            return json.dumps({"title": f"Fragment {n}", "content": "Too short to publish."})
        return json.dumps({"title": f"Lantern Night {n}", "content": installment_text(n)})

    def _rewrite(self, prompt: str) -> str:
        n = int(re.search(r"Rewrite installment (\d+),", prompt).group(1))
        return json.dumps({"title": f"Lantern Night {n} Revised", "content": installment_text(n)})

    def _summary(self, prompt: str) -> str:
        if self.fail_summaries:
            return "the archivist is unavailable"
        n = int(re.search(r"## Installment (\d+):", prompt).group(1))
        facts = self.summary_facts.get(n, [
            {"subject": "Mira", "predicate": "location", "value": f"marker {n}", "category": "character"},
        ])
        return json.dumps({
            "summary": f"Mira reaches marker {n} with Oren.",
            "closing_hook": "Something waits ahead.",
            "protagonist_state": f"Tired, at marker {n}",
            "key_events": [f"Arrived at marker {n}"],
            "facts": facts,
        })

    def _synopsis(self, prompt: str) -> str:
        match = re.search(r"## Installments (\d+)-(\d+)", prompt)
        return json.dumps({
            "synopsis": f"Mira has travelled through marker {match.group(2)}.",
            "protagonist_state": "Determined",
            "active_allies": ["Oren"],
            "active_enemies": [],
            "open_threads": ["The last letter"],
        })

    def _bible(self, prompt: str) -> str:
        return json.dumps({"bible": "Refreshed bible: Mira and Oren on the Long Road."})


# ============================================================================
# Fixtures
# ============================================================================

def fast_settings(arc_size: int = 10, **runner_overrides) -> EngineSettings:
    runner = {
        "delay_between_installments": 0.0,
        "delay_between_arcs": 0.0,
        "adaptive_delay": 0.0,
        "max_installment_retries": 2,
        "snapshot_interval": 5,
    }
    runner.update(runner_overrides)
    return EngineSettings(
        runner=RunnerConfig(**runner),
        arcs=ArcSettings(arc_size=arc_size),
        quality=QualitySettings(target_words=50),
        retry=RetrySettings(max_attempts=1, base=1.0, jitter_seconds=0.0, max_delay_seconds=0.0),
    )


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def generation(fake_llm):
    return GenerationService(fake_llm, retry=fast_settings().retry)


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def engine_settings():
    return fast_settings()
