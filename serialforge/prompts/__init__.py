"""
SerialForge prompt templates.
"""

from .planner import (
    ARC_PLAN_USER_PROMPT_TEMPLATE,
    EXTRACTOR_SYSTEM_PROMPT,
    EXTRACTOR_USER_PROMPT_TEMPLATE,
    OUTLINE_USER_PROMPT_TEMPLATE,
    PLANNER_SYSTEM_PROMPT,
)
from .summarizer import (
    BIBLE_REFRESH_USER_PROMPT_TEMPLATE,
    INSTALLMENT_SUMMARY_USER_PROMPT_TEMPLATE,
    SUMMARIZER_SYSTEM_PROMPT,
    SYNOPSIS_USER_PROMPT_TEMPLATE,
)
from .writer import (
    REWRITE_USER_PROMPT_TEMPLATE,
    WRITER_SYSTEM_PROMPT,
    WRITER_USER_PROMPT_TEMPLATE,
)

__all__ = [
    "PLANNER_SYSTEM_PROMPT",
    "OUTLINE_USER_PROMPT_TEMPLATE",
    "EXTRACTOR_SYSTEM_PROMPT",
    "EXTRACTOR_USER_PROMPT_TEMPLATE",
    "ARC_PLAN_USER_PROMPT_TEMPLATE",
    "WRITER_SYSTEM_PROMPT",
    "WRITER_USER_PROMPT_TEMPLATE",
    "REWRITE_USER_PROMPT_TEMPLATE",
    "SUMMARIZER_SYSTEM_PROMPT",
    "INSTALLMENT_SUMMARY_USER_PROMPT_TEMPLATE",
    "SYNOPSIS_USER_PROMPT_TEMPLATE",
    "BIBLE_REFRESH_USER_PROMPT_TEMPLATE",
]
