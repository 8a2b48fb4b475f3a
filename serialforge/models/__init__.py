"""
SerialForge Data Models
Boundary schemas for generative output and run requests.
"""

from .schemas import (
    ArcPlanPayload,
    BiblePayload,
    ExtractedConstraint,
    ExtractedFact,
    InstallmentBrief,
    InstallmentDraftPayload,
    InstallmentSummaryPayload,
    RunJob,
    RunRequest,
    StoryOutline,
    SynopsisPayload,
    validate_entries,
)

__all__ = [
    "ArcPlanPayload",
    "BiblePayload",
    "ExtractedConstraint",
    "ExtractedFact",
    "InstallmentBrief",
    "InstallmentDraftPayload",
    "InstallmentSummaryPayload",
    "RunJob",
    "RunRequest",
    "StoryOutline",
    "SynopsisPayload",
    "validate_entries",
]
