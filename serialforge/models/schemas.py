"""
Pydantic models for SerialForge.

Everything the generative capability returns is validated against one of these
models at the boundary. Malformed entries are dropped there and never reach the
fact store, the planner or the memory layers.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger("serialforge.models")

M = TypeVar("M", bound=BaseModel)


def _coerce_text(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


class ExtractedConstraint(BaseModel):
    """A world constraint as returned by the extraction pass."""
    subject: str = Field(min_length=1)
    predicate: str = Field(min_length=1)
    value: str = Field(min_length=1)
    context: str = Field(min_length=1)
    category: str = "rule"
    immutable: bool = True

    @field_validator("subject", "predicate", "value", "context", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Any:
        return _coerce_text(v)

    @field_validator("immutable", mode="before")
    @classmethod
    def _immutable_default(cls, v: Any) -> Any:
        return True if v is None else v


class ExtractedFact(BaseModel):
    """A canon fact reported by the post-installment summary pass."""
    subject: str = Field(min_length=1)
    predicate: str = Field(min_length=1)
    value: str = Field(min_length=1)
    category: str = "other"
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    @field_validator("subject", "predicate", "value", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Any:
        return _coerce_text(v)


class StoryOutline(BaseModel):
    """Result of the one-time story planning call."""
    title: str = Field(min_length=1)
    premise: str = ""
    protagonist: str = ""
    genre: str = ""
    themes: List[str] = Field(default_factory=list)
    world_summary: str = ""
    bible: str = ""
    main_goal: str = ""


class InstallmentBrief(BaseModel):
    installment: int = Field(ge=1)
    brief: str = Field(min_length=1)


class ArcPlanPayload(BaseModel):
    """Arc plan produced at the start of an arc."""
    plan: str = Field(min_length=1)
    briefs: List[InstallmentBrief] = Field(default_factory=list)
    threads_to_advance: List[str] = Field(default_factory=list)
    threads_to_resolve: List[str] = Field(default_factory=list)

    @field_validator("briefs", mode="before")
    @classmethod
    def _drop_bad_briefs(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return [b.model_dump() for b in validate_entries(v, InstallmentBrief)]


class InstallmentDraftPayload(BaseModel):
    title: str = ""
    content: str = Field(min_length=1)


class InstallmentSummaryPayload(BaseModel):
    """Post-installment summary, also carrying newly established facts."""
    summary: str = Field(min_length=1)
    closing_hook: str = ""
    protagonist_state: str = ""
    key_events: List[str] = Field(default_factory=list)
    facts: List[ExtractedFact] = Field(default_factory=list)

    @field_validator("facts", mode="before")
    @classmethod
    def _drop_bad_facts(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return [f.model_dump() for f in validate_entries(v, ExtractedFact)]


class SynopsisPayload(BaseModel):
    synopsis: str = Field(min_length=1)
    protagonist_state: str = ""
    active_allies: List[str] = Field(default_factory=list)
    active_enemies: List[str] = Field(default_factory=list)
    open_threads: List[str] = Field(default_factory=list)


class BiblePayload(BaseModel):
    bible: str = Field(min_length=1)


class RunRequest(BaseModel):
    """What a caller asks the Runner to do."""
    project_id: str = Field(min_length=1)
    premise: str = Field(min_length=1)
    title: Optional[str] = None
    genre: str = "fantasy"
    protagonist: Optional[str] = None
    world_document: Optional[str] = None
    target_installments: int = Field(ge=1)
    start_installment: int = Field(default=0, ge=0)
    session_limit: Optional[int] = Field(default=None, ge=1)
    seed: Optional[int] = None


class RunJob(BaseModel):
    """Queue envelope around a RunRequest."""
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request: RunRequest
    retry_count: int = 0
    max_retries: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)


def validate_entries(entries: List[Any], model: Type[M]) -> List[M]:
    """Validate each entry independently, dropping the malformed ones."""
    valid: List[M] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            valid.append(model.model_validate(entry))
        except ValidationError as e:
            logger.debug(f"[validate_entries] Dropping malformed {model.__name__}: {e.error_count()} errors")
    return valid
