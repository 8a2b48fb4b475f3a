"""
Story Memory for SerialForge

Everything the engine remembers about a story between installments, apart
from the canon and the beat ledger:
- the global bible (generated once, refreshed in place)
- the rolling synopsis (replaced at every arc boundary)
- per-installment records: title, summary, opening and closing lines
- the raw text of the most recent installments

Key concepts:
- Raw text is kept only for the last few installments; older ones survive as
  summaries, which is what keeps context bounded as the story grows
- simple_summarize: extractive fallback when the summarizer model fails
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

RECENT_TEXT_LIMIT = 5
OPENING_MAX_CHARS = 200
CLOSING_MAX_CHARS = 200

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def split_paragraphs(content: str) -> List[str]:
    return [p.strip() for p in re.split(r"\n\s*\n", content or "") if p.strip()]


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text.replace("\n", " ")) if s.strip()]


def extract_opening(content: str) -> str:
    """First sentence of the installment."""
    paragraphs = split_paragraphs(content)
    if not paragraphs:
        return ""
    sentences = split_sentences(paragraphs[0])
    return (sentences[0] if sentences else paragraphs[0])[:OPENING_MAX_CHARS]


def extract_closing(content: str) -> str:
    """Last sentence of the installment, usually the hook."""
    paragraphs = split_paragraphs(content)
    if not paragraphs:
        return ""
    sentences = split_sentences(paragraphs[-1])
    return (sentences[-1] if sentences else paragraphs[-1])[-CLOSING_MAX_CHARS:]


def count_words(text: str) -> int:
    return len((text or "").split())


def simple_summarize(text: str, max_words: int = 150) -> str:
    """Extractive summary: first, middle and last sentences, capped in words."""
    sentences = split_sentences(text or "")
    if len(sentences) > 3:
        sentences = [sentences[0], sentences[len(sentences) // 2], sentences[-1]]
    words = " ".join(sentences).split()
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words]) + "..."


@dataclass
class RollingSynopsis:
    text: str = ""
    protagonist_state: str = ""
    active_allies: List[str] = field(default_factory=list)
    active_enemies: List[str] = field(default_factory=list)
    open_threads: List[str] = field(default_factory=list)
    last_updated_installment: int = 0

    def render(self) -> str:
        if not self.text:
            return ""
        parts = [self.text]
        if self.protagonist_state:
            parts.append(f"Protagonist now: {self.protagonist_state}")
        if self.active_allies:
            parts.append(f"Allies: {', '.join(self.active_allies)}")
        if self.active_enemies:
            parts.append(f"Enemies: {', '.join(self.active_enemies)}")
        if self.open_threads:
            parts.append("Open threads:\n" + "\n".join(f"- {t}" for t in self.open_threads))
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "protagonist_state": self.protagonist_state,
            "active_allies": list(self.active_allies),
            "active_enemies": list(self.active_enemies),
            "open_threads": list(self.open_threads),
            "last_updated_installment": self.last_updated_installment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollingSynopsis":
        return cls(
            text=data.get("text", ""),
            protagonist_state=data.get("protagonist_state", ""),
            active_allies=list(data.get("active_allies", [])),
            active_enemies=list(data.get("active_enemies", [])),
            open_threads=list(data.get("open_threads", [])),
            last_updated_installment=data.get("last_updated_installment", 0),
        )


@dataclass
class InstallmentRecord:
    installment: int
    title: str
    word_count: int
    opening: str = ""
    closing: str = ""
    summary: str = ""
    closing_hook: str = ""
    protagonist_state: str = ""
    key_events: List[str] = field(default_factory=list)
    quality_score: Optional[float] = None
    needs_review: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment": self.installment,
            "title": self.title,
            "word_count": self.word_count,
            "opening": self.opening,
            "closing": self.closing,
            "summary": self.summary,
            "closing_hook": self.closing_hook,
            "protagonist_state": self.protagonist_state,
            "key_events": list(self.key_events),
            "quality_score": self.quality_score,
            "needs_review": self.needs_review,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstallmentRecord":
        created = data.get("created_at")
        return cls(
            installment=data["installment"],
            title=data.get("title", ""),
            word_count=data.get("word_count", 0),
            opening=data.get("opening", ""),
            closing=data.get("closing", ""),
            summary=data.get("summary", ""),
            closing_hook=data.get("closing_hook", ""),
            protagonist_state=data.get("protagonist_state", ""),
            key_events=list(data.get("key_events", [])),
            quality_score=data.get("quality_score"),
            needs_review=data.get("needs_review", False),
            created_at=datetime.fromisoformat(created) if created else datetime.utcnow(),
        )


class StoryMemory:
    """Bible, synopsis and installment history of one story."""

    def __init__(self, recent_limit: int = RECENT_TEXT_LIMIT):
        self.recent_limit = recent_limit
        self.outline: Dict[str, Any] = {}
        self.bible: str = ""
        self.bible_updated_at: int = 0
        self.synopsis = RollingSynopsis()
        self.records: Dict[int, InstallmentRecord] = {}
        self.recent_texts: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Installments
    # ------------------------------------------------------------------

    def add_installment(
        self,
        installment: int,
        title: str,
        content: str,
        quality_score: Optional[float] = None,
        needs_review: bool = False,
    ) -> InstallmentRecord:
        record = InstallmentRecord(
            installment=installment,
            title=title,
            word_count=count_words(content),
            opening=extract_opening(content),
            closing=extract_closing(content),
            quality_score=quality_score,
            needs_review=needs_review,
        )
        self.records[installment] = record
        self.recent_texts[installment] = content
        for old in sorted(self.recent_texts)[:-self.recent_limit]:
            del self.recent_texts[old]
        return record

    def set_summary(
        self,
        installment: int,
        summary: str,
        closing_hook: str = "",
        protagonist_state: str = "",
        key_events: Optional[List[str]] = None,
    ) -> None:
        record = self.records.get(installment)
        if not record:
            return
        record.summary = summary
        record.closing_hook = closing_hook
        record.protagonist_state = protagonist_state
        record.key_events = list(key_events or [])

    def get_record(self, installment: int) -> Optional[InstallmentRecord]:
        return self.records.get(installment)

    def recent_installments(self, before: int, count: int) -> List[Tuple[int, str, str]]:
        """Up to ``count`` raw installments preceding ``before``, oldest first."""
        if count <= 0:
            return []
        numbers = [n for n in sorted(self.recent_texts) if n < before][-count:]
        return [(n, self.records[n].title if n in self.records else "", self.recent_texts[n]) for n in numbers]

    def summaries_between(self, start: int, end: int) -> List[Tuple[int, str]]:
        summaries = []
        for n in range(start, end + 1):
            record = self.records.get(n)
            if not record:
                continue
            summaries.append((n, record.summary or simple_summarize(self.recent_texts.get(n, ""))))
        return summaries

    def prior_titles(self, limit: int) -> List[str]:
        return [self.records[n].title for n in sorted(self.records)[-limit:] if self.records[n].title] if limit else []

    def prior_openings(self, limit: int) -> List[str]:
        return [self.records[n].opening for n in sorted(self.records)[-limit:] if self.records[n].opening] if limit else []

    def prior_closings(self, limit: int) -> List[str]:
        return [self.records[n].closing for n in sorted(self.records)[-limit:] if self.records[n].closing] if limit else []

    @property
    def latest_installment(self) -> int:
        return max(self.records) if self.records else 0

    @property
    def total_words(self) -> int:
        return sum(r.word_count for r in self.records.values())

    def flagged_for_review(self) -> List[int]:
        return sorted(n for n, r in self.records.items() if r.needs_review)

    # ------------------------------------------------------------------
    # Bible and synopsis
    # ------------------------------------------------------------------

    def set_bible(self, bible: str, installment: int = 0) -> None:
        self.bible = bible
        self.bible_updated_at = installment

    def needs_bible_refresh(self, installment: int, interval: int) -> bool:
        if not self.bible or installment <= 0:
            return False
        return installment % interval == 0 and installment > self.bible_updated_at

    def replace_synopsis(self, synopsis: RollingSynopsis) -> None:
        self.synopsis = synopsis

    def fallback_synopsis(self, start: int, end: int, max_words: int) -> RollingSynopsis:
        """Extractive replacement used when the synopsis call fails."""
        parts = [self.synopsis.text] if self.synopsis.text else []
        parts.extend(summary for _, summary in self.summaries_between(start, end))
        words = " ".join(parts).split()
        # Keep the most recent material when over the bound
        text = " ".join(words[-max_words:])
        latest = self.records.get(end)
        return RollingSynopsis(
            text=text,
            protagonist_state=(latest.protagonist_state if latest else "") or self.synopsis.protagonist_state,
            active_allies=list(self.synopsis.active_allies),
            active_enemies=list(self.synopsis.active_enemies),
            open_threads=list(self.synopsis.open_threads),
            last_updated_installment=end,
        )

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outline": dict(self.outline),
            "bible": self.bible,
            "bible_updated_at": self.bible_updated_at,
            "synopsis": self.synopsis.to_dict(),
            "records": [self.records[n].to_dict() for n in sorted(self.records)],
            "recent_texts": {str(n): t for n, t in self.recent_texts.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], recent_limit: int = RECENT_TEXT_LIMIT) -> "StoryMemory":
        memory = cls(recent_limit=recent_limit)
        memory.outline = dict(data.get("outline", {}))
        memory.bible = data.get("bible", "")
        memory.bible_updated_at = data.get("bible_updated_at", 0)
        memory.synopsis = RollingSynopsis.from_dict(data.get("synopsis", {}))
        for raw in data.get("records", []):
            record = InstallmentRecord.from_dict(raw)
            memory.records[record.installment] = record
        memory.recent_texts = {int(n): t for n, t in data.get("recent_texts", {}).items()}
        return memory
