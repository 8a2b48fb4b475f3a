"""
Orchestration Runner for SerialForge

Drives one story from premise to target length:
idle -> planning_story -> planning_arcs -> writing (<-> paused) -> completed | error

Per installment: assemble context -> draft -> quality gate -> bounded rewrite
-> persist the accepted text -> concurrent post-processing (consistency check,
tracker bookkeeping, summary and fact extraction) -> periodic snapshot.

Key concepts:
- One Runner per story; nothing is shared between Runner instances
- Cooperative cancellation: stop and pause are observed at the top of every
  arc and installment iteration and inside retry backoff
- Resume reconstructs planning from persisted markers (snapshot, story plan,
  arcs) and never calls the planner again
- Only the accepted installment text is a safety-critical write; every other
  write and every enrichment step is logged and swallowed on failure
"""

import asyncio
import inspect
import logging
import os
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineSettings
from ..models import (
    ArcPlanPayload,
    BiblePayload,
    InstallmentDraftPayload,
    InstallmentSummaryPayload,
    RunRequest,
    StoryOutline,
    SynopsisPayload,
)
from ..prompts import (
    ARC_PLAN_USER_PROMPT_TEMPLATE,
    BIBLE_REFRESH_USER_PROMPT_TEMPLATE,
    INSTALLMENT_SUMMARY_USER_PROMPT_TEMPLATE,
    OUTLINE_USER_PROMPT_TEMPLATE,
    PLANNER_SYSTEM_PROMPT,
    REWRITE_USER_PROMPT_TEMPLATE,
    SUMMARIZER_SYSTEM_PROMPT,
    SYNOPSIS_USER_PROMPT_TEMPLATE,
    WRITER_SYSTEM_PROMPT,
    WRITER_USER_PROMPT_TEMPLATE,
)
from ..services.generation import GenerationService
from ..services.store import DurableStore
from .arcs import Arc, ArcPlanner, TwistStatus
from .beats import BeatLedger
from .cancellation import CancellationSignal
from .canon import (
    DEAD_VALUES,
    DEATH_PREDICATES,
    STATUS_PREDICATES,
    TRUE_VALUES,
    CanonFact,
    CanonLevel,
    CanonResolver,
    FactCategory,
)
from .constraints import ConstraintExtractor, WorldConstraint
from .context import HierarchicalContextAssembler
from .errors import (
    ArcFailedError,
    EmptyResponseError,
    InstallmentFailedError,
    PlanningError,
    RunCancelledError,
)
from .json_repair import parse_json_object
from .memory import RollingSynopsis, StoryMemory, simple_summarize
from .quality import AutoRewriter, InstallmentDraft, QualityContext, QualityGate

# Package-wide handler; child loggers ("serialforge.*") propagate here
root_logger = logging.getLogger("serialforge")
root_logger.setLevel(os.getenv("SERIALFORGE_LOG_LEVEL", "INFO").upper())
if not root_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(handler)

logger = logging.getLogger("serialforge.runner")

SNAPSHOT_VERSION = 1


class RunnerStatus(str, Enum):
    IDLE = "idle"
    PLANNING_STORY = "planning_story"
    PLANNING_ARCS = "planning_arcs"
    WRITING = "writing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class RunnerState:
    """Progress of one story. Mutated only by its Runner."""
    project_id: str = ""
    status: RunnerStatus = RunnerStatus.IDLE
    current_arc: int = 0
    current_installment: int = 0
    installments_written: int = 0
    installments_failed: int = 0
    total_words: int = 0
    retry_count: int = 0
    flagged_for_review: List[int] = field(default_factory=list)
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def average_words(self) -> float:
        if not self.installments_written:
            return 0.0
        return self.total_words / self.installments_written

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "current_arc": self.current_arc,
            "current_installment": self.current_installment,
            "installments_written": self.installments_written,
            "installments_failed": self.installments_failed,
            "total_words": self.total_words,
            "retry_count": self.retry_count,
            "flagged_for_review": list(self.flagged_for_review),
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunnerState":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            project_id=data.get("project_id", ""),
            status=RunnerStatus(data.get("status", "idle")),
            current_arc=data.get("current_arc", 0),
            current_installment=data.get("current_installment", 0),
            installments_written=data.get("installments_written", 0),
            installments_failed=data.get("installments_failed", 0),
            total_words=data.get("total_words", 0),
            retry_count=data.get("retry_count", 0),
            flagged_for_review=list(data.get("flagged_for_review", [])),
            last_error=data.get("last_error"),
            started_at=_dt(data.get("started_at")),
            updated_at=_dt(data.get("updated_at")) or datetime.utcnow(),
            completed_at=_dt(data.get("completed_at")),
        )


@dataclass
class RunResult:
    success: bool
    installments_written: int
    installments_failed: int
    state: RunnerState
    error: Optional[str] = None
    flagged_for_review: List[int] = field(default_factory=list)
    stopped: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunnerCallbacks:
    """Optional hooks; each may be a plain function or a coroutine function."""
    on_status_change: Optional[Callable[..., Any]] = None
    on_installment_complete: Optional[Callable[..., Any]] = None
    on_arc_complete: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None
    on_event: Optional[Callable[..., Any]] = None


def is_death_fact(predicate: str, value: str) -> bool:
    predicate = predicate.strip().lower()
    value = value.strip().lower()
    if predicate in DEATH_PREDICATES:
        return value in TRUE_VALUES or value in DEAD_VALUES
    if predicate in STATUS_PREDICATES:
        return value in DEAD_VALUES
    return False


def parse_draft(raw: str, installment: int) -> InstallmentDraft:
    """Writer output to a draft: JSON {"title", "content"} or plain prose."""
    data = parse_json_object(raw)
    if data is not None:
        try:
            payload = InstallmentDraftPayload.model_validate(data)
            return InstallmentDraft(
                title=payload.title.strip() or f"Installment {installment}",
                content=payload.content.strip(),
            )
        except ValueError:
            logger.debug(f"[parse_draft] Installment {installment}: JSON draft failed validation, using raw text")

    text = (raw or "").strip()
    title = f"Installment {installment}"
    lines = text.splitlines()
    if lines and (lines[0].startswith("#") or lines[0].lower().startswith("title:")):
        title = lines[0].lstrip("#").split(":", 1)[-1].strip() or title
        text = "\n".join(lines[1:]).strip()
    if not text:
        raise EmptyResponseError(f"Installment {installment}: writer returned no content")
    return InstallmentDraft(title=title, content=text)


class Runner:
    """
    State machine for one story.

    Collaborators are injected: the three generation roles (planner, writer,
    summarizer) may share one GenerationService.
    """

    def __init__(
        self,
        writer: GenerationService,
        store: DurableStore,
        settings: Optional[EngineSettings] = None,
        planner: Optional[GenerationService] = None,
        summarizer: Optional[GenerationService] = None,
        callbacks: Optional[RunnerCallbacks] = None,
        rng: Optional[random.Random] = None,
    ):
        self.writer = writer
        self.planner = planner or writer
        self.summarizer = summarizer or writer
        self.store = store
        self.settings = settings or EngineSettings()
        self.callbacks = callbacks or RunnerCallbacks()
        self._rng = rng

        self.signal = CancellationSignal()
        self.state = RunnerState()
        self.assembler = HierarchicalContextAssembler(self.settings.context)
        self.gate = QualityGate(self.settings.quality)
        self.rewriter = AutoRewriter(self.gate)

        self.project_id = ""
        self.request: Optional[RunRequest] = None
        self.canon = CanonResolver()
        self.beats = BeatLedger(cooldowns=self.settings.beats.cooldown_overrides)
        self.arcs = ArcPlanner(self.settings.arcs)
        self.memory = StoryMemory(recent_limit=self._recent_limit())
        self.constraints: List[WorldConstraint] = []

        self._first_failure: Optional[str] = None
        self._pending_events: set = set()

    # ========================================================================
    # Public surface
    # ========================================================================

    def pause(self) -> None:
        logger.info(f"[pause] Pause requested for {self.project_id}")
        self.signal.pause()

    def resume(self) -> None:
        logger.info(f"[resume] Resume requested for {self.project_id}")
        self.signal.resume()

    def stop(self) -> None:
        logger.info(f"[stop] Stop requested for {self.project_id}")
        self.signal.stop()

    def get_state(self) -> RunnerState:
        return RunnerState.from_dict(self.state.to_dict())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "installments_written": self.state.installments_written,
            "installments_failed": self.state.installments_failed,
            "total_words": self.state.total_words,
            "average_words": round(self.state.average_words, 1),
            "retry_count": self.state.retry_count,
            "open_issues": len(self.canon.get_open_issues()),
            "flagged_for_review": len(self.state.flagged_for_review),
        }

    async def run(self, request: RunRequest) -> RunResult:
        """Run until the target length, the session limit, a stop or a hard failure."""
        self.signal.reset()
        self._init_story(request)
        self.state.started_at = datetime.utcnow()

        written_before = self.state.installments_written
        failed_before = self.state.installments_failed
        first_error: Optional[str] = None
        stopped = False

        try:
            progress = await self._restore(request)
            written_before = self.state.installments_written
            failed_before = self.state.installments_failed

            if progress == 0:
                await self._set_status(RunnerStatus.PLANNING_STORY)
                await self._plan_story(request)
            else:
                logger.info(f"[run] Resuming {self.project_id} after installment {progress}")
                await self._reconstruct_plan(request, progress)

            await self._set_status(RunnerStatus.PLANNING_ARCS)
            await self._plan_arcs(request.target_installments)

            await self._set_status(RunnerStatus.WRITING)
            stopped = await self._write_loop(request, progress + 1)

        except RunCancelledError:
            stopped = True
        except (PlanningError, ArcFailedError) as e:
            first_error = str(e)
            self.state.last_error = first_error
            logger.error(f"[run] {self.project_id}: {e}")
            await self._notify("on_error", e, self.state.current_installment)
            await self._set_status(RunnerStatus.ERROR)

        written = self.state.installments_written - written_before
        failed = self.state.installments_failed - failed_before

        if stopped:
            logger.info(f"[run] {self.project_id} stopped at installment {self.state.current_installment}")
            await self._set_status(RunnerStatus.IDLE)
        elif self.state.status != RunnerStatus.ERROR:
            if written == 0 and failed > 0:
                logger.error(f"[run] {self.project_id}: every installment of this run failed")
                await self._set_status(RunnerStatus.ERROR)
            else:
                self.state.completed_at = datetime.utcnow()
                await self._set_status(RunnerStatus.COMPLETED)

        if self.memory.records:
            await self._save_snapshot()

        if first_error is None:
            first_error = self._first_failure
        success = self.state.status == RunnerStatus.COMPLETED and written > 0
        if not success and first_error is None and not stopped:
            first_error = "No installments were written"

        result = RunResult(
            success=success,
            installments_written=written,
            installments_failed=failed,
            state=self.get_state(),
            error=first_error if not success or failed else None,
            flagged_for_review=list(self.state.flagged_for_review),
            stopped=stopped,
            stats=self.get_stats(),
        )
        self._emit_event("run_finished", {
            "success": success,
            "written": written,
            "failed": failed,
            "status": self.state.status.value,
        })
        await self._drain_events()
        return result

    # ========================================================================
    # Setup, restore and planning
    # ========================================================================

    def _init_story(self, request: RunRequest) -> None:
        self.request = request
        self.project_id = request.project_id
        self.state = RunnerState(project_id=request.project_id)
        self.canon = CanonResolver(
            project_id=request.project_id,
            high_stakes_threshold=self.settings.runner.high_stakes_authority,
        )
        self.beats = BeatLedger(cooldowns=self.settings.beats.cooldown_overrides)
        rng = self._rng or random.Random(request.seed)
        self.arcs = ArcPlanner(self.settings.arcs, rng=rng, target_installments=request.target_installments)
        self.memory = StoryMemory(recent_limit=self._recent_limit())
        self.constraints = []
        self._first_failure = None

    def _recent_limit(self) -> int:
        """Raw texts to keep: enough for the widest context tier."""
        ctx = self.settings.context
        return max(1, ctx.full_recent, ctx.medium_recent, ctx.minimal_recent)

    async def _restore(self, request: RunRequest) -> int:
        """Load snapshot and progress markers; returns the last written installment."""
        snapshot = None
        try:
            snapshot = await self.store.load_snapshot(self.project_id)
        except Exception as e:
            logger.warning(f"[_restore] Snapshot load failed for {self.project_id}: {e}")

        if snapshot:
            self._apply_snapshot(snapshot)
            logger.info(
                f"[_restore] Restored snapshot for {self.project_id} at installment "
                f"{self.state.current_installment}"
            )

        latest = 0
        try:
            latest = await self.store.get_latest_installment_number(self.project_id)
        except Exception as e:
            logger.warning(f"[_restore] Could not read latest installment for {self.project_id}: {e}")

        progress = max(request.start_installment, latest, self.memory.latest_installment)
        self.state.current_installment = progress
        return progress

    def _apply_snapshot(self, snapshot: Dict[str, Any]) -> None:
        rng = self.arcs.rng
        self.canon = CanonResolver.from_dict(snapshot.get("canon", {}))
        self.canon.project_id = self.project_id
        self.canon.high_stakes_threshold = self.settings.runner.high_stakes_authority
        self.beats = BeatLedger.from_dict(snapshot.get("beats", {}), cooldowns=self.settings.beats.cooldown_overrides)
        self.arcs = ArcPlanner.from_dict(snapshot.get("arcs", {}), settings=self.settings.arcs, rng=rng)
        self.arcs.target_installments = self.request.target_installments
        self.memory = StoryMemory.from_dict(snapshot.get("memory", {}), recent_limit=self._recent_limit())
        self.constraints = [WorldConstraint.from_dict(c) for c in snapshot.get("constraints", [])]

        restored = RunnerState.from_dict(snapshot.get("state", {}))
        self.state.installments_written = restored.installments_written
        self.state.installments_failed = restored.installments_failed
        self.state.total_words = restored.total_words
        self.state.retry_count = restored.retry_count
        self.state.flagged_for_review = restored.flagged_for_review
        self.state.current_arc = restored.current_arc
        self.state.current_installment = restored.current_installment

    def build_snapshot(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "state": self.state.to_dict(),
            "canon": self.canon.to_dict(),
            "beats": self.beats.to_dict(),
            "arcs": self.arcs.to_dict(),
            "memory": self.memory.to_dict(),
            "constraints": [c.to_dict() for c in self.constraints],
        }

    async def _save_snapshot(self) -> None:
        if not self.settings.runner.snapshot_enabled:
            return
        try:
            await self.store.save_snapshot(self.project_id, self.build_snapshot())
            logger.debug(f"[_save_snapshot] Snapshot saved for {self.project_id}")
        except Exception as e:
            logger.warning(f"[_save_snapshot] Snapshot write failed for {self.project_id}: {e}")

    async def _plan_story(self, request: RunRequest) -> None:
        """Outline, bible and world constraints. Any failure is fatal for the run."""
        user_prompt = OUTLINE_USER_PROMPT_TEMPLATE.format(
            premise=request.premise,
            title=request.title or "Untitled",
            genre=request.genre,
            protagonist=request.protagonist or "To be decided",
            target_installments=request.target_installments,
            world_document=request.world_document or "None provided",
        )
        try:
            outline = await self.planner.invoke_model(
                PLANNER_SYSTEM_PROMPT,
                user_prompt,
                StoryOutline,
                max_tokens=self.settings.runner.planning_max_tokens,
                cancel=self.signal,
                label="plan_story",
            )
        except RunCancelledError:
            raise
        except Exception as e:
            raise PlanningError(f"Story planning failed: {e}") from e
        if outline is None:
            raise PlanningError("Story planning returned no usable outline")

        self.memory.outline = outline.model_dump()
        self.memory.set_bible(outline.bible or outline.world_summary, 0)
        self._emit_event("story_planned", {"title": outline.title})

        world_document = request.world_document or outline.world_summary
        if world_document:
            extractor = ConstraintExtractor(self.planner, max_tokens=self.settings.runner.planning_max_tokens)
            try:
                self.constraints = await extractor.extract(world_document, cancel=self.signal)
            except RunCancelledError:
                raise
            except Exception as e:
                logger.warning(f"[_plan_story] Constraint extraction failed, continuing without: {e}")
            accepted = ConstraintExtractor.apply_to_canon(self.constraints, self.canon)
            logger.info(f"[_plan_story] {accepted} immutable constraints registered as canon")
            for constraint in self.constraints:
                await self._optional_write("upsert_constraint", self.store.upsert_constraint(self.project_id, constraint))
            for fact in self.canon.facts:
                await self._optional_write("upsert_fact", self.store.upsert_fact(self.project_id, fact))

        await self._optional_write("save_story_plan", self.store.save_story_plan(self.project_id, self._story_plan()))

    def _story_plan(self) -> Dict[str, Any]:
        return {
            "outline": self.memory.outline,
            "bible": self.memory.bible,
            "bible_updated_at": self.memory.bible_updated_at,
            "target_installments": self.request.target_installments if self.request else None,
        }

    async def _reconstruct_plan(self, request: RunRequest, progress: int) -> None:
        """Rebuild planning artifacts from persisted markers, without the planner."""
        if not self.memory.outline:
            plan = None
            try:
                plan = await self.store.get_story_plan(self.project_id)
            except Exception as e:
                logger.warning(f"[_reconstruct_plan] Story plan unavailable: {e}")
            if plan:
                self.memory.outline = plan.get("outline") or {}
                if not self.memory.bible:
                    self.memory.set_bible(plan.get("bible", ""), plan.get("bible_updated_at", 0))
            else:
                self.memory.outline = {
                    "title": request.title or "Untitled",
                    "premise": request.premise,
                    "protagonist": request.protagonist or "",
                    "genre": request.genre,
                }

        if not self.memory.synopsis.text:
            try:
                synopsis = await self.store.get_synopsis(self.project_id)
                if synopsis:
                    self.memory.replace_synopsis(synopsis)
            except Exception as e:
                logger.warning(f"[_reconstruct_plan] Synopsis unavailable: {e}")

        if not self.constraints:
            try:
                self.constraints = await self.store.get_constraints(self.project_id)
            except Exception as e:
                logger.warning(f"[_reconstruct_plan] Constraints unavailable: {e}")

        if not self.canon.facts:
            try:
                self.canon.register_many(await self.store.get_facts(self.project_id))
            except Exception as e:
                logger.warning(f"[_reconstruct_plan] Facts unavailable: {e}")

        try:
            for arc in await self.store.get_arcs(self.project_id):
                if self.arcs.get_arc_by_number(arc.arc_number) is None:
                    self.arcs.add_arc(arc)
        except Exception as e:
            logger.warning(f"[_reconstruct_plan] Stored arcs unavailable, re-deriving: {e}")

        await self._catch_up_memory(progress)

    async def _catch_up_memory(self, progress: int) -> None:
        """
        Load stored installments newer than the memory's latest record.

        Covers a missing snapshot and a snapshot that lags behind the store.
        Only the window the context layers can show is loaded.
        """
        ctx = self.settings.context
        window = max(self.memory.recent_limit, ctx.max_prior_titles, ctx.max_prior_openings, ctx.max_prior_closings)
        start = max(self.memory.latest_installment + 1, progress - window + 1, 1)
        loaded = 0
        for n in range(start, progress + 1):
            try:
                stored = await self.store.get_installment(self.project_id, n)
            except Exception as e:
                logger.warning(f"[_catch_up_memory] Stored installments unavailable from {n}: {e}")
                break
            if not stored or not stored.get("content"):
                continue
            metadata = stored.get("metadata") or {}
            quality = metadata.get("quality") or {}
            self.memory.add_installment(
                n,
                stored.get("title", ""),
                stored["content"],
                quality_score=quality.get("overall"),
                needs_review=bool(metadata.get("needs_review")),
            )
            loaded += 1
        if loaded:
            logger.info(f"[_catch_up_memory] Loaded {loaded} stored installments into memory for {self.project_id}")

    async def _plan_arcs(self, target_installments: int) -> None:
        known = set(self.arcs.arcs)
        arcs = self.arcs.plan_arcs(target_installments)
        for arc in arcs:
            if arc.arc_number not in known:
                await self._optional_write("upsert_arc", self.store.upsert_arc(self.project_id, arc))
        self._emit_event("arcs_planned", {
            "arcs": len(arcs),
            "twists": sum(len(a.twists) for a in arcs),
        })

    # ========================================================================
    # Writing loop
    # ========================================================================

    async def _checkpoint(self) -> bool:
        """Observe pause and stop. Returns False when the run must exit."""
        if self.signal.is_stopped:
            return False
        if self.signal.is_paused:
            await self._set_status(RunnerStatus.PAUSED)
            if not await self.signal.wait_if_paused():
                return False
            await self._set_status(RunnerStatus.WRITING)
        return not self.signal.is_stopped

    async def _write_loop(self, request: RunRequest, first_installment: int) -> bool:
        """Arc loop around the installment loop. Returns True when stopped."""
        cfg = self.settings.runner
        target = request.target_installments
        session_limit = request.session_limit
        session_written = 0
        n = first_installment

        while n <= target:
            if session_limit is not None and session_written >= session_limit:
                logger.info(f"[_write_loop] Session limit {session_limit} reached for {self.project_id}")
                break
            if not await self._checkpoint():
                return True

            arc = self.arcs.ensure_arc(n)
            arc_end = min(arc.end_installment, target)
            self.state.current_arc = arc.arc_number
            await self._begin_arc(arc, n)

            written_in_arc = 0
            failed_in_arc = 0
            last_failure: Optional[InstallmentFailedError] = None

            while n <= arc_end:
                if session_limit is not None and session_written >= session_limit:
                    break
                if not await self._checkpoint():
                    return True

                self.state.current_installment = n
                started = time.monotonic()
                try:
                    await self._write_with_retries(n)
                    written_in_arc += 1
                    session_written += 1
                except InstallmentFailedError as e:
                    failed_in_arc += 1
                    last_failure = e
                    self.state.installments_failed += 1
                    self.state.last_error = str(e)
                    if self._first_failure is None:
                        self._first_failure = str(e)
                    logger.error(f"[_write_loop] {e}")
                    await self._notify("on_error", e, n)
                    self._emit_event("installment_failed", {"installment": n, "error": str(e)})
                    if cfg.pause_on_error:
                        self.signal.pause()
                n += 1

                if n <= arc_end:
                    elapsed = time.monotonic() - started
                    delay = cfg.adaptive_delay if elapsed > cfg.slow_installment_seconds else cfg.delay_between_installments
                    if not await self.signal.sleep(delay):
                        return True

            if written_in_arc == 0 and failed_in_arc > 0:
                raise ArcFailedError(arc.arc_number, failed_in_arc, last_failure)

            if n > arc_end:
                await self._finish_arc(arc, arc_end)
                if cfg.pause_after_arc:
                    self.signal.pause()
                if n <= target and not (session_limit is not None and session_written >= session_limit):
                    if not await self.signal.sleep(cfg.delay_between_arcs):
                        return True

        return False

    async def _write_with_retries(self, installment: int) -> None:
        max_retries = self.settings.runner.max_installment_retries
        last_error: Optional[BaseException] = None
        for attempt in range(1, max_retries + 1):
            try:
                await self._write_installment(installment)
                return
            except RunCancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"[_write_with_retries] Installment {installment} attempt {attempt}/{max_retries} failed: {e}"
                )
                if attempt < max_retries:
                    self.state.retry_count += 1
                    if not await self.signal.sleep(self.settings.runner.adaptive_delay):
                        raise RunCancelledError(f"Installment {installment} cancelled between retries")
        raise InstallmentFailedError(installment, str(last_error), last_error)

    async def _write_installment(self, n: int) -> None:
        cfg = self.settings.runner
        target = self.request.target_installments
        payload = await self.assembler.build(
            n,
            memory=self.memory,
            canon=self.canon,
            arcs=self.arcs,
            beats=self.beats,
            constraints=self.constraints,
            target_installments=target,
        )
        context_text = payload.render()
        arc = self.arcs.ensure_arc(n)
        objectives = arc.briefs.get(n) or "Advance the arc plan above; follow every directive in it."
        target_words = self.settings.quality.target_words

        raw = await self.writer.invoke(
            WRITER_SYSTEM_PROMPT,
            WRITER_USER_PROMPT_TEMPLATE.format(
                context=context_text,
                installment=n,
                objectives=objectives,
                target_words=target_words,
            ),
            max_tokens=cfg.installment_max_tokens,
            cancel=self.signal,
            label=f"installment_{n}",
        )
        draft = parse_draft(raw, n)

        async def rewrite(previous: InstallmentDraft, deficiencies: List[str], attempt: int) -> InstallmentDraft:
            text = await self.writer.invoke(
                WRITER_SYSTEM_PROMPT,
                REWRITE_USER_PROMPT_TEMPLATE.format(
                    context=context_text,
                    installment=n,
                    objectives=objectives,
                    attempt=attempt,
                    previous_title=previous.title,
                    previous_content=previous.content,
                    deficiencies="\n".join(f"- {d}" for d in deficiencies) or "- General polish",
                    target_words=target_words,
                ),
                max_tokens=cfg.installment_max_tokens,
                cancel=self.signal,
                label=f"installment_{n}_rewrite_{attempt}",
            )
            return parse_draft(text, n)

        quality_context = QualityContext(
            installment=n,
            target_words=target_words,
            prior_titles=self.memory.prior_titles(self.settings.context.max_prior_titles),
            prior_openings=self.memory.prior_openings(self.settings.context.max_prior_openings),
            prior_closings=self.memory.prior_closings(self.settings.context.max_prior_closings),
            canon=self.canon,
        )
        outcome = await self.rewriter.run(rewrite, draft, quality_context)
        final = outcome.draft

        # Safety-critical: a failure here fails the installment
        await self.store.save_installment(
            self.project_id,
            n,
            final.title,
            final.content,
            metadata={
                "quality": outcome.report.to_dict(),
                "needs_review": outcome.needs_review,
                "rewrite_attempts": outcome.attempts,
                "context_level": payload.level.value,
                "context_tokens": payload.total_tokens,
            },
        )

        record = self.memory.add_installment(
            n,
            final.title,
            final.content,
            quality_score=outcome.report.overall,
            needs_review=outcome.needs_review,
        )
        if outcome.needs_review and n not in self.state.flagged_for_review:
            self.state.flagged_for_review.append(n)

        results = await asyncio.gather(
            self._check_consistency(n, final.content),
            self._track(n, final.content),
            self._summarize(n, final.title, final.content),
            return_exceptions=True,
        )
        for step, result in zip(("consistency", "tracking", "summary"), results):
            if isinstance(result, BaseException):
                logger.warning(f"[_write_installment] Post-processing '{step}' failed for installment {n}: {result}")

        self.state.installments_written += 1
        self.state.total_words += record.word_count
        self.state.updated_at = datetime.utcnow()

        if self.memory.needs_bible_refresh(n, self.settings.context.bible_refresh_interval):
            await self._refresh_bible(n)
        if n % cfg.snapshot_interval == 0:
            await self._save_snapshot()

        logger.info(
            f"[_write_installment] Installment {n} '{final.title}' accepted: {record.word_count} words, "
            f"score {outcome.report.overall}, review={outcome.needs_review}, level={payload.level.value}"
        )
        await self._notify("on_installment_complete", n, record)
        self._emit_event("installment_complete", {
            "installment": n,
            "title": final.title,
            "word_count": record.word_count,
            "score": outcome.report.overall,
            "needs_review": outcome.needs_review,
        })

    # ========================================================================
    # Post-processing (each step is isolated and non-fatal)
    # ========================================================================

    async def _check_consistency(self, n: int, content: str) -> None:
        try:
            issues = self.canon.check_text_consistency(content, n)
            for issue in issues:
                self._emit_event("continuity_issue", {
                    "installment": n,
                    "severity": issue.severity.value,
                    "description": issue.description,
                })
                await self._optional_write("upsert_issue", self.store.upsert_issue(self.project_id, issue))
        except Exception as e:
            logger.warning(f"[_check_consistency] Installment {n}: {e}")

    async def _track(self, n: int, content: str) -> None:
        try:
            for beat in self.beats.detect_beats(content):
                if self.beats.can_use(beat.beat_type, n):
                    self.beats.record_use(beat.beat_type, n, intensity=beat.intensity, description="detected")

            changed = []
            if self.arcs.mark_twist_revealed(n):
                changed.append(n)
            lookahead = self.settings.arcs.foreshadow_lookahead
            if lookahead > 0:
                for twist in self.arcs.upcoming_twists(n + 1, lookahead - 1):
                    if twist.status == TwistStatus.PLANNED and self.arcs.mark_twist_foreshadowed(twist.target_installment):
                        changed.append(twist.target_installment)

            for target in changed:
                arc = self.arcs.get_arc(target)
                twist = next(t for t in arc.twists if t.target_installment == target)
                await self._optional_write(
                    "upsert_twist",
                    self.store.upsert_twist(self.project_id, arc.arc_number, twist),
                )
        except Exception as e:
            logger.warning(f"[_track] Installment {n}: {e}")

    async def _summarize(self, n: int, title: str, content: str) -> None:
        payload = None
        try:
            payload = await self.summarizer.invoke_model(
                SUMMARIZER_SYSTEM_PROMPT,
                INSTALLMENT_SUMMARY_USER_PROMPT_TEMPLATE.format(installment=n, title=title, content=content),
                InstallmentSummaryPayload,
                max_tokens=self.settings.runner.summary_max_tokens,
                temperature=0.3,
                cancel=self.signal,
                label=f"summary_{n}",
            )
        except Exception as e:
            logger.warning(f"[_summarize] Summary generation failed for installment {n}: {e}")

        if payload is None:
            self.memory.set_summary(n, simple_summarize(content))
            return

        self.memory.set_summary(
            n,
            payload.summary,
            closing_hook=payload.closing_hook,
            protagonist_state=payload.protagonist_state,
            key_events=payload.key_events,
        )

        issues_before = len(self.canon.issues)
        for extracted in payload.facts:
            predicate = extracted.predicate
            if is_death_fact(extracted.predicate, extracted.value):
                predicate = "is_dead"
                result = self.canon.mark_dead(extracted.subject, installment=n)
            else:
                result = self.canon.register_fact(CanonFact(
                    subject=extracted.subject,
                    predicate=extracted.predicate,
                    value=extracted.value,
                    authority=CanonLevel.INSTALLMENT_FACT,
                    category=FactCategory.parse(extracted.category),
                    source_installment=n,
                    confidence=extracted.confidence,
                    source="summary",
                ))
            fact = self.canon.get_fact(extracted.subject, predicate) if result.success else None
            if fact is not None:
                await self._optional_write("upsert_fact", self.store.upsert_fact(self.project_id, fact))
        for issue in self.canon.issues[issues_before:]:
            await self._optional_write("upsert_issue", self.store.upsert_issue(self.project_id, issue))

    # ========================================================================
    # Arc boundaries and bible refresh
    # ========================================================================

    async def _begin_arc(self, arc: Arc, n: int) -> None:
        self.arcs.start_arc(arc.arc_number)
        if n != arc.start_installment or arc.plan:
            return
        outline = self.memory.outline
        try:
            payload = await self.planner.invoke_model(
                PLANNER_SYSTEM_PROMPT,
                ARC_PLAN_USER_PROMPT_TEMPLATE.format(
                    title=outline.get("title", "Untitled"),
                    premise=outline.get("premise", ""),
                    synopsis=self.memory.synopsis.render() or "The story has not started yet.",
                    arc_number=arc.arc_number,
                    start_installment=arc.start_installment,
                    end_installment=arc.end_installment,
                    theme=arc.theme,
                    climax_installment=arc.climax_installment,
                    tension_curve=", ".join(str(t) for t in arc.tension_curve),
                    twists="; ".join(f"{t.twist_type} at {t.target_installment}" for t in arc.twists) or "none",
                ),
                ArcPlanPayload,
                max_tokens=self.settings.runner.planning_max_tokens,
                cancel=self.signal,
                label=f"arc_plan_{arc.arc_number}",
            )
        except RunCancelledError:
            raise
        except Exception as e:
            logger.warning(f"[_begin_arc] Arc {arc.arc_number} plan failed, writing from objectives only: {e}")
            payload = None

        if payload is not None:
            arc.plan = payload.plan
            arc.briefs = {
                b.installment: b.brief for b in payload.briefs
                if arc.contains(b.installment)
            }
            await self._optional_write("upsert_arc", self.store.upsert_arc(self.project_id, arc))
        self._emit_event("arc_started", {"arc": arc.arc_number, "theme": arc.theme, "planned": bool(arc.plan)})

    async def _finish_arc(self, arc: Arc, arc_end: int) -> None:
        """Replace the rolling synopsis and close the arc."""
        max_words = self.settings.context.synopsis_max_words
        summaries = self.memory.summaries_between(arc.start_installment, arc_end)
        synopsis = None
        try:
            payload = await self.summarizer.invoke_model(
                SUMMARIZER_SYSTEM_PROMPT,
                SYNOPSIS_USER_PROMPT_TEMPLATE.format(
                    old_synopsis=self.memory.synopsis.text or "None yet.",
                    start_installment=arc.start_installment,
                    end_installment=arc_end,
                    summaries="\n".join(f"{n}: {s}" for n, s in summaries),
                    max_words=max_words,
                ),
                SynopsisPayload,
                max_tokens=self.settings.runner.summary_max_tokens,
                temperature=0.3,
                cancel=self.signal,
                label=f"synopsis_arc_{arc.arc_number}",
            )
            if payload is not None:
                words = payload.synopsis.split()
                synopsis = RollingSynopsis(
                    text=" ".join(words[:max_words]),
                    protagonist_state=payload.protagonist_state,
                    active_allies=payload.active_allies,
                    active_enemies=payload.active_enemies,
                    open_threads=payload.open_threads,
                    last_updated_installment=arc_end,
                )
        except Exception as e:
            logger.warning(f"[_finish_arc] Synopsis generation failed for arc {arc.arc_number}: {e}")

        if synopsis is None:
            synopsis = self.memory.fallback_synopsis(arc.start_installment, arc_end, max_words)
        self.memory.replace_synopsis(synopsis)
        await self._optional_write("save_synopsis", self.store.save_synopsis(self.project_id, synopsis))

        self.arcs.complete_arc(arc.arc_number)
        await self._optional_write("upsert_arc", self.store.upsert_arc(self.project_id, arc))
        await self._save_snapshot()

        stats = self.beats.arc_stats(arc.start_installment, arc_end)
        logger.info(
            f"[_finish_arc] Arc {arc.arc_number} completed ({arc.start_installment}-{arc_end}), "
            f"{stats['total_beats']} beats, {len(self.canon.get_open_issues())} open issues"
        )
        await self._notify("on_arc_complete", arc)
        self._emit_event("arc_complete", {"arc": arc.arc_number, "end_installment": arc_end, "beats": stats})

    async def _refresh_bible(self, n: int) -> None:
        """Fold recent developments into the bible; failure keeps the current one."""
        recent = self.memory.summaries_between(max(1, n - 9), n)
        try:
            payload = await self.summarizer.invoke_model(
                SUMMARIZER_SYSTEM_PROMPT,
                BIBLE_REFRESH_USER_PROMPT_TEMPLATE.format(
                    bible=self.memory.bible,
                    synopsis=self.memory.synopsis.render() or "None yet.",
                    recent="\n".join(f"{i}: {s}" for i, s in recent),
                ),
                BiblePayload,
                max_tokens=self.settings.runner.planning_max_tokens,
                temperature=0.3,
                cancel=self.signal,
                label=f"bible_refresh_{n}",
            )
        except Exception as e:
            logger.warning(f"[_refresh_bible] Refresh at installment {n} failed, keeping current bible: {e}")
            return
        if payload is None:
            logger.warning(f"[_refresh_bible] Refresh at installment {n} unparseable, keeping current bible")
            return
        self.memory.set_bible(payload.bible, n)
        await self._optional_write("save_story_plan", self.store.save_story_plan(self.project_id, self._story_plan()))
        self._emit_event("bible_refreshed", {"installment": n})

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _optional_write(self, label: str, write) -> None:
        try:
            await write
        except Exception as e:
            logger.warning(f"[{label}] Optional write failed for {self.project_id}: {e}")

    async def _set_status(self, status: RunnerStatus) -> None:
        if self.state.status == status:
            return
        previous = self.state.status
        self.state.status = status
        self.state.updated_at = datetime.utcnow()
        logger.info(f"[_set_status] {self.project_id}: {previous.value} -> {status.value}")
        await self._notify("on_status_change", status, self.get_state())
        self._emit_event("status_change", {"from": previous.value, "to": status.value})

    async def _notify(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"[_notify] Callback {name} raised: {e}")

    def _emit_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Emit an event to the on_event callback if registered."""
        callback = self.callbacks.on_event
        if not callback:
            return
        try:
            result = callback(event_type, {
                "project_id": self.project_id,
                "timestamp": datetime.utcnow().isoformat(),
                **data,
            })
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending_events.add(task)
                task.add_done_callback(self._pending_events.discard)
        except Exception as e:
            logger.warning(f"[_emit_event] on_event raised for {event_type}: {e}")

    async def _drain_events(self) -> None:
        """Wait for asynchronous on_event deliveries still in flight."""
        if not self._pending_events:
            return
        results = await asyncio.gather(*list(self._pending_events), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"[_drain_events] on_event delivery failed: {result}")
