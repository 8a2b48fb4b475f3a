"""
Supabase Store for SerialForge

DurableStore backed by Supabase tables. Every write is an upsert with an
explicit ``on_conflict`` natural key; every failure surfaces as a
PersistenceError so the Runner can decide whether the write was optional.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from ..core.arcs import Arc, Twist
from ..core.canon import CanonFact, ContinuityIssue
from ..core.constraints import WorldConstraint
from ..core.errors import PersistenceError
from ..core.memory import RollingSynopsis
from .store import DurableStore

logger = logging.getLogger("serialforge.store")

TABLE_FACTS = "canon_facts"
TABLE_CONSTRAINTS = "world_constraints"
TABLE_ISSUES = "continuity_issues"
TABLE_ARCS = "story_arcs"
TABLE_TWISTS = "arc_twists"
TABLE_SYNOPSES = "rolling_synopses"
TABLE_PLANS = "story_plans"
TABLE_SNAPSHOTS = "runner_snapshots"
TABLE_INSTALLMENTS = "installments"


class SupabaseStore(DurableStore):
    """Persists story state to Supabase."""

    def __init__(self, supabase_url: Optional[str] = None, supabase_key: Optional[str] = None):
        """
        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service role key (for server-side operations)
        """
        self.supabase_url = supabase_url or os.getenv("SUPABASE_URL")
        self.supabase_key = supabase_key or os.getenv("SUPABASE_SERVICE_KEY")
        self.client = None
        self._connected = False

    async def connect(self) -> bool:
        """
        Connect to Supabase.

        Returns:
            True if connection successful, False otherwise
        """
        if not self.supabase_url or not self.supabase_key:
            return False

        try:
            from supabase import create_client, Client
            self.client: Client = create_client(self.supabase_url, self.supabase_key)
            self._connected = True
            return True
        except Exception as e:
            logger.error(f"[connect] Failed to connect to Supabase: {e}")
            self._connected = False
            return False

    @property
    def is_connected(self) -> bool:
        return self._connected and self.client is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _upsert(self, table: str, data: Dict[str, Any], on_conflict: str) -> None:
        if not self.is_connected:
            raise PersistenceError(f"Supabase not connected, cannot write to {table}")
        try:
            self.client.table(table).upsert(data, on_conflict=on_conflict).execute()
        except Exception as e:
            raise PersistenceError(f"Upsert into {table} failed: {e}") from e

    def _select(self, table: str, project_id: str, **filters: Any) -> List[Dict[str, Any]]:
        if not self.is_connected:
            raise PersistenceError(f"Supabase not connected, cannot read {table}")
        try:
            query = self.client.table(table).select("*").eq("project_id", project_id)
            for column, value in filters.items():
                query = query.eq(column, value)
            result = query.execute()
            return result.data or []
        except Exception as e:
            raise PersistenceError(f"Select from {table} failed: {e}") from e

    def _select_one(self, table: str, project_id: str, **filters: Any) -> Optional[Dict[str, Any]]:
        rows = self._select(table, project_id, **filters)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Facts and constraints
    # ------------------------------------------------------------------

    async def upsert_fact(self, project_id: str, fact: CanonFact) -> None:
        subject, predicate = fact.key
        self._upsert(
            TABLE_FACTS,
            {"project_id": project_id, "subject_key": subject, "predicate_key": predicate, "fact": fact.to_dict()},
            on_conflict="project_id,subject_key,predicate_key",
        )

    async def get_facts(self, project_id: str) -> List[CanonFact]:
        return [CanonFact.from_dict(row["fact"]) for row in self._select(TABLE_FACTS, project_id)]

    async def upsert_constraint(self, project_id: str, constraint: WorldConstraint) -> None:
        subject, predicate = constraint.key
        self._upsert(
            TABLE_CONSTRAINTS,
            {
                "project_id": project_id,
                "subject_key": subject,
                "predicate_key": predicate,
                "constraint": constraint.to_dict(),
            },
            on_conflict="project_id,subject_key,predicate_key",
        )

    async def get_constraints(self, project_id: str) -> List[WorldConstraint]:
        return [WorldConstraint.from_dict(row["constraint"]) for row in self._select(TABLE_CONSTRAINTS, project_id)]

    async def upsert_issue(self, project_id: str, issue: ContinuityIssue) -> None:
        self._upsert(
            TABLE_ISSUES,
            {
                "project_id": project_id,
                "issue_id": issue.issue_id,
                "installment": issue.installment,
                "severity": issue.severity.value,
                "status": issue.status.value,
                "issue": issue.to_dict(),
            },
            on_conflict="project_id,issue_id",
        )

    async def get_issues(self, project_id: str) -> List[ContinuityIssue]:
        return [ContinuityIssue.from_dict(row["issue"]) for row in self._select(TABLE_ISSUES, project_id)]

    # ------------------------------------------------------------------
    # Arcs and twists
    # ------------------------------------------------------------------

    async def upsert_arc(self, project_id: str, arc: Arc) -> None:
        self._upsert(
            TABLE_ARCS,
            {
                "project_id": project_id,
                "arc_number": arc.arc_number,
                "status": arc.status.value,
                "arc": arc.to_dict(),
            },
            on_conflict="project_id,arc_number",
        )
        for twist in arc.twists:
            await self.upsert_twist(project_id, arc.arc_number, twist)

    async def get_arcs(self, project_id: str) -> List[Arc]:
        arcs = [Arc.from_dict(row["arc"]) for row in self._select(TABLE_ARCS, project_id)]
        return sorted(arcs, key=lambda a: a.arc_number)

    async def upsert_twist(self, project_id: str, arc_number: int, twist: Twist) -> None:
        self._upsert(
            TABLE_TWISTS,
            {
                "project_id": project_id,
                "arc_number": arc_number,
                "target_installment": twist.target_installment,
                "status": twist.status.value,
                "twist": twist.to_dict(),
            },
            on_conflict="project_id,arc_number,target_installment",
        )

    async def get_twists(self, project_id: str, arc_number: int) -> List[Twist]:
        rows = self._select(TABLE_TWISTS, project_id, arc_number=arc_number)
        return sorted((Twist.from_dict(row["twist"]) for row in rows), key=lambda t: t.target_installment)

    # ------------------------------------------------------------------
    # Story-level records
    # ------------------------------------------------------------------

    async def save_synopsis(self, project_id: str, synopsis: RollingSynopsis) -> None:
        self._upsert(TABLE_SYNOPSES, {"project_id": project_id, "synopsis": synopsis.to_dict()}, on_conflict="project_id")

    async def get_synopsis(self, project_id: str) -> Optional[RollingSynopsis]:
        row = self._select_one(TABLE_SYNOPSES, project_id)
        return RollingSynopsis.from_dict(row["synopsis"]) if row else None

    async def save_story_plan(self, project_id: str, plan: Dict[str, Any]) -> None:
        self._upsert(TABLE_PLANS, {"project_id": project_id, "plan": plan}, on_conflict="project_id")

    async def get_story_plan(self, project_id: str) -> Optional[Dict[str, Any]]:
        row = self._select_one(TABLE_PLANS, project_id)
        return row["plan"] if row else None

    async def save_snapshot(self, project_id: str, snapshot: Dict[str, Any]) -> None:
        self._upsert(TABLE_SNAPSHOTS, {"project_id": project_id, "snapshot": snapshot}, on_conflict="project_id")

    async def load_snapshot(self, project_id: str) -> Optional[Dict[str, Any]]:
        row = self._select_one(TABLE_SNAPSHOTS, project_id)
        return row["snapshot"] if row else None

    # ------------------------------------------------------------------
    # Installments
    # ------------------------------------------------------------------

    async def save_installment(
        self,
        project_id: str,
        installment: int,
        title: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._upsert(
            TABLE_INSTALLMENTS,
            {
                "project_id": project_id,
                "installment_number": installment,
                "title": title,
                "content": content,
                "word_count": len(content.split()) if content else 0,
                "metadata": metadata or {},
            },
            on_conflict="project_id,installment_number",
        )

    async def get_installment(self, project_id: str, installment: int) -> Optional[Dict[str, Any]]:
        row = self._select_one(TABLE_INSTALLMENTS, project_id, installment_number=installment)
        if not row:
            return None
        return {
            "installment": row["installment_number"],
            "title": row.get("title", ""),
            "content": row.get("content", ""),
            "metadata": row.get("metadata") or {},
        }

    async def get_latest_installment_number(self, project_id: str) -> int:
        if not self.is_connected:
            raise PersistenceError("Supabase not connected, cannot read installments")
        try:
            result = (
                self.client.table(TABLE_INSTALLMENTS)
                .select("installment_number")
                .eq("project_id", project_id)
                .order("installment_number", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Latest installment lookup failed: {e}") from e
        rows = result.data or []
        return rows[0]["installment_number"] if rows else 0
