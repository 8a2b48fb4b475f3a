"""
Durable Store for SerialForge

Keyed, idempotent persistence for everything a Runner needs to survive a
restart. Every write is an upsert on a natural key, so retrying a write is
always safe:
- facts: (story, subject, predicate)
- constraints: (story, subject, predicate)
- continuity issues: (story, issue id)
- arcs: (story, arc number)
- twists: (story, arc number, target installment)
- rolling synopsis, story plan, runner snapshot: (story)
- installments: (story, installment number)
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..core.arcs import Arc, Twist
from ..core.canon import CanonFact, ContinuityIssue
from ..core.constraints import WorldConstraint
from ..core.memory import RollingSynopsis


class DurableStore(ABC):
    """Interface consumed by the Runner."""

    # Facts and constraints

    @abstractmethod
    async def upsert_fact(self, project_id: str, fact: CanonFact) -> None:
        pass

    @abstractmethod
    async def get_facts(self, project_id: str) -> List[CanonFact]:
        pass

    @abstractmethod
    async def upsert_constraint(self, project_id: str, constraint: WorldConstraint) -> None:
        pass

    @abstractmethod
    async def get_constraints(self, project_id: str) -> List[WorldConstraint]:
        pass

    @abstractmethod
    async def upsert_issue(self, project_id: str, issue: ContinuityIssue) -> None:
        pass

    @abstractmethod
    async def get_issues(self, project_id: str) -> List[ContinuityIssue]:
        pass

    # Macro structure

    @abstractmethod
    async def upsert_arc(self, project_id: str, arc: Arc) -> None:
        pass

    @abstractmethod
    async def get_arcs(self, project_id: str) -> List[Arc]:
        pass

    @abstractmethod
    async def upsert_twist(self, project_id: str, arc_number: int, twist: Twist) -> None:
        pass

    @abstractmethod
    async def get_twists(self, project_id: str, arc_number: int) -> List[Twist]:
        pass

    # Story-level records

    @abstractmethod
    async def save_synopsis(self, project_id: str, synopsis: RollingSynopsis) -> None:
        pass

    @abstractmethod
    async def get_synopsis(self, project_id: str) -> Optional[RollingSynopsis]:
        pass

    @abstractmethod
    async def save_story_plan(self, project_id: str, plan: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_story_plan(self, project_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def save_snapshot(self, project_id: str, snapshot: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def load_snapshot(self, project_id: str) -> Optional[Dict[str, Any]]:
        pass

    # Installment text

    @abstractmethod
    async def save_installment(
        self,
        project_id: str,
        installment: int,
        title: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    async def get_installment(self, project_id: str, installment: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_latest_installment_number(self, project_id: str) -> int:
        pass


class InMemoryStore(DurableStore):
    """Process-local store. Records are deep-copied so callers can't alias them."""

    def __init__(self):
        self.facts: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.constraints: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.issues: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.arcs: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.twists: Dict[Tuple[str, int, int], Dict[str, Any]] = {}
        self.synopses: Dict[str, Dict[str, Any]] = {}
        self.plans: Dict[str, Dict[str, Any]] = {}
        self.snapshots: Dict[str, Dict[str, Any]] = {}
        self.installments: Dict[Tuple[str, int], Dict[str, Any]] = {}

    async def upsert_fact(self, project_id: str, fact: CanonFact) -> None:
        subject, predicate = fact.key
        self.facts[(project_id, subject, predicate)] = fact.to_dict()

    async def get_facts(self, project_id: str) -> List[CanonFact]:
        return [CanonFact.from_dict(d) for k, d in self.facts.items() if k[0] == project_id]

    async def upsert_constraint(self, project_id: str, constraint: WorldConstraint) -> None:
        subject, predicate = constraint.key
        self.constraints[(project_id, subject, predicate)] = constraint.to_dict()

    async def get_constraints(self, project_id: str) -> List[WorldConstraint]:
        return [WorldConstraint.from_dict(d) for k, d in self.constraints.items() if k[0] == project_id]

    async def upsert_issue(self, project_id: str, issue: ContinuityIssue) -> None:
        self.issues[(project_id, issue.issue_id)] = issue.to_dict()

    async def get_issues(self, project_id: str) -> List[ContinuityIssue]:
        return [ContinuityIssue.from_dict(d) for k, d in self.issues.items() if k[0] == project_id]

    async def upsert_arc(self, project_id: str, arc: Arc) -> None:
        self.arcs[(project_id, arc.arc_number)] = arc.to_dict()
        for twist in arc.twists:
            await self.upsert_twist(project_id, arc.arc_number, twist)

    async def get_arcs(self, project_id: str) -> List[Arc]:
        arcs = [Arc.from_dict(copy.deepcopy(d)) for k, d in self.arcs.items() if k[0] == project_id]
        return sorted(arcs, key=lambda a: a.arc_number)

    async def upsert_twist(self, project_id: str, arc_number: int, twist: Twist) -> None:
        self.twists[(project_id, arc_number, twist.target_installment)] = twist.to_dict()

    async def get_twists(self, project_id: str, arc_number: int) -> List[Twist]:
        twists = [
            Twist.from_dict(d) for k, d in self.twists.items()
            if k[0] == project_id and k[1] == arc_number
        ]
        return sorted(twists, key=lambda t: t.target_installment)

    async def save_synopsis(self, project_id: str, synopsis: RollingSynopsis) -> None:
        self.synopses[project_id] = synopsis.to_dict()

    async def get_synopsis(self, project_id: str) -> Optional[RollingSynopsis]:
        data = self.synopses.get(project_id)
        return RollingSynopsis.from_dict(data) if data else None

    async def save_story_plan(self, project_id: str, plan: Dict[str, Any]) -> None:
        self.plans[project_id] = copy.deepcopy(plan)

    async def get_story_plan(self, project_id: str) -> Optional[Dict[str, Any]]:
        plan = self.plans.get(project_id)
        return copy.deepcopy(plan) if plan is not None else None

    async def save_snapshot(self, project_id: str, snapshot: Dict[str, Any]) -> None:
        self.snapshots[project_id] = copy.deepcopy(snapshot)

    async def load_snapshot(self, project_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self.snapshots.get(project_id)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    async def save_installment(
        self,
        project_id: str,
        installment: int,
        title: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.installments[(project_id, installment)] = {
            "installment": installment,
            "title": title,
            "content": content,
            "metadata": copy.deepcopy(metadata or {}),
        }

    async def get_installment(self, project_id: str, installment: int) -> Optional[Dict[str, Any]]:
        record = self.installments.get((project_id, installment))
        return copy.deepcopy(record) if record is not None else None

    async def get_latest_installment_number(self, project_id: str) -> int:
        numbers = [k[1] for k in self.installments if k[0] == project_id]
        return max(numbers) if numbers else 0
