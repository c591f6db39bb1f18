"""
Diet-Plan Phase Machine
=======================

Timeline-based diet plans built from the user's unresolved health findings.

Phases move forward only:

    correction -> maintenance -> optimization

- creation: top 3 unresolved deficiencies/conditions (shortest timeline
  first); total_days = longest target timeline (30 when there is none);
  milestones at 25/50/75/100% of each target's timeline, merged by day
- ``check_transition``: recommendation once current_day >= total_days
  (read-only)
- ``transition``: continue (next phase, old plan kept as transitioned),
  maintain (+30 days in place), recheck (recheck_at = now + 7 days)
- ``update_progress``: current_day from wall-clock; milestones only ever
  go from incomplete to completed

At most one active plan per user: create/transition run under a per-user lock.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from app.core.errors import DietPlanNotFoundError
from app.core.keyed_lock import KeyedLock
from app.core.types import new_id
from app.memory.health_profile import DeficiencyTarget, HealthProfileStore
from app.memory.stores import KeyedStore

logger = logging.getLogger(__name__)

MAX_TARGETS = 3
DEFAULT_PLAN_DAYS = 30
MAINTAIN_EXTENSION_DAYS = 30
RECHECK_DELAY_DAYS = 7
MILESTONE_FRACTIONS = (0.25, 0.5, 0.75, 1.0)


class DietPhase(Enum):
    CORRECTION = "correction"
    MAINTENANCE = "maintenance"
    OPTIMIZATION = "optimization"

    @property
    def next_phase(self) -> Optional["DietPhase"]:
        order = list(DietPhase)
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None


class PlanStatus(Enum):
    ACTIVE = "active"
    TRANSITIONED = "transitioned"
    EXTENDED = "extended"


class TransitionChoice(Enum):
    CONTINUE = "continue"
    MAINTAIN = "maintain"
    RECHECK = "recheck"


# Plans that still count as the user's current plan
CURRENT_STATUSES = (PlanStatus.ACTIVE, PlanStatus.EXTENDED)


# =============================================================================
# DOCUMENTS
# =============================================================================

@dataclass
class Milestone:
    day: int
    description: str
    completed: bool = False
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day,
            "description": self.description,
            "completed": self.completed,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Milestone":
        return cls(
            day=data["day"],
            description=data["description"],
            completed=data.get("completed", False),
            completed_at=data.get("completed_at"),
        )


@dataclass
class TargetCondition:
    condition: str
    target_improvement: str
    estimated_resolution_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition": self.condition,
            "target_improvement": self.target_improvement,
            "estimated_resolution_days": self.estimated_resolution_days,
        }


@dataclass
class DietPlan:
    user_id: str
    phase: DietPhase
    start_date: datetime
    total_days: int
    target_conditions: List[TargetCondition] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    dietary_focus: List[str] = field(default_factory=list)
    restrictions: List[str] = field(default_factory=list)
    status: PlanStatus = PlanStatus.ACTIVE
    current_day: int = 0
    transition_plan: Optional[Dict[str, Any]] = None
    recheck_at: Optional[datetime] = None
    previous_plan_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def estimated_end_date(self) -> datetime:
        return self.start_date + timedelta(days=self.total_days)

    @property
    def next_milestone(self) -> Optional[Milestone]:
        return next((m for m in self.milestones if not m.completed), None)

    @property
    def is_complete(self) -> bool:
        return self.current_day >= self.total_days

    def to_dict(self) -> Dict[str, Any]:
        next_milestone = self.next_milestone
        return {
            "id": self.id,
            "user_id": self.user_id,
            "phase": self.phase.value,
            "status": self.status.value,
            "timeline": {
                "start_date": self.start_date,
                "estimated_end_date": self.estimated_end_date,
                "current_day": self.current_day,
                "total_days": self.total_days,
            },
            "target_conditions": [t.to_dict() for t in self.target_conditions],
            "milestones": [m.to_dict() for m in self.milestones],
            "next_milestone": next_milestone.to_dict() if next_milestone else None,
            "dietary_focus": list(self.dietary_focus),
            "restrictions": list(self.restrictions),
            "transition_plan": self.transition_plan,
            "recheck_at": self.recheck_at,
            "previous_plan_id": self.previous_plan_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DietPlan":
        timeline = data["timeline"]
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            phase=DietPhase(data["phase"]),
            status=PlanStatus(data["status"]),
            start_date=timeline["start_date"],
            total_days=timeline["total_days"],
            current_day=timeline.get("current_day", 0),
            target_conditions=[TargetCondition(**t) for t in data.get("target_conditions", [])],
            milestones=[Milestone.from_dict(m) for m in data.get("milestones", [])],
            dietary_focus=list(data.get("dietary_focus") or []),
            restrictions=list(data.get("restrictions") or []),
            transition_plan=data.get("transition_plan"),
            recheck_at=data.get("recheck_at"),
            previous_plan_id=data.get("previous_plan_id"),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
        )


@dataclass
class TransitionRecommendation:
    current_phase: DietPhase
    next_phase: Optional[DietPhase]
    message: str
    options: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_phase": self.current_phase.value,
            "next_phase": self.next_phase.value if self.next_phase else None,
            "message": self.message,
            "options": list(self.options),
        }


# =============================================================================
# PLAN CONSTRUCTION
# =============================================================================

def build_milestones(targets: List[TargetCondition], total_days: int) -> List[Milestone]:
    """25/50/75/100% checkpoints per target, merged by day and sorted."""
    labels = {
        0.25: "early progress check",
        0.5: "mid-point review",
        0.75: "prepare for recheck",
        1.0: "target timeline complete, recheck levels",
    }
    by_day: Dict[int, List[str]] = {}

    if not targets:
        for fraction in MILESTONE_FRACTIONS:
            day = max(1, math.ceil(total_days * fraction))
            by_day.setdefault(day, []).append(f"Balanced nutrition: {labels[fraction]}")
    for target in targets:
        for fraction in MILESTONE_FRACTIONS:
            day = max(1, math.ceil(target.estimated_resolution_days * fraction))
            by_day.setdefault(day, []).append(f"{target.condition}: {labels[fraction]}")

    return [Milestone(day=day, description="; ".join(descs)) for day, descs in sorted(by_day.items())]


def _target_from_deficiency(deficiency: DeficiencyTarget) -> TargetCondition:
    if deficiency.status in ("deficient", "low"):
        improvement = f"Raise {deficiency.name} into the normal range"
    elif deficiency.status == "high":
        improvement = f"Lower {deficiency.name} into the normal range"
    else:
        improvement = f"Improve {deficiency.name} markers ({deficiency.status})"
    return TargetCondition(
        condition=deficiency.name,
        target_improvement=improvement,
        estimated_resolution_days=deficiency.improvement_days,
    )


def _unique(items: List[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


# =============================================================================
# MACHINE
# =============================================================================

class DietPlanManager:
    """
    Usage:
        plans = DietPlanManager(stores.diet_plans, profiles)
        plan = await plans.get_or_create_plan(user_id)
        recommendation = await plans.check_transition(user_id)
        plan = await plans.transition(user_id, TransitionChoice.CONTINUE)
    """

    def __init__(
        self,
        store: KeyedStore,
        profiles: HealthProfileStore,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.profiles = profiles
        self.locks = locks or KeyedLock()
        self.clock = clock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_active_plan(self, user_id: str) -> Optional[DietPlan]:
        docs = await self.store.query_by_user(user_id)
        current = [
            DietPlan.from_dict(d) for d in docs
            if PlanStatus(d["status"]) in CURRENT_STATUSES
        ]
        if not current:
            return None
        current.sort(key=lambda p: p.created_at, reverse=True)
        return current[0]

    async def get_plan_history(self, user_id: str) -> List[DietPlan]:
        docs = await self.store.query_by_user(user_id)
        return sorted((DietPlan.from_dict(d) for d in docs), key=lambda p: p.created_at)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def get_or_create_plan(self, user_id: str) -> DietPlan:
        async with self.locks.hold(f"diet_plan:{user_id}"):
            plan = await self.get_active_plan(user_id)
            if plan is not None:
                return plan
            return await self._create_plan(user_id, DietPhase.CORRECTION)

    async def _create_plan(
        self,
        user_id: str,
        phase: DietPhase,
        previous_plan_id: Optional[str] = None
    ) -> DietPlan:
        """Caller holds the user's lock."""
        deficiencies = (await self.profiles.get_nutrition_deficiencies(user_id))[:MAX_TARGETS]
        targets = [_target_from_deficiency(d) for d in deficiencies]
        total_days = max((t.estimated_resolution_days for t in targets), default=DEFAULT_PLAN_DAYS)
        now = self.clock()

        plan = DietPlan(
            user_id=user_id,
            phase=phase,
            start_date=now,
            total_days=total_days,
            target_conditions=targets,
            milestones=build_milestones(targets, total_days),
            dietary_focus=_unique([f for d in deficiencies for f in d.dietary_focus]),
            restrictions=_unique([r for d in deficiencies for r in d.restrictions]),
            previous_plan_id=previous_plan_id,
            created_at=now,
            updated_at=now,
        )
        await self.store.put(plan.id, plan.to_dict())
        logger.info(
            f"🥗 Created {phase.value} diet plan for {user_id}: {total_days} days, "
            f"targets={[t.condition for t in targets]}"
        )
        return plan

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def check_transition(self, user_id: str) -> Optional[TransitionRecommendation]:
        """Recommendation when the timeline is complete; never mutates."""
        plan = await self.get_active_plan(user_id)
        if plan is None:
            return None

        current_day = self._current_day(plan)
        if current_day < plan.total_days:
            return None

        next_phase = plan.phase.next_phase
        if next_phase is None:
            message = (
                f"Your {plan.total_days}-day optimization plan is complete. "
                "Keep your current habits or schedule a health recheck."
            )
            options = [TransitionChoice.MAINTAIN.value, TransitionChoice.RECHECK.value]
        else:
            message = (
                f"Your {plan.total_days}-day {plan.phase.value} plan is complete. "
                f"Time to move to the {next_phase.value} phase."
            )
            options = [c.value for c in TransitionChoice]
        return TransitionRecommendation(
            current_phase=plan.phase,
            next_phase=next_phase,
            message=message,
            options=options,
        )

    async def transition(self, user_id: str, choice: TransitionChoice) -> DietPlan:
        """
        Apply the user's choice to the current plan.

        Raises:
            DietPlanNotFoundError: no current plan
        """
        async with self.locks.hold(f"diet_plan:{user_id}"):
            plan = await self.get_active_plan(user_id)
            if plan is None:
                raise DietPlanNotFoundError(user_id)

            now = self.clock()
            next_phase = plan.phase.next_phase

            if choice == TransitionChoice.CONTINUE and next_phase is not None:
                plan.status = PlanStatus.TRANSITIONED
                plan.transition_plan = {
                    "from_phase": plan.phase.value,
                    "to_phase": next_phase.value,
                    "transition_date": now,
                    "instructions": [
                        "Keep the habits that improved your results.",
                        "Schedule a comprehensive health test to verify progress.",
                        f"Follow the {next_phase.value} plan from today.",
                    ],
                    "notification_sent": True,
                }
                plan.updated_at = now
                await self.store.put(plan.id, plan.to_dict())
                new_plan = await self._create_plan(user_id, next_phase, previous_plan_id=plan.id)
                logger.info(f"Diet plan {plan.id} -> {next_phase.value} ({new_plan.id})")
                return new_plan

            if choice == TransitionChoice.RECHECK:
                plan.recheck_at = now + timedelta(days=RECHECK_DELAY_DAYS)
            else:
                # maintain (and continue from the last phase)
                plan.total_days += MAINTAIN_EXTENSION_DAYS
                plan.status = PlanStatus.EXTENDED
            plan.updated_at = now
            await self.store.put(plan.id, plan.to_dict())
            logger.info(f"Diet plan {plan.id} for {user_id}: {choice.value}")
            return plan

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def _current_day(self, plan: DietPlan) -> int:
        return max(0, (self.clock() - plan.start_date).days)

    def _advance(self, plan: DietPlan) -> bool:
        """Recompute progress in place. Returns True if anything changed."""
        now = self.clock()
        current_day = self._current_day(plan)
        changed = current_day != plan.current_day
        plan.current_day = max(plan.current_day, current_day)
        for milestone in plan.milestones:
            if not milestone.completed and milestone.day <= plan.current_day:
                milestone.completed = True
                milestone.completed_at = now
                changed = True
        if changed:
            plan.updated_at = now
        return changed

    async def update_progress(self, user_id: str) -> Optional[DietPlan]:
        async with self.locks.hold(f"diet_plan:{user_id}"):
            plan = await self.get_active_plan(user_id)
            if plan is None:
                return None
            if self._advance(plan):
                await self.store.put(plan.id, plan.to_dict())
            return plan

    async def update_all_progress(self) -> int:
        """Scheduled refresh across every current plan."""
        updated = 0
        for status in CURRENT_STATUSES:
            for doc in await self.store.query({"status": status.value}):
                plan = await self.update_progress(doc["user_id"])
                if plan is not None:
                    updated += 1
        logger.info(f"Diet plan progress refreshed for {updated} plans")
        return updated

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def render_plan(self, plan: DietPlan) -> str:
        lines = [
            f"Your {plan.phase.value} diet plan is on day {plan.current_day} of {plan.total_days}."
        ]
        if plan.target_conditions:
            lines.append("Focus areas:")
            for target in plan.target_conditions:
                lines.append(
                    f"- {target.condition}: {target.target_improvement} "
                    f"(about {target.estimated_resolution_days} days)"
                )
        else:
            lines.append("No open deficiencies on record, so the plan focuses on balanced nutrition.")
        if plan.dietary_focus:
            foods = ", ".join(f.replace("_", " ") for f in plan.dietary_focus)
            lines.append(f"Emphasize: {foods}.")
        if plan.restrictions:
            limits = ", ".join(r.replace("_", " ") for r in plan.restrictions)
            lines.append(f"Watch out: {limits}.")
        next_milestone = plan.next_milestone
        if next_milestone:
            lines.append(f"Next milestone (day {next_milestone.day}): {next_milestone.description}.")
        return "\n".join(lines)
