"""
Tests for DietPlanManager
=========================

1. Plan construction from unresolved findings
2. Transition recommendations and choices
3. Progress tracking (forward-only milestones)
"""
import asyncio
from datetime import timedelta

import pytest

from app.core.diet_plan import (
    DietPhase,
    DietPlanManager,
    PlanStatus,
    TargetCondition,
    TransitionChoice,
    build_milestones,
)
from app.core.errors import DietPlanNotFoundError
from app.memory.health_profile import HealthProfileStore
from app.memory.stores import InMemoryKeyedStore


@pytest.fixture
def profiles(clock):
    return HealthProfileStore(InMemoryKeyedStore("health_profiles"), clock=clock)


@pytest.fixture
def plans(profiles, clock):
    return DietPlanManager(InMemoryKeyedStore("diet_plans"), profiles, clock=clock)


async def _b12_low(profiles):
    await profiles.update_from_health_report("user_1", {
        "micronutrients": [{"name": "Vitamin B12", "value": 150}],
    })


# =============================================================================
# CONSTRUCTION
# =============================================================================

class TestCreation:

    @pytest.mark.asyncio
    async def test_correction_plan_from_deficiency(self, plans, profiles):
        await _b12_low(profiles)

        plan = await plans.get_or_create_plan("user_1")

        assert plan.phase == DietPhase.CORRECTION
        assert plan.total_days == 30
        assert [t.condition for t in plan.target_conditions] == ["Vitamin B12"]
        assert [m.day for m in plan.milestones] == [8, 15, 23, 30]

    @pytest.mark.asyncio
    async def test_longest_target_sets_duration(self, plans, profiles):
        await profiles.update_from_health_report("user_1", {
            "micronutrients": [
                {"name": "Iron", "value": 8},
                {"name": "Vitamin B12", "value": 150},
            ],
        })

        plan = await plans.get_or_create_plan("user_1")

        assert plan.total_days == 60
        assert [m.day for m in plan.milestones] == [8, 15, 23, 30, 45, 60]
        assert "Vitamin B12" in plan.milestones[1].description
        assert "Iron" in plan.milestones[1].description

    @pytest.mark.asyncio
    async def test_no_findings_defaults_to_thirty_days(self, plans):
        plan = await plans.get_or_create_plan("user_1")

        assert plan.total_days == 30
        assert plan.target_conditions == []
        assert "balanced nutrition" in plans.render_plan(plan)

    @pytest.mark.asyncio
    async def test_one_active_plan_per_user(self, plans, profiles):
        await _b12_low(profiles)

        created = await asyncio.gather(*(plans.get_or_create_plan("user_1") for _ in range(5)))

        assert len({p.id for p in created}) == 1
        assert len(await plans.get_plan_history("user_1")) == 1

    def test_milestones_merged_by_day(self):
        targets = [
            TargetCondition("A", "raise A", 20),
            TargetCondition("B", "raise B", 40),
        ]

        days = [m.day for m in build_milestones(targets, 40)]

        assert days == [5, 10, 15, 20, 30, 40]


# =============================================================================
# TRANSITIONS
# =============================================================================

class TestTransitions:

    @pytest.mark.asyncio
    async def test_no_recommendation_mid_plan(self, plans, profiles, clock):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        clock.advance(days=10)

        assert await plans.check_transition("user_1") is None

    @pytest.mark.asyncio
    async def test_completed_correction_recommends_maintenance(self, plans, profiles, clock):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        clock.advance(days=31)

        recommendation = await plans.check_transition("user_1")

        assert recommendation.current_phase == DietPhase.CORRECTION
        assert recommendation.next_phase == DietPhase.MAINTENANCE
        assert recommendation.options == ["continue", "maintain", "recheck"]

    @pytest.mark.asyncio
    async def test_check_transition_is_read_only(self, plans, profiles, clock):
        await _b12_low(profiles)
        plan = await plans.get_or_create_plan("user_1")
        clock.advance(days=31)

        await plans.check_transition("user_1")

        stored = await plans.get_active_plan("user_1")
        assert stored.current_day == 0
        assert stored.updated_at == plan.updated_at

    @pytest.mark.asyncio
    async def test_continue_moves_to_next_phase(self, plans, profiles, clock):
        await _b12_low(profiles)
        old = await plans.get_or_create_plan("user_1")
        clock.advance(days=31)

        new = await plans.transition("user_1", TransitionChoice.CONTINUE)

        assert new.phase == DietPhase.MAINTENANCE
        assert new.previous_plan_id == old.id
        assert (await plans.get_active_plan("user_1")).id == new.id

        history = await plans.get_plan_history("user_1")
        assert [p.status for p in history] == [PlanStatus.TRANSITIONED, PlanStatus.ACTIVE]
        assert history[0].transition_plan["to_phase"] == "maintenance"

    @pytest.mark.asyncio
    async def test_maintain_extends_in_place(self, plans, profiles, clock):
        await _b12_low(profiles)
        old = await plans.get_or_create_plan("user_1")
        clock.advance(days=31)

        plan = await plans.transition("user_1", TransitionChoice.MAINTAIN)

        assert plan.id == old.id
        assert plan.total_days == 60
        assert plan.status == PlanStatus.EXTENDED
        assert await plans.check_transition("user_1") is None

    @pytest.mark.asyncio
    async def test_recheck_schedules_recheck(self, plans, profiles, clock):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        clock.advance(days=31)

        plan = await plans.transition("user_1", TransitionChoice.RECHECK)

        assert plan.recheck_at == clock.now + timedelta(days=7)
        assert plan.phase == DietPhase.CORRECTION

    @pytest.mark.asyncio
    async def test_phases_only_move_forward(self, plans, profiles):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        await plans.transition("user_1", TransitionChoice.CONTINUE)
        optimization = await plans.transition("user_1", TransitionChoice.CONTINUE)
        assert optimization.phase == DietPhase.OPTIMIZATION

        last = await plans.transition("user_1", TransitionChoice.CONTINUE)

        assert last.id == optimization.id
        assert last.phase == DietPhase.OPTIMIZATION
        assert last.status == PlanStatus.EXTENDED

    @pytest.mark.asyncio
    async def test_optimization_complete_offers_no_continue(self, plans, profiles, clock):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        await plans.transition("user_1", TransitionChoice.CONTINUE)
        await plans.transition("user_1", TransitionChoice.CONTINUE)
        clock.advance(days=31)

        recommendation = await plans.check_transition("user_1")

        assert recommendation.next_phase is None
        assert recommendation.options == ["maintain", "recheck"]

    @pytest.mark.asyncio
    async def test_transition_without_plan(self, plans):
        with pytest.raises(DietPlanNotFoundError):
            await plans.transition("user_1", TransitionChoice.MAINTAIN)


# =============================================================================
# PROGRESS
# =============================================================================

class TestProgress:

    @pytest.mark.asyncio
    async def test_milestones_complete_as_days_pass(self, plans, profiles, clock):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        clock.advance(days=16)

        plan = await plans.update_progress("user_1")

        assert plan.current_day == 16
        assert [m.completed for m in plan.milestones] == [True, True, False, False]
        assert plan.next_milestone.day == 23

    @pytest.mark.asyncio
    async def test_completed_milestones_stay_completed(self, plans, profiles, clock):
        await _b12_low(profiles)
        await plans.get_or_create_plan("user_1")
        clock.advance(days=16)
        await plans.update_progress("user_1")
        clock.advance(days=-10)

        plan = await plans.update_progress("user_1")

        assert plan.current_day == 16
        assert plan.milestones[1].completed

    @pytest.mark.asyncio
    async def test_no_plan_no_progress(self, plans):
        assert await plans.update_progress("nobody") is None

    @pytest.mark.asyncio
    async def test_update_all_progress(self, plans, profiles, clock):
        await plans.get_or_create_plan("user_1")
        await plans.get_or_create_plan("user_2")
        clock.advance(days=9)

        assert await plans.update_all_progress() == 2
        assert (await plans.get_active_plan("user_2")).milestones[0].completed

    @pytest.mark.asyncio
    async def test_render_mentions_targets_and_next_milestone(self, plans, profiles):
        await _b12_low(profiles)
        plan = await plans.get_or_create_plan("user_1")

        text = plans.render_plan(plan)

        assert "correction diet plan is on day 0 of 30" in text
        assert "Vitamin B12" in text
        assert "Next milestone (day 8)" in text
