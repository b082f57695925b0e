"""Unit tests for GamificationService (src/services/gamification_service.py)"""
import pytest
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from src.config import DAILY_SWEEP_BONUS, TASK_XP
from src.exceptions import QueryError, RecordNotFoundError, ValidationError
from src.gamification.memory_store import InMemoryGamificationStore
from src.models.gamification import (
    DailyChallenge,
    EntityType,
    Group,
    Task,
)
from src.services.gamification_service import GamificationService
from src.utils.datetime_helpers import Clock


def _pin(service, day):
    service.clock = Clock(tz_name="UTC", fixed_today=day)


async def _assign_daily(store, user_id, challenge_date, template_ids):
    for template_id in template_ids:
        await store.insert_daily_challenge(
            DailyChallenge(user_id=user_id, template_id=template_id, challenge_date=challenge_date)
        )


async def _set_streak(store, user_id, streak, last_active):
    profile = await store.get_or_create_profile(user_id)
    profile.current_streak = streak
    profile.longest_streak = streak
    profile.last_active_date = last_active
    await store.save_profile(profile)


# ============================================================================
# Task Completion Tests
# ============================================================================

@pytest.mark.asyncio
async def test_complete_task_fresh_profile(service, store, task, test_user_id, today):
    """Fresh profile, one 15 XP task, then a second task the same day"""
    second = store.add_task(Task(id="task-2", user_id=test_user_id, title="Reply to email", xp_value=15))

    result = await service.complete_task(test_user_id, task.id)

    assert result.success is True
    assert result.action_xp == 15
    assert result.xp_total == 15
    assert result.level == 1
    assert result.current_streak == 1

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.last_active_date == today
    assert profile.lifetime_tasks_completed == 1

    result = await service.complete_task(test_user_id, second.id)

    assert result.xp_total == 30
    assert result.current_streak == 1


@pytest.mark.asyncio
async def test_complete_task_twice_same_day(service, task, test_user_id):
    await service.complete_task(test_user_id, task.id)

    result = await service.complete_task(test_user_id, task.id)

    assert result.already_completed is True
    assert result.action_xp == 0
    assert result.xp_total == 15


@pytest.mark.asyncio
async def test_complete_task_not_found(service, test_user_id):
    with pytest.raises(RecordNotFoundError):
        await service.complete_task(test_user_id, "missing")


@pytest.mark.asyncio
async def test_complete_task_of_another_user(service, task):
    with pytest.raises(RecordNotFoundError):
        await service.complete_task("someone-else", task.id)


@pytest.mark.asyncio
async def test_complete_task_counts_high_priority(service, store, high_priority_task, test_user_id):
    await service.complete_task(test_user_id, high_priority_task.id)

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_high_priority_completed == 1


@pytest.mark.asyncio
async def test_complete_task_time_of_day_counters_reversed(service, store, task, test_user_id, today):
    early = datetime(today.year, today.month, today.day, 6, 30)
    await service.complete_task(test_user_id, task.id, completed_at=early)

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_early_bird_tasks == 1
    assert profile.lifetime_night_owl_tasks == 0

    await service.uncomplete_task(test_user_id, task.id)

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_early_bird_tasks == 0
    assert profile.lifetime_tasks_completed == 0


@pytest.mark.asyncio
async def test_complete_task_night_owl(service, store, task, test_user_id, today):
    late = datetime(today.year, today.month, today.day, 22, 15)
    await service.complete_task(test_user_id, task.id, completed_at=late)

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_night_owl_tasks == 1


@pytest.mark.asyncio
async def test_complete_task_after_gap_counts_recovery(service, store, task, test_user_id, today):
    await _set_streak(store, test_user_id, 4, today - timedelta(days=3))

    result = await service.complete_task(test_user_id, task.id)

    profile = await store.get_or_create_profile(test_user_id)
    assert result.current_streak == 1
    assert result.longest_streak == 4
    assert profile.lifetime_streak_recoveries == 1


# ============================================================================
# Reversal Tests
# ============================================================================

@pytest.mark.asyncio
async def test_uncomplete_task_round_trip_uses_snapshot(service, store, task, test_user_id):
    """Changing the task's XP value after completion cannot make the round trip drift"""
    await service.complete_task(test_user_id, task.id)
    store.add_task(task.model_copy(update={"xp_value": 40}))

    result = await service.uncomplete_task(test_user_id, task.id)

    assert result.action_xp == -15
    assert result.xp_total == 0
    assert result.current_streak == 0

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.xp_total == 0
    assert profile.last_active_date is None
    transactions = await store.list_xp_transactions(test_user_id)
    assert sum(t.amount for t in transactions) == 0


@pytest.mark.asyncio
async def test_uncomplete_task_not_completed(service, task, test_user_id):
    result = await service.uncomplete_task(test_user_id, task.id)

    assert result.not_completed is True
    assert result.xp_total == 0


@pytest.mark.asyncio
async def test_streak_reversal_over_three_days(service, store, task, test_user_id, today):
    """Complete D-2, D-1, D; undo D then D-1"""
    for offset in (2, 1, 0):
        _pin(service, today - timedelta(days=offset))
        result = await service.complete_task(test_user_id, task.id)
    assert result.current_streak == 3

    result = await service.uncomplete_task(test_user_id, task.id, completed_date=today)
    profile = await store.get_or_create_profile(test_user_id)
    assert result.current_streak == 2
    assert profile.last_active_date == today - timedelta(days=1)

    result = await service.uncomplete_task(test_user_id, task.id, completed_date=today - timedelta(days=1))
    profile = await store.get_or_create_profile(test_user_id)
    assert result.current_streak == 1
    assert profile.last_active_date == today - timedelta(days=2)
    assert profile.longest_streak == 3
    assert profile.xp_total == 15


@pytest.mark.asyncio
async def test_uncomplete_defaults_to_latest_completion(service, store, task, test_user_id, today):
    _pin(service, today - timedelta(days=1))
    await service.complete_task(test_user_id, task.id)
    _pin(service, today)
    await service.complete_task(test_user_id, task.id)

    await service.uncomplete_task(test_user_id, task.id)

    assert await store.get_completion(EntityType.TASK, task.id, today) is None
    assert await store.get_completion(EntityType.TASK, task.id, today - timedelta(days=1)) is not None


@pytest.mark.asyncio
async def test_uncomplete_keeps_challenge_xp(service, store, task, test_user_id, today):
    """Challenge rewards stay even when the completion that earned them is undone"""
    second = store.add_task(Task(id="task-2", user_id=test_user_id, title="Plan sprint", xp_value=15))
    await _assign_daily(store, test_user_id, today, ["complete_2_tasks"])

    await service.complete_task(test_user_id, task.id)
    result = await service.complete_task(test_user_id, second.id)
    assert result.challenge_xp == 15
    assert result.xp_total == 45

    result = await service.uncomplete_task(test_user_id, second.id)

    assert result.xp_total == 30
    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_quests_completed == 1


# ============================================================================
# Habit Tests
# ============================================================================

@pytest.mark.asyncio
async def test_toggle_habit(service, store, habit, test_user_id):
    done = await service.toggle_habit(test_user_id, habit.id)

    assert done.habit_streak == 1
    assert done.xp_total == 15

    undone = await service.toggle_habit(test_user_id, habit.id)

    assert undone.habit_streak == 0
    assert undone.xp_total == 0
    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_habits_completed == 0


@pytest.mark.asyncio
async def test_complete_habit_backfill(service, store, habit, test_user_id, today):
    """A past-dated habit completion builds the habit streak; the global streak counts today"""
    first = await service.complete_habit(test_user_id, habit.id, today - timedelta(days=1))
    assert first.habit_streak == 1
    assert first.current_streak == 1

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.last_active_date == today

    second = await service.complete_habit(test_user_id, habit.id, today)
    assert second.habit_streak == 2
    assert second.current_streak == 1


@pytest.mark.asyncio
async def test_complete_habit_future_date(service, habit, test_user_id, today):
    with pytest.raises(ValidationError):
        await service.complete_habit(test_user_id, habit.id, today + timedelta(days=1))


@pytest.mark.asyncio
async def test_complete_habit_not_found(service, test_user_id):
    with pytest.raises(RecordNotFoundError):
        await service.complete_habit(test_user_id, "missing")


# ============================================================================
# Schedule Block Tests
# ============================================================================

@pytest.mark.asyncio
async def test_toggle_schedule_block(service, store, schedule_block, test_user_id):
    done = await service.toggle_schedule_block(test_user_id, schedule_block.id)
    assert done.action_xp == 10

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_schedule_blocks_completed == 1

    undone = await service.toggle_schedule_block(test_user_id, schedule_block.id)
    assert undone.xp_total == 0


# ============================================================================
# Focus Session Tests
# ============================================================================

@pytest.mark.asyncio
async def test_complete_focus_session(service, store, test_user_id, today):
    result = await service.complete_focus_session(test_user_id, 60)

    assert result.action_xp == 46
    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_focus_minutes == 60
    assert profile.lifetime_long_focus_sessions == 1
    activity = await store.get_activity(test_user_id, today)
    assert activity.focus_minutes == 60
    assert activity.actions_count == 1


@pytest.mark.asyncio
async def test_complete_focus_session_invalid_minutes(service, test_user_id):
    with pytest.raises(ValidationError):
        await service.complete_focus_session(test_user_id, 0)


@pytest.mark.asyncio
async def test_focus_session_completes_challenges_and_sweep(service, store, test_user_id, today):
    """One 90 minute session finishes all three focus challenges and pays the sweep once"""
    await _assign_daily(store, test_user_id, today, ["focus_15_min", "focus_45_min", "focus_90_min"])

    result = await service.complete_focus_session(test_user_id, 90)

    assert result.action_xp == 69
    assert result.challenge_xp == 15 + 40 + 75 + DAILY_SWEEP_BONUS
    assert result.sweep_bonus_awarded is True
    assert len(result.challenges_completed) == 3
    # Three completed quests unlock Adventurer bronze
    assert [u.achievement_key for u in result.achievements_unlocked] == ["adventurer"]
    assert result.achievement_xp == 50
    assert result.xp_total == 69 + 155 + 50
    assert result.level == 2
    assert result.leveled_up is True

    transactions = await store.list_xp_transactions(test_user_id)
    assert sorted((t.source_type, t.amount) for t in transactions) == [
        ("achievement", 50), ("challenge", 155), ("focus", 69),
    ]

    again = await service.complete_focus_session(test_user_id, 30)
    assert again.challenge_xp == 0
    assert again.sweep_bonus_awarded is False


# ============================================================================
# Planning Tests
# ============================================================================

@pytest.mark.asyncio
async def test_award_planning_xp_once_per_day(service, store, test_user_id):
    first = await service.award_planning_xp(test_user_id, "daily_review")
    second = await service.award_planning_xp(test_user_id, "daily_review")

    assert first.action_xp == 10
    assert first.xp_total == 10
    assert second.already_completed is True
    assert second.xp_total == 10

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.current_streak == 0


@pytest.mark.asyncio
async def test_award_planning_xp_weekly(service, test_user_id):
    result = await service.award_planning_xp(test_user_id, "weekly_planning")
    assert result.action_xp == 25


@pytest.mark.asyncio
async def test_award_planning_xp_needs_three_tasks(service, test_user_id):
    with pytest.raises(ValidationError):
        await service.award_planning_xp(test_user_id, "daily_planning", tasks_planned=2)

    result = await service.award_planning_xp(test_user_id, "daily_planning", tasks_planned=3)
    assert result.action_xp == 10


@pytest.mark.asyncio
async def test_award_planning_xp_unknown_kind(service, test_user_id):
    with pytest.raises(ValidationError):
        await service.award_planning_xp(test_user_id, "monthly_planning")


# ============================================================================
# Achievement-only Events
# ============================================================================

@pytest.mark.asyncio
async def test_record_brain_dumps_processed(service, test_user_id):
    result = await service.record_brain_dumps_processed(test_user_id, 25)

    assert [u.achievement_key for u in result.achievements_unlocked] == ["inbox_zero"]
    assert result.achievement_xp == 30
    assert result.xp_total == 30


@pytest.mark.asyncio
async def test_record_perfect_week(service, store, test_user_id):
    result = await service.record_perfect_week(test_user_id)

    assert result.achievement_xp == 40
    profile = await store.get_or_create_profile(test_user_id)
    assert profile.lifetime_perfect_weeks == 1
    assert profile.achievements_unlocked == 1


@pytest.mark.asyncio
async def test_record_counter_rejects_non_positive(service, test_user_id):
    with pytest.raises(ValidationError):
        await service.record_brain_dumps_processed(test_user_id, 0)


# ============================================================================
# Streak Milestones & Freezes
# ============================================================================

@pytest.mark.asyncio
async def test_seventh_day_milestone_and_freeze(service, store, task, test_user_id, today):
    await _set_streak(store, test_user_id, 6, today - timedelta(days=1))

    result = await service.complete_task(test_user_id, task.id)

    assert result.current_streak == 7
    assert result.streak_milestone == 7
    # 15 * 1.10 floored; the 50 XP milestone is reported on its own
    assert result.action_xp == 16
    assert result.streak_milestone_xp == 50
    assert result.total_xp_gained == 16 + 50 + result.achievement_xp
    assert [u.achievement_key for u in result.achievements_unlocked] == ["consistent"]
    assert result.freeze_earned is True

    inventory = await store.get_or_create_freeze_inventory(test_user_id)
    assert inventory.available_freezes == 2


@pytest.mark.asyncio
async def test_use_streak_freeze(service, store, test_user_id, today):
    await _set_streak(store, test_user_id, 3, today - timedelta(days=1))

    result = await service.use_streak_freeze(test_user_id)

    assert result.success is True
    assert result.available_freezes == 0


# ============================================================================
# Groups
# ============================================================================

@pytest.mark.asyncio
async def test_group_weekly_xp_follows_completion(service, store, task, test_user_id):
    store.add_group(Group(id="group-1", name="Team"), [test_user_id])

    await service.complete_task(test_user_id, task.id)
    members = await store.list_group_members("group-1")
    assert members[0].weekly_xp == 15

    await service.uncomplete_task(test_user_id, task.id)
    members = await store.list_group_members("group-1")
    assert members[0].weekly_xp == 0


# ============================================================================
# Stats
# ============================================================================

@pytest.mark.asyncio
async def test_get_user_stats(service, task, test_user_id):
    await service.complete_task(test_user_id, task.id)

    stats = await service.get_user_stats(test_user_id)

    assert stats["xp"]["total_xp"] == 15
    assert stats["xp"]["current_level"] == 1
    assert stats["streaks"]["current_streak"] == 1
    assert stats["achievements"]["total_achievements"] == 12
    assert stats["challenges"]["daily"] == []


@pytest.mark.asyncio
async def test_milestone_kept_while_its_day_stays_active(service, store, task, test_user_id, today):
    """Undoing one of two completions on the seventh day keeps the milestone"""
    for days_ago in range(6, 0, -1):
        _pin(service, today - timedelta(days=days_ago))
        await service.complete_task(test_user_id, task.id)
    _pin(service, today)
    second = store.add_task(Task(id="task-2", user_id=test_user_id, title="Reply to email", xp_value=15))

    first_result = await service.complete_task(test_user_id, task.id)
    second_result = await service.complete_task(test_user_id, second.id)
    assert first_result.streak_milestone_xp == 50
    assert second_result.streak_milestone_xp == 0
    before = (await store.get_or_create_profile(test_user_id)).xp_total

    undo_first = await service.uncomplete_task(test_user_id, task.id)

    assert undo_first.action_xp == -16
    assert undo_first.streak_milestone_xp == 0
    assert undo_first.current_streak == 7
    assert undo_first.xp_total == before - 16

    # The last action of the day goes, and the milestone with it
    undo_second = await service.uncomplete_task(test_user_id, second.id)

    assert undo_second.action_xp == -16
    assert undo_second.streak_milestone_xp == -50
    assert undo_second.current_streak == 6
    assert undo_second.xp_total == before - 16 - 16 - 50
    activity = await store.get_activity(test_user_id, today)
    assert activity.actions_count == 0
    assert activity.milestone_xp == 0

    transactions = await store.list_xp_transactions(test_user_id, limit=3)
    assert [(t.source_type, t.amount) for t in transactions[:2]] == [
        ("streak_milestone", -50), ("task", -16),
    ]


@pytest.mark.asyncio
async def test_milestone_paid_again_after_revoke(service, store, task, test_user_id, today):
    for days_ago in range(6, 0, -1):
        _pin(service, today - timedelta(days=days_ago))
        await service.complete_task(test_user_id, task.id)
    _pin(service, today)

    await service.complete_task(test_user_id, task.id)
    await service.uncomplete_task(test_user_id, task.id)
    again = await service.complete_task(test_user_id, task.id)

    assert again.current_streak == 7
    assert again.streak_milestone_xp == 50


# ============================================================================
# Entity Defaults
# ============================================================================

@pytest.mark.asyncio
async def test_task_without_xp_value_pays_configured_default(service, store, test_user_id):
    plain = store.add_task(Task(id="task-plain", user_id=test_user_id, title="File receipts"))

    result = await service.complete_task(test_user_id, plain.id)

    assert result.action_xp == TASK_XP


# ============================================================================
# Atomicity
# ============================================================================

@pytest.mark.asyncio
async def test_failed_completion_rolls_back_and_retry_pays_once(service, store, task, test_user_id, today):
    """A store failure midway leaves no completion behind, so the retry is evaluated fresh"""
    other = store.add_task(Task(id="task-2", user_id=test_user_id, title="Reply to email", xp_value=15))
    await service.complete_task(test_user_id, other.id)

    original = store.list_daily_challenges
    failures = [QueryError("connection reset", operation="list_daily_challenges")]

    async def flaky(user_id, challenge_date):
        if failures:
            raise failures.pop()
        return await original(user_id, challenge_date)

    store.list_daily_challenges = flaky

    with pytest.raises(QueryError):
        await service.complete_task(test_user_id, task.id)

    profile = await store.get_or_create_profile(test_user_id)
    assert profile.xp_total == 15
    assert profile.lifetime_tasks_completed == 1
    assert await store.get_completion(EntityType.TASK, task.id, today) is None
    assert (await store.get_activity(test_user_id, today)).actions_count == 1

    retry = await service.complete_task(test_user_id, task.id)

    assert retry.already_completed is False
    assert retry.action_xp == 15
    assert retry.xp_total == 30

    undo = await service.uncomplete_task(test_user_id, task.id)

    assert undo.xp_total == 15
    transactions = await store.list_xp_transactions(test_user_id)
    assert sum(t.amount for t in transactions) == 15


@pytest.mark.asyncio
async def test_failed_reversal_rolls_back(service, store, task, test_user_id, today):
    await service.complete_task(test_user_id, task.id)

    async def failing(user_id):
        raise QueryError("statement timeout", operation="list_activity")

    store.list_activity = failing

    with pytest.raises(QueryError):
        await service.uncomplete_task(test_user_id, task.id)

    assert await store.get_completion(EntityType.TASK, task.id, today) is not None
    assert (await store.get_or_create_profile(test_user_id)).xp_total == 15


class _LockRecordingStore(InMemoryGamificationStore):
    def __init__(self):
        super().__init__()
        self.events = []

    @asynccontextmanager
    async def transaction(self):
        self.events.append("begin")
        async with super().transaction():
            yield
        self.events.append("commit")

    async def get_or_create_profile(self, user_id, for_update=False):
        self.events.append("lock profile" if for_update else "read profile")
        return await super().get_or_create_profile(user_id, for_update)


@pytest.mark.asyncio
async def test_pipeline_locks_profile_inside_transaction(clock, test_user_id):
    store = _LockRecordingStore()
    store.add_task(Task(id="task-1", user_id=test_user_id, title="Write report", xp_value=15))
    service = GamificationService(store, clock)

    await service.complete_task(test_user_id, "task-1")
    assert store.events[:2] == ["begin", "lock profile"]
    assert store.events[-1] == "commit"

    store.events.clear()
    await service.uncomplete_task(test_user_id, "task-1")
    assert store.events[:2] == ["begin", "lock profile"]
    assert store.events[-1] == "commit"
