"""
Streak Tracking System

Two kinds of streak:
- global: consecutive days with any productive action (tasks, habits,
  schedule blocks, focus sessions), keyed on the clock's today
- per-habit: consecutive days the habit was completed, keyed on the
  completion date

Features:
- Transition machine (same day no-op / next day continue / gap reset)
- Recompute-by-scan after a completion is undone
- Streak freezes (bridge one missed day, max 3 held)
- Streak milestones with bonus XP
"""

from typing import Dict, List, Optional, Tuple
from datetime import date
import logging

from src.config import MAX_STREAK_FREEZES
from src.exceptions import InvariantViolationError
from src.gamification.store import GamificationStore
from src.models.gamification import (
    ActivityLog,
    EntityType,
    Habit,
    StreakFreezeInventory,
    StreakFreezeResult,
    StreakUpdate,
    UserProfile,
)
from src.utils.datetime_helpers import previous_day, days_between

logger = logging.getLogger(__name__)


# Milestone day -> bonus XP
STREAK_MILESTONES: Dict[int, int] = {
    7: 50,
    14: 100,
    21: 150,
    30: 250,
    60: 400,
    90: 600,
    100: 1000,
    180: 1500,
    365: 3000,
}

FREEZE_EARN_STREAK = 7
FREEZE_EARN_INTERVAL_DAYS = 7


def get_new_streak_milestone(old_streak: int, new_streak: int) -> Optional[int]:
    """Highest milestone crossed going from old_streak up to new_streak"""
    crossed = [m for m in STREAK_MILESTONES if old_streak < m <= new_streak]
    return max(crossed) if crossed else None


def advance_streak(
    last_date: Optional[date],
    current_streak: int,
    longest_streak: int,
    activity_date: date,
) -> StreakUpdate:
    """
    Roll a streak forward for activity on `activity_date`

    Logic:
    - Same day as last: no change
    - Day after last: streak + 1
    - First activity or a gap: streak restarts at 1 (a recovery if it was live)
    - Activity dated before last: no change here; callers recompute by scan

    Returns:
        StreakUpdate with the new values and any milestone crossed
    """
    if last_date is not None and activity_date <= last_date:
        return StreakUpdate(
            current_streak=current_streak,
            longest_streak=longest_streak,
            last_date=last_date,
        )

    recovered = False
    if last_date is not None and last_date == previous_day(activity_date):
        new_streak = current_streak + 1
    else:
        new_streak = 1
        recovered = current_streak > 0

    milestone = get_new_streak_milestone(current_streak if not recovered else 0, new_streak)

    return StreakUpdate(
        current_streak=new_streak,
        longest_streak=max(longest_streak, new_streak),
        last_date=activity_date,
        changed=True,
        recovered=recovered,
        milestone_reached=milestone,
        milestone_xp=STREAK_MILESTONES.get(milestone, 0) if milestone else 0,
    )


def count_streak_from_dates(dates_desc: List[date]) -> Tuple[int, Optional[date]]:
    """
    Count consecutive calendar days back from the most recent date

    Args:
        dates_desc: Completion dates, most recent first

    Returns:
        (streak, last_date); (0, None) when there are no dates
    """
    if not dates_desc:
        return 0, None

    last_date = dates_desc[0]
    expected = last_date
    streak = 0
    for day in dates_desc:
        if day == expected:
            streak += 1
            expected = previous_day(expected)
        elif day < expected:
            break
        # duplicates of an already counted day are skipped
    return streak, last_date


def count_streak_from_activity(logs_desc: List[ActivityLog]) -> Tuple[int, Optional[date]]:
    """
    Recompute the global streak from the activity log

    Days with actions count. Freeze days keep the chain alive without
    counting toward its length.

    Returns:
        (streak, last_active_date); (0, None) when nothing is left
    """
    chain = [
        log for log in logs_desc
        if log.freeze_used or log.actions_count > 0
    ]
    if not chain:
        return 0, None

    last_date = chain[0].activity_date
    expected = last_date
    streak = 0
    for log in chain:
        if log.activity_date != expected:
            break
        if log.actions_count > 0 and not log.freeze_used:
            streak += 1
        expected = previous_day(expected)

    if streak == 0:
        return 0, None
    return streak, last_date


def check_streak_invariants(current_streak: int, longest_streak: int) -> None:
    """
    Raises:
        InvariantViolationError: If longest is below current or either is negative
    """
    if current_streak < 0 or longest_streak < current_streak:
        raise InvariantViolationError(
            f"Streak state invalid: current={current_streak}, longest={longest_streak}",
            invariant="longest_streak_gte_current",
        )


def apply_global_streak(profile: UserProfile, activity_date: date) -> StreakUpdate:
    """
    Apply a productive action on `activity_date` to the profile's global streak

    Mutates profile in place (caller persists). Counts a streak recovery
    on the profile when a live streak was broken.
    """
    update = advance_streak(
        profile.last_active_date,
        profile.current_streak,
        profile.longest_streak,
        activity_date,
    )
    if update.changed:
        profile.current_streak = update.current_streak
        profile.longest_streak = update.longest_streak
        profile.last_active_date = update.last_date
        if update.recovered:
            profile.lifetime_streak_recoveries += 1
            logger.info(f"User {profile.user_id} restarted their streak (recovery)")
        check_streak_invariants(profile.current_streak, profile.longest_streak)
    else:
        logger.debug(f"Global streak for user {profile.user_id} already counted for {activity_date}")
    return update


async def update_global_streak(
    store: GamificationStore,
    user_id: str,
    activity_date: date,
) -> StreakUpdate:
    """
    Update the user's global streak when activity occurs and persist it

    Returns:
        StreakUpdate (milestone XP is reported, not awarded here)
    """
    profile = await store.get_or_create_profile(user_id, for_update=True)
    old_streak = profile.current_streak
    update = apply_global_streak(profile, activity_date)
    if update.changed:
        await store.save_profile(profile)
        logger.info(
            f"Updated global streak for user {user_id}: "
            f"{old_streak} → {profile.current_streak} days"
        )
    return update


async def recalculate_global_streak(store: GamificationStore, profile: UserProfile) -> StreakUpdate:
    """
    Recompute the global streak from the activity log after a reversal

    Mutates profile in place (caller persists). longest_streak is kept.
    """
    logs = await store.list_activity(profile.user_id)
    streak, last_date = count_streak_from_activity(logs)

    changed = streak != profile.current_streak or last_date != profile.last_active_date
    profile.current_streak = streak
    profile.last_active_date = last_date
    profile.longest_streak = max(profile.longest_streak, streak)

    if changed:
        logger.info(f"Recalculated global streak for user {profile.user_id}: {streak} days")

    return StreakUpdate(
        current_streak=streak,
        longest_streak=profile.longest_streak,
        last_date=last_date,
        changed=changed,
    )


async def update_habit_streak(
    store: GamificationStore,
    habit: Habit,
    completed_date: date,
) -> StreakUpdate:
    """
    Roll a habit's streak for a completion on `completed_date` and persist it

    A completion dated before the habit's last completion is recomputed
    from the completion history instead (the record must already exist).
    """
    if habit.last_completed_date is not None and completed_date < habit.last_completed_date:
        return await recalculate_habit_streak(store, habit)

    update = advance_streak(
        habit.last_completed_date,
        habit.current_streak,
        habit.longest_streak,
        completed_date,
    )
    if update.changed:
        habit.current_streak = update.current_streak
        habit.longest_streak = update.longest_streak
        habit.last_completed_date = update.last_date
        await store.save_habit(habit)
        logger.info(f"Habit {habit.id} streak now {habit.current_streak} days")
    return update


async def recalculate_habit_streak(store: GamificationStore, habit: Habit) -> StreakUpdate:
    """
    Recompute a habit's streak by scanning its remaining completion dates

    No completions left -> streak 0 and no last date. longest_streak is kept.
    """
    dates = await store.list_completion_dates(EntityType.HABIT, habit.id)
    streak, last_date = count_streak_from_dates(dates)

    changed = streak != habit.current_streak or last_date != habit.last_completed_date
    habit.current_streak = streak
    habit.last_completed_date = last_date
    habit.longest_streak = max(habit.longest_streak, streak)
    await store.save_habit(habit)

    logger.info(f"Recalculated habit {habit.id} streak: {streak} days (last: {last_date})")

    return StreakUpdate(
        current_streak=streak,
        longest_streak=habit.longest_streak,
        last_date=last_date,
        changed=changed,
    )


def should_earn_freeze(current_streak: int, inventory: StreakFreezeInventory, today: date) -> bool:
    """One freeze per 7 days while the streak is at least 7, capped at MAX_STREAK_FREEZES"""
    if current_streak < FREEZE_EARN_STREAK:
        return False
    if inventory.available_freezes >= MAX_STREAK_FREEZES:
        return False
    if inventory.last_freeze_earned is None:
        return True
    return days_between(inventory.last_freeze_earned, today) >= FREEZE_EARN_INTERVAL_DAYS


async def maybe_earn_streak_freeze(
    store: GamificationStore,
    user_id: str,
    current_streak: int,
    today: date,
) -> bool:
    """
    Grant a streak freeze if the user has earned one

    Returns:
        True if a freeze was added to the inventory
    """
    inventory = await store.get_or_create_freeze_inventory(user_id)
    if not should_earn_freeze(current_streak, inventory, today):
        return False

    inventory.available_freezes += 1
    inventory.last_freeze_earned = today
    await store.save_freeze_inventory(inventory)
    logger.info(
        f"User {user_id} earned a streak freeze ({inventory.available_freezes} available)"
    )
    return True


async def use_streak_freeze(store: GamificationStore, user_id: str, today: date) -> StreakFreezeResult:
    """
    Spend a freeze to keep the streak alive through today

    Requires an available freeze, a live streak (last active yesterday),
    no freeze already used today, and no activity yet today. Marks today
    as maintained without growing the streak.

    Returns:
        StreakFreezeResult; success=False carries the reason
    """
    profile = await store.get_or_create_profile(user_id, for_update=True)
    inventory = await store.get_or_create_freeze_inventory(user_id)

    def refuse(reason: str) -> StreakFreezeResult:
        logger.warning(f"Streak freeze refused for user {user_id}: {reason}")
        return StreakFreezeResult(
            success=False,
            reason=reason,
            available_freezes=inventory.available_freezes,
            current_streak=profile.current_streak,
        )

    if inventory.available_freezes <= 0:
        return refuse("No streak freezes available")
    if inventory.last_freeze_used == today:
        return refuse("A streak freeze was already used today")
    if profile.last_active_date == today:
        return refuse("Already active today, no freeze needed")
    if profile.current_streak <= 0 or profile.last_active_date != previous_day(today):
        return refuse("No active streak to protect")

    inventory.available_freezes -= 1
    inventory.last_freeze_used = today
    await store.save_freeze_inventory(inventory)

    profile.last_active_date = today
    await store.save_profile(profile)

    activity = await store.get_activity(user_id, today) or ActivityLog(user_id=user_id, activity_date=today)
    activity.freeze_used = True
    await store.save_activity(activity)

    logger.info(
        f"User {user_id} used a streak freeze. "
        f"Streak {profile.current_streak} kept, {inventory.available_freezes} freezes left"
    )

    return StreakFreezeResult(
        success=True,
        available_freezes=inventory.available_freezes,
        current_streak=profile.current_streak,
    )


async def get_user_streaks(store: GamificationStore, user_id: str) -> Dict[str, any]:
    """
    Get the global streak, freeze inventory and per-habit streaks

    Returns:
        {
            'current_streak': int,
            'longest_streak': int,
            'last_active_date': date | None,
            'available_freezes': int,
            'habits': [{'habit_id', 'name', 'current_streak', 'longest_streak', 'last_completed_date'}]
        }
    """
    profile = await store.get_or_create_profile(user_id)
    inventory = await store.get_or_create_freeze_inventory(user_id)
    habits = await store.list_habits(user_id)

    habit_streaks = [
        {
            "habit_id": habit.id,
            "name": habit.name,
            "current_streak": habit.current_streak,
            "longest_streak": habit.longest_streak,
            "last_completed_date": habit.last_completed_date,
        }
        for habit in habits
    ]
    # Sort by current streak (descending)
    habit_streaks.sort(key=lambda x: x["current_streak"], reverse=True)

    return {
        "current_streak": profile.current_streak,
        "longest_streak": profile.longest_streak,
        "last_active_date": profile.last_active_date,
        "available_freezes": inventory.available_freezes,
        "habits": habit_streaks,
    }


def format_streak_display(streaks: Dict[str, any]) -> str:
    """
    Format streaks for display

    Args:
        streaks: Output of get_user_streaks()
    """
    current = streaks["current_streak"]
    if current == 0 and not streaks["habits"]:
        return "No active streaks yet. Complete something today to start one! 💪"

    line = f"🔥 Daily streak: {current} days"
    if streaks["longest_streak"] > current:
        line += f" (best: {streaks['longest_streak']})"
    if streaks["available_freezes"] > 0:
        line += f" 🛡️×{streaks['available_freezes']}"
    lines = ["🔥 YOUR STREAKS\n", line]

    for habit in streaks["habits"]:
        lines.append(f"✅ {habit['name']}: {habit['current_streak']} days")

    return "\n".join(lines)
