"""
Achievement System

Tiered achievements (bronze / silver / gold) driven by lifetime counters
on the user profile:
- Streak (consistent, comeback)
- Tasks (task_master, priority_handler, early_bird, night_owl)
- Focus (deep_worker, marathon)
- Quests, habits, special (adventurer, habit_former, perfect_week, inbox_zero)

Features:
- Several tiers can unlock at once; each is stamped with the same timestamp
- Tiers are upward-only; XP for a tier is paid exactly once
- Progress tracking toward the next tier
- Explicit reset of all progress
"""

from typing import Dict, List, Optional
from datetime import datetime
import logging

from src.exceptions import InvariantViolationError
from src.gamification.store import GamificationStore
from src.gamification.xp_system import apply_xp_delta, get_permanent_xp_bonus
from src.models.gamification import (
    TIER_ORDER,
    Achievement,
    AchievementCategory,
    AchievementEvaluation,
    AchievementTier,
    TierUnlock,
    UserAchievement,
    UserProfile,
)

logger = logging.getLogger(__name__)


def _definition(
    key: str,
    category: AchievementCategory,
    name: str,
    description: str,
    stat_key: str,
    thresholds: tuple,
    xp: tuple,
    sort_order: int,
) -> Achievement:
    return Achievement(
        id=key,
        key=key,
        category=category,
        name=name,
        description=description,
        stat_key=stat_key,
        bronze_threshold=thresholds[0],
        silver_threshold=thresholds[1],
        gold_threshold=thresholds[2],
        bronze_xp=xp[0],
        silver_xp=xp[1],
        gold_xp=xp[2],
        sort_order=sort_order,
    )


DEFAULT_ACHIEVEMENTS: List[Achievement] = [
    _definition("consistent", AchievementCategory.STREAK, "Consistent",
                "Keep a daily streak going", "current_streak", (7, 30, 100), (25, 100, 500), 1),
    _definition("comeback", AchievementCategory.STREAK, "Comeback Kid",
                "Restart your streak after losing it", "lifetime_streak_recoveries",
                (3, 10, 25), (15, 50, 150), 2),
    _definition("task_master", AchievementCategory.TASKS, "Task Master",
                "Complete tasks", "lifetime_tasks_completed", (25, 100, 500), (25, 100, 500), 3),
    _definition("priority_handler", AchievementCategory.TASKS, "Priority Handler",
                "Complete high priority tasks", "lifetime_high_priority_completed",
                (10, 50, 200), (30, 120, 500), 4),
    _definition("deep_worker", AchievementCategory.FOCUS, "Deep Worker",
                "Accumulate focus minutes", "lifetime_focus_minutes",
                (300, 1500, 6000), (25, 100, 500), 5),
    _definition("marathon", AchievementCategory.FOCUS, "Marathon",
                "Finish focus sessions of an hour or more", "lifetime_long_focus_sessions",
                (3, 10, 25), (30, 100, 400), 6),
    _definition("adventurer", AchievementCategory.QUESTS, "Adventurer",
                "Complete quests", "lifetime_quests_completed", (3, 10, 25), (50, 200, 600), 7),
    _definition("habit_former", AchievementCategory.HABITS, "Habit Former",
                "Complete habits", "lifetime_habits_completed", (21, 66, 200), (30, 100, 400), 8),
    _definition("perfect_week", AchievementCategory.SPECIAL, "Perfect Week",
                "Finish every planned task in a week", "lifetime_perfect_weeks",
                (1, 4, 12), (40, 150, 500), 9),
    _definition("early_bird", AchievementCategory.SPECIAL, "Early Bird",
                "Complete tasks before 7 AM", "lifetime_early_bird_tasks",
                (5, 25, 100), (25, 100, 400), 10),
    _definition("night_owl", AchievementCategory.SPECIAL, "Night Owl",
                "Complete tasks after 10 PM", "lifetime_night_owl_tasks",
                (5, 25, 100), (25, 100, 400), 11),
    _definition("inbox_zero", AchievementCategory.SPECIAL, "Inbox Zero",
                "Process brain dump items", "lifetime_brain_dumps_processed",
                (25, 100, 500), (30, 100, 400), 12),
]


TIER_EMOJI = {
    AchievementTier.GOLD: "🥇",
    AchievementTier.SILVER: "🥈",
    AchievementTier.BRONZE: "🥉",
}


def get_stat_value(profile: UserProfile, stat_key: str) -> int:
    """Read the profile counter an achievement watches (0 if unknown)"""
    value = getattr(profile, stat_key, None)
    if value is None:
        logger.warning(f"Unknown achievement stat '{stat_key}'")
        return 0
    return int(value)


def get_unlocked_tiers(achievement: Achievement, value: int) -> List[AchievementTier]:
    """Tiers whose threshold `value` meets, lowest first"""
    return [tier for tier in TIER_ORDER if value >= achievement.threshold_for(tier)]


def get_highest_tier(achievement: Achievement, value: int) -> Optional[AchievementTier]:
    tiers = get_unlocked_tiers(achievement, value)
    return tiers[-1] if tiers else None


def get_progress_to_next_tier(achievement: Achievement, value: int) -> Dict[str, any]:
    """
    Progress from the current tier toward the next one

    Returns:
        {
            'next_tier': str | None (None once gold is reached),
            'next_threshold': int | None,
            'current': int,
            'percentage': int (0-100)
        }
    """
    previous_threshold = 0
    for tier in TIER_ORDER:
        threshold = achievement.threshold_for(tier)
        if value < threshold:
            span = threshold - previous_threshold
            percentage = int(((value - previous_threshold) / span) * 100) if span > 0 else 0
            return {
                "next_tier": tier.value,
                "next_threshold": threshold,
                "current": value,
                "percentage": max(0, min(percentage, 100)),
            }
        previous_threshold = threshold

    return {"next_tier": None, "next_threshold": None, "current": value, "percentage": 100}


def _check_tier_timestamps(progress: UserAchievement) -> None:
    """
    Raises:
        InvariantViolationError: If a higher tier is stamped without, or before, a lower one
    """
    stamps = [progress.unlocked_at(tier) for tier in TIER_ORDER]
    for lower, higher, tier in zip(stamps, stamps[1:], TIER_ORDER[1:]):
        if higher is None:
            continue
        if lower is None:
            raise InvariantViolationError(
                f"{tier.value} unlocked without the tier below it for {progress.achievement_id}",
                invariant="tier_order",
            )
        if higher < lower:
            raise InvariantViolationError(
                f"{tier.value} unlocked before the tier below it for {progress.achievement_id}",
                invariant="tier_timestamps_monotonic",
            )


def evaluate_achievement(
    achievement: Achievement,
    counter_value: int,
    progress: UserAchievement,
    now: datetime,
) -> AchievementEvaluation:
    """
    Compare a counter against an achievement's thresholds

    Every newly crossed tier is stamped with `now` and its XP summed. Tiers
    that already carry a timestamp are left alone, and current_tier never
    moves down even if the counter has since decreased.
    """
    updated = progress.model_copy()
    updated.progress_value = counter_value

    unlocked: List[TierUnlock] = []
    for tier in get_unlocked_tiers(achievement, counter_value):
        if updated.unlocked_at(tier) is not None:
            continue
        setattr(updated, f"{tier.value}_unlocked_at", now)
        unlocked.append(TierUnlock(
            achievement_key=achievement.key,
            achievement_name=achievement.name,
            tier=tier,
            xp_reward=achievement.xp_for(tier),
            unlocked_at=now,
        ))

    stamped = [tier for tier in TIER_ORDER if updated.unlocked_at(tier) is not None]
    updated.current_tier = stamped[-1] if stamped else None
    _check_tier_timestamps(updated)

    return AchievementEvaluation(
        progress=updated,
        unlocked=unlocked,
        xp_awarded=sum(u.xp_reward for u in unlocked),
    )


def count_unlocked_achievements(progress_rows: List[UserAchievement]) -> int:
    """Achievements with at least one tier unlocked"""
    return sum(1 for row in progress_rows if row.current_tier is not None)


async def check_and_award_achievements(
    store: GamificationStore,
    profile: UserProfile,
    now: datetime,
) -> List[TierUnlock]:
    """
    Check every achievement against the profile's counters

    Saves progress rows whose value or tiers changed. Achievement XP is
    added to the profile in place (xp_total, level) and
    achievements_unlocked is recounted; the caller persists the profile.

    Returns:
        Newly unlocked tiers
    """
    achievements = await store.list_achievements()
    existing = {
        row.achievement_id: row
        for row in await store.list_user_achievements(profile.user_id)
    }

    newly_unlocked: List[TierUnlock] = []
    rows: List[UserAchievement] = []

    for achievement in achievements:
        progress = existing.get(achievement.id) or UserAchievement(
            user_id=profile.user_id, achievement_id=achievement.id
        )
        value = get_stat_value(profile, achievement.stat_key)
        evaluation = evaluate_achievement(achievement, value, progress, now)

        if evaluation.unlocked or evaluation.progress != progress or achievement.id not in existing:
            await store.save_user_achievement(evaluation.progress)

        rows.append(evaluation.progress)
        newly_unlocked.extend(evaluation.unlocked)

    xp_total = sum(u.xp_reward for u in newly_unlocked)
    if xp_total:
        profile.xp_total, profile.level = apply_xp_delta(profile.xp_total, xp_total)
        profile.permanent_xp_bonus = get_permanent_xp_bonus(profile.level)
    profile.achievements_unlocked = count_unlocked_achievements(rows)

    for unlock in newly_unlocked:
        logger.info(
            f"User {profile.user_id} unlocked achievement: "
            f"{unlock.achievement_name} ({unlock.tier.value}, +{unlock.xp_reward} XP)"
        )

    return newly_unlocked


async def get_user_achievements(store: GamificationStore, user_id: str) -> Dict[str, any]:
    """
    Get every achievement with the user's tier and progress

    Returns:
        {
            'achievements': [{key, name, description, category, current_tier,
                              progress_value, next_tier, next_threshold,
                              percentage, bronze/silver/gold_unlocked_at}],
            'total_unlocked': int,
            'total_achievements': int,
            'total_xp_from_achievements': int
        }
    """
    profile = await store.get_or_create_profile(user_id)
    achievements = await store.list_achievements()
    progress_by_id = {
        row.achievement_id: row
        for row in await store.list_user_achievements(user_id)
    }

    entries = []
    total_xp = 0
    for achievement in achievements:
        progress = progress_by_id.get(achievement.id) or UserAchievement(
            user_id=user_id, achievement_id=achievement.id
        )
        value = get_stat_value(profile, achievement.stat_key)
        next_tier = get_progress_to_next_tier(achievement, value)

        for tier in TIER_ORDER:
            if progress.unlocked_at(tier) is not None:
                total_xp += achievement.xp_for(tier)

        entries.append({
            "key": achievement.key,
            "name": achievement.name,
            "description": achievement.description,
            "category": achievement.category.value,
            "current_tier": progress.current_tier.value if progress.current_tier else None,
            "progress_value": value,
            "next_tier": next_tier["next_tier"],
            "next_threshold": next_tier["next_threshold"],
            "percentage": next_tier["percentage"],
            "bronze_unlocked_at": progress.bronze_unlocked_at,
            "silver_unlocked_at": progress.silver_unlocked_at,
            "gold_unlocked_at": progress.gold_unlocked_at,
        })

    return {
        "achievements": entries,
        "total_unlocked": count_unlocked_achievements(list(progress_by_id.values())),
        "total_achievements": len(achievements),
        "total_xp_from_achievements": total_xp,
    }


async def reset_achievement_progress(store: GamificationStore, user_id: str) -> int:
    """
    Clear all of a user's achievement progress and unlock timestamps

    XP already earned from achievements is kept.

    Returns:
        Number of progress rows removed
    """
    async with store.transaction():
        profile = await store.get_or_create_profile(user_id, for_update=True)
        removed = await store.delete_user_achievements(user_id)
        profile.achievements_unlocked = 0
        await store.save_profile(profile)

    logger.info(f"Reset achievement progress for user {user_id} ({removed} rows removed)")
    return removed


def format_achievement_display(achievements_data: Dict) -> str:
    """
    Format achievements for display

    Args:
        achievements_data: Output from get_user_achievements()
    """
    total_unlocked = achievements_data["total_unlocked"]
    if total_unlocked == 0:
        return "🏆 No achievements unlocked yet. Keep going! 💪"

    lines = [
        f"🏆 YOUR ACHIEVEMENTS ({total_unlocked}/{achievements_data['total_achievements']})",
        f"⭐ Total XP from achievements: {achievements_data['total_xp_from_achievements']}\n",
    ]
    for entry in achievements_data["achievements"]:
        if not entry["current_tier"]:
            continue
        emoji = TIER_EMOJI[AchievementTier(entry["current_tier"])]
        line = f"{emoji} {entry['name']}"
        if entry["next_tier"]:
            line += f" ({entry['progress_value']}/{entry['next_threshold']} to {entry['next_tier']})"
        lines.append(line)

    return "\n".join(lines)


def format_achievement_unlock_message(unlock: TierUnlock) -> str:
    """Celebration message for one unlocked tier"""
    emoji = TIER_EMOJI.get(unlock.tier, "🏆")
    return (
        f"🎉 ACHIEVEMENT UNLOCKED! 🎉\n\n"
        f"{emoji} {unlock.achievement_name} ({unlock.tier.value.title()}) {emoji}\n\n"
        f"⭐ +{unlock.xp_reward} XP Bonus!"
    )
