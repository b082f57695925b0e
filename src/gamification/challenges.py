"""
Challenge System

Daily challenges (one easy, one medium, one hard per user per day),
one weekly challenge per user per week, and weekly group challenges.

Instances are generated by the daily reset (or an explicit generate call)
from template pools. Selection is seeded by date and user, so every
re-run of a reset picks the same templates. Write paths only advance
instances that already exist; closed windows are never touched.

Finishing all three daily challenges pays the daily sweep bonus once.
"""

import logging
import random
from datetime import date, datetime
from typing import Dict, List, Optional

from src.config import DAILY_SWEEP_BONUS
from src.gamification.store import GamificationStore
from src.models.gamification import (
    ChallengeCompletion,
    ChallengeDifficulty,
    ChallengeProgressResult,
    ChallengeType,
    DailyChallenge,
    DailyChallengeTemplate,
    DailySweep,
    EntityType,
    GroupChallenge,
    GroupChallengeTemplate,
    WeeklyChallenge,
    WeeklyChallengeTemplate,
)

logger = logging.getLogger(__name__)


ALL_HABITS_TARGET = -1
DAILY_CHALLENGE_COUNT = 3
DIFFICULTY_ORDER = [ChallengeDifficulty.EASY, ChallengeDifficulty.MEDIUM, ChallengeDifficulty.HARD]


# ============================================
# Template Library
# ============================================

DEFAULT_DAILY_TEMPLATES: List[DailyChallengeTemplate] = [
    # Easy
    DailyChallengeTemplate(
        id="complete_2_tasks", key="complete_2_tasks", name="Warm Up",
        description="Complete 2 tasks", challenge_type=ChallengeType.TASKS,
        target_value=2, xp_reward=15, difficulty=ChallengeDifficulty.EASY,
    ),
    DailyChallengeTemplate(
        id="focus_15_min", key="focus_15_min", name="Quick Focus",
        description="Focus for 15 minutes", challenge_type=ChallengeType.FOCUS,
        target_value=15, xp_reward=15, difficulty=ChallengeDifficulty.EASY,
    ),
    DailyChallengeTemplate(
        id="complete_habit", key="complete_habit", name="Habit Check",
        description="Complete a habit", challenge_type=ChallengeType.HABITS,
        target_value=1, xp_reward=20, difficulty=ChallengeDifficulty.EASY,
    ),
    # Medium
    DailyChallengeTemplate(
        id="complete_4_tasks", key="complete_4_tasks", name="Getting Things Done",
        description="Complete 4 tasks", challenge_type=ChallengeType.TASKS,
        target_value=4, xp_reward=35, difficulty=ChallengeDifficulty.MEDIUM,
    ),
    DailyChallengeTemplate(
        id="focus_45_min", key="focus_45_min", name="In The Zone",
        description="Focus for 45 minutes", challenge_type=ChallengeType.FOCUS,
        target_value=45, xp_reward=40, difficulty=ChallengeDifficulty.MEDIUM,
    ),
    DailyChallengeTemplate(
        id="complete_all_habits", key="complete_all_habits", name="Habit Sweep",
        description="Complete all of your habits", challenge_type=ChallengeType.HABITS,
        target_value=ALL_HABITS_TARGET, xp_reward=50, difficulty=ChallengeDifficulty.MEDIUM,
    ),
    DailyChallengeTemplate(
        id="high_priority_task", key="high_priority_task", name="First Things First",
        description="Complete a high priority task", challenge_type=ChallengeType.HIGH_PRIORITY,
        target_value=1, xp_reward=30, difficulty=ChallengeDifficulty.MEDIUM,
    ),
    # Hard
    DailyChallengeTemplate(
        id="complete_6_tasks", key="complete_6_tasks", name="Productivity Machine",
        description="Complete 6 tasks", challenge_type=ChallengeType.TASKS,
        target_value=6, xp_reward=60, difficulty=ChallengeDifficulty.HARD,
    ),
    DailyChallengeTemplate(
        id="focus_90_min", key="focus_90_min", name="Deep Work",
        description="Focus for 90 minutes", challenge_type=ChallengeType.FOCUS,
        target_value=90, xp_reward=75, difficulty=ChallengeDifficulty.HARD,
    ),
    DailyChallengeTemplate(
        id="complete_2_high_priority", key="complete_2_high_priority", name="Big Rocks",
        description="Complete 2 high priority tasks", challenge_type=ChallengeType.HIGH_PRIORITY,
        target_value=2, xp_reward=65, difficulty=ChallengeDifficulty.HARD,
    ),
]

DEFAULT_WEEKLY_TEMPLATES: List[WeeklyChallengeTemplate] = [
    WeeklyChallengeTemplate(
        id="weekly_20_tasks", key="weekly_20_tasks", name="Task Marathon",
        description="Complete 20 tasks this week", challenge_type=ChallengeType.TASKS,
        target_value=20, xp_reward=150,
    ),
    WeeklyChallengeTemplate(
        id="weekly_5_hours_focus", key="weekly_5_hours_focus", name="Focus Champion",
        description="Focus for 5 hours this week", challenge_type=ChallengeType.FOCUS,
        target_value=300, xp_reward=200,
    ),
    WeeklyChallengeTemplate(
        id="weekly_streak", key="weekly_streak", name="Every Single Day",
        description="Be active all 7 days this week", challenge_type=ChallengeType.STREAK,
        target_value=7, xp_reward=100,
    ),
    WeeklyChallengeTemplate(
        id="weekly_daily_challenges", key="weekly_daily_challenges", name="Challenge Accepted",
        description="Finish all daily challenges on 5 days", challenge_type=ChallengeType.DAILY_CHALLENGES,
        target_value=5, xp_reward=250,
    ),
]

DEFAULT_GROUP_CHALLENGE_TEMPLATES: List[GroupChallengeTemplate] = [
    GroupChallengeTemplate(id="task_titans", name="Task Titans", description="Complete tasks together",
                           challenge_type=ChallengeType.TASKS, target_per_member=10, xp_reward_per_member=25),
    GroupChallengeTemplate(id="focus_force", name="Focus Force", description="Focus minutes as a team",
                           challenge_type=ChallengeType.FOCUS, target_per_member=60, xp_reward_per_member=30),
    GroupChallengeTemplate(id="habit_heroes", name="Habit Heroes", description="Complete habits together",
                           challenge_type=ChallengeType.HABITS, target_per_member=5, xp_reward_per_member=25),
    GroupChallengeTemplate(id="xp_explosion", name="XP Explosion", description="Earn XP as a team",
                           challenge_type=ChallengeType.XP, target_per_member=100, xp_reward_per_member=20),
    GroupChallengeTemplate(id="deep_work_week", name="Deep Work Week", description="A week of deep focus",
                           challenge_type=ChallengeType.FOCUS, target_per_member=90, xp_reward_per_member=35),
    GroupChallengeTemplate(id="consistency_champions", name="Consistency Champions",
                           description="Show up for your habits",
                           challenge_type=ChallengeType.HABITS, target_per_member=7, xp_reward_per_member=30),
    GroupChallengeTemplate(id="task_masters", name="Task Masters", description="Clear the backlog together",
                           challenge_type=ChallengeType.TASKS, target_per_member=15, xp_reward_per_member=30),
    GroupChallengeTemplate(id="point_pursuers", name="Point Pursuers", description="Chase XP as a team",
                           challenge_type=ChallengeType.XP, target_per_member=150, xp_reward_per_member=25),
]


# ============================================
# Seeded Selection
# ============================================

def challenge_seed(day: date, subject_id: str) -> int:
    """Stable 32-bit seed from a date and a user or group id"""
    text = f"{day.isoformat()}:{subject_id}"
    seed = 0
    for char in text:
        seed = (seed * 31 + ord(char)) & 0xFFFFFFFF
    return seed


def pick_seeded(pool: list, seed: int):
    """Deterministic choice from `pool` (ordered by id first so store order never matters)"""
    if not pool:
        return None
    ordered = sorted(pool, key=lambda t: t.id)
    return random.Random(seed).choice(ordered)


# ============================================
# Generation
# ============================================

async def generate_daily_challenges(
    store: GamificationStore,
    user_id: str,
    challenge_date: date,
) -> List[DailyChallenge]:
    """
    Make sure the user has one easy, one medium and one hard challenge for the date

    Only missing difficulties are created, so re-running is safe. The
    "complete all habits" template is skipped for users with no habits.

    Returns:
        All of the user's challenges for the date
    """
    existing = await store.list_daily_challenges(user_id, challenge_date)
    templates = await store.list_daily_templates()
    template_by_id = {t.id: t for t in templates}

    covered = {
        template_by_id[c.template_id].difficulty
        for c in existing if c.template_id in template_by_id
    }
    if len(covered) == len(DIFFICULTY_ORDER):
        logger.debug(f"Daily challenges for user {user_id} on {challenge_date} already exist")
        return existing

    has_habits = bool(await store.list_habits(user_id))
    seed = challenge_seed(challenge_date, user_id)

    for offset, difficulty in enumerate(DIFFICULTY_ORDER):
        if difficulty in covered:
            continue
        pool = [
            t for t in templates
            if t.difficulty == difficulty
            and (has_habits or t.target_value != ALL_HABITS_TARGET)
        ]
        template = pick_seeded(pool, seed + offset)
        if template is None:
            logger.warning(f"No {difficulty.value} daily challenge templates available")
            continue

        challenge = DailyChallenge(
            user_id=user_id,
            template_id=template.id,
            challenge_date=challenge_date,
        )
        if await store.insert_daily_challenge(challenge):
            logger.info(f"Generated {difficulty.value} daily challenge '{template.key}' for user {user_id}")

    return await store.list_daily_challenges(user_id, challenge_date)


async def generate_weekly_challenge(
    store: GamificationStore,
    user_id: str,
    week_start: date,
) -> Optional[WeeklyChallenge]:
    """
    Make sure the user has exactly one weekly challenge for the week

    Returns:
        The week's challenge (existing or new), None if there are no templates
    """
    existing = await store.get_weekly_challenge(user_id, week_start)
    if existing:
        return existing

    template = pick_seeded(await store.list_weekly_templates(), challenge_seed(week_start, user_id))
    if template is None:
        logger.warning("No weekly challenge templates available")
        return None

    challenge = WeeklyChallenge(user_id=user_id, template_id=template.id, week_start=week_start)
    if await store.insert_weekly_challenge(challenge):
        logger.info(f"Generated weekly challenge '{template.key}' for user {user_id}")
        return challenge
    return await store.get_weekly_challenge(user_id, week_start)


async def generate_group_challenge(
    store: GamificationStore,
    group_id: str,
    week_start: date,
    member_count: int,
) -> Optional[GroupChallenge]:
    """
    Make sure the group has a challenge for the week

    Target scales with the group: target_per_member * member_count.
    """
    existing = await store.get_group_challenge(group_id, week_start)
    if existing:
        return existing

    template = pick_seeded(
        await store.list_group_challenge_templates(), challenge_seed(week_start, group_id)
    )
    if template is None or member_count <= 0:
        return None

    challenge = GroupChallenge(
        group_id=group_id,
        template_id=template.id,
        week_start=week_start,
        target_value=template.target_per_member * member_count,
    )
    if await store.insert_group_challenge(challenge):
        logger.info(f"Generated group challenge '{template.name}' for group {group_id}")
        return challenge
    return await store.get_group_challenge(group_id, week_start)


# ============================================
# Progress
# ============================================

def _complete(challenge, name: str, key: str, xp_reward: int, now: datetime) -> ChallengeCompletion:
    challenge.completed = True
    challenge.completed_at = now
    challenge.xp_awarded = xp_reward
    return ChallengeCompletion(challenge_id=challenge.id, template_key=key, name=name, xp_reward=xp_reward)


async def _check_daily_sweep(
    store: GamificationStore,
    user_id: str,
    challenges: List[DailyChallenge],
    challenge_date: date,
    now: datetime,
) -> int:
    """Pay the sweep bonus once when every daily challenge for the date is done"""
    if len(challenges) < DAILY_CHALLENGE_COUNT or not all(c.completed for c in challenges):
        return 0

    sweep = DailySweep(
        user_id=user_id,
        sweep_date=challenge_date,
        xp_awarded=DAILY_SWEEP_BONUS,
        created_at=now,
    )
    if not await store.insert_daily_sweep(sweep):
        logger.debug(f"Daily sweep for user {user_id} on {challenge_date} already paid")
        return 0

    logger.info(f"User {user_id} completed all daily challenges! Sweep bonus +{DAILY_SWEEP_BONUS} XP")
    return DAILY_SWEEP_BONUS


async def update_daily_challenge_progress(
    store: GamificationStore,
    user_id: str,
    challenge_type: ChallengeType,
    increment: int,
    challenge_date: date,
    now: datetime,
) -> ChallengeProgressResult:
    """
    Advance the user's open daily challenges of a type for the date

    Progress only goes up. A challenge that reaches its target is
    completed once and records its XP. XP is reported, not applied; the
    caller credits challenge_xp and sweep_bonus to the profile.

    Returns:
        ChallengeProgressResult with completions and any sweep bonus
    """
    result = ChallengeProgressResult()
    if increment <= 0:
        return result

    challenges = await store.list_daily_challenges(user_id, challenge_date)
    if not challenges:
        return result
    template_by_id = {t.id: t for t in await store.list_daily_templates()}

    for challenge in challenges:
        template = template_by_id.get(challenge.template_id)
        if template is None or challenge.completed:
            continue
        if template.challenge_type != challenge_type or template.target_value == ALL_HABITS_TARGET:
            continue

        challenge.progress += increment
        if challenge.progress >= template.target_value:
            completion = _complete(challenge, template.name, template.key, template.xp_reward, now)
            result.completed.append(completion)
            result.challenge_xp += template.xp_reward
            logger.info(f"User {user_id} completed daily challenge '{template.key}' (+{template.xp_reward} XP)")
        await store.save_daily_challenge(challenge)
        result.updated += 1

    if result.completed:
        result.sweep_bonus = await _check_daily_sweep(store, user_id, challenges, challenge_date, now)

    return result


async def check_all_habits_challenge(
    store: GamificationStore,
    user_id: str,
    challenge_date: date,
    now: datetime,
) -> ChallengeProgressResult:
    """
    Complete the "complete all habits" challenge once every habit is done for the date
    """
    result = ChallengeProgressResult()
    challenges = await store.list_daily_challenges(user_id, challenge_date)
    template_by_id = {t.id: t for t in await store.list_daily_templates()}

    target = next(
        (
            c for c in challenges
            if not c.completed
            and c.template_id in template_by_id
            and template_by_id[c.template_id].target_value == ALL_HABITS_TARGET
        ),
        None,
    )
    if target is None:
        return result

    habits = await store.list_habits(user_id)
    if not habits:
        return result
    done_ids = await store.list_completed_entity_ids(user_id, EntityType.HABIT, challenge_date)
    done_count = sum(1 for habit in habits if habit.id in done_ids)

    target.progress = max(target.progress, done_count)
    template = template_by_id[target.template_id]
    if done_count == len(habits):
        result.completed.append(_complete(target, template.name, template.key, template.xp_reward, now))
        result.challenge_xp += template.xp_reward
        logger.info(f"User {user_id} completed all habits for {challenge_date} (+{template.xp_reward} XP)")
    await store.save_daily_challenge(target)
    result.updated = 1

    if result.completed:
        result.sweep_bonus = await _check_daily_sweep(store, user_id, challenges, challenge_date, now)

    return result


async def update_weekly_challenge_progress(
    store: GamificationStore,
    user_id: str,
    challenge_type: ChallengeType,
    increment: int,
    week_start: date,
    now: datetime,
) -> ChallengeProgressResult:
    """
    Advance the user's weekly challenge for the week if its type matches

    `streak` challenges advance by one per newly active day and
    `daily_challenges` by one per daily sweep; the caller passes those.
    """
    result = ChallengeProgressResult()
    if increment <= 0:
        return result

    challenge = await store.get_weekly_challenge(user_id, week_start)
    if challenge is None or challenge.completed:
        return result
    template = next(
        (t for t in await store.list_weekly_templates() if t.id == challenge.template_id), None
    )
    if template is None or template.challenge_type != challenge_type:
        return result

    challenge.progress += increment
    if challenge.progress >= template.target_value:
        result.weekly_completed = _complete(challenge, template.name, template.key, template.xp_reward, now)
        result.challenge_xp += template.xp_reward
        logger.info(f"User {user_id} completed weekly challenge '{template.key}' (+{template.xp_reward} XP)")
    await store.save_weekly_challenge(challenge)
    result.updated = 1
    return result


async def update_group_challenge_progress(
    store: GamificationStore,
    user_id: str,
    challenge_type: ChallengeType,
    increment: int,
    week_start: date,
    now: datetime,
) -> int:
    """
    Advance this week's challenge in every group the user belongs to

    Completion is stamped here; member rewards are paid by the weekly
    group reset so the request path never writes other users' profiles.

    Returns:
        Number of group challenges advanced
    """
    if increment <= 0:
        return 0

    group_ids = await store.list_user_group_ids(user_id)
    if not group_ids:
        return 0
    template_by_id = {t.id: t for t in await store.list_group_challenge_templates()}

    updated = 0
    for group_id in group_ids:
        challenge = await store.get_group_challenge(group_id, week_start)
        if challenge is None or challenge.completed:
            continue
        template = template_by_id.get(challenge.template_id)
        if template is None or template.challenge_type != challenge_type:
            continue

        challenge.progress += increment
        if challenge.progress >= challenge.target_value:
            challenge.completed = True
            challenge.completed_at = now
            logger.info(f"Group {group_id} completed challenge '{template.name}'")
        await store.save_group_challenge(challenge)
        updated += 1

    return updated


# ============================================
# Queries & Display
# ============================================

async def get_todays_challenges(
    store: GamificationStore,
    user_id: str,
    challenge_date: date,
    week_start: date,
) -> Dict[str, any]:
    """
    Get the user's daily challenges for the date and the week's challenge

    Returns:
        {
            'daily': [{id, key, name, description, difficulty, progress, target, xp_reward, completed}],
            'weekly': {...} | None,
            'all_daily_completed': bool
        }
    """
    daily = await store.list_daily_challenges(user_id, challenge_date)
    template_by_id = {t.id: t for t in await store.list_daily_templates()}
    habit_count = len(await store.list_habits(user_id))

    daily_entries = []
    for challenge in daily:
        template = template_by_id.get(challenge.template_id)
        if template is None:
            continue
        target = habit_count if template.target_value == ALL_HABITS_TARGET else template.target_value
        daily_entries.append({
            "id": challenge.id,
            "key": template.key,
            "name": template.name,
            "description": template.description,
            "difficulty": template.difficulty.value,
            "progress": challenge.progress,
            "target": target,
            "xp_reward": template.xp_reward,
            "completed": challenge.completed,
        })
    daily_entries.sort(key=lambda e: [d.value for d in DIFFICULTY_ORDER].index(e["difficulty"]))

    weekly_entry = None
    weekly = await store.get_weekly_challenge(user_id, week_start)
    if weekly:
        template = next((t for t in await store.list_weekly_templates() if t.id == weekly.template_id), None)
        if template:
            weekly_entry = {
                "id": weekly.id,
                "key": template.key,
                "name": template.name,
                "description": template.description,
                "progress": weekly.progress,
                "target": template.target_value,
                "xp_reward": template.xp_reward,
                "completed": weekly.completed,
            }

    return {
        "daily": daily_entries,
        "weekly": weekly_entry,
        "all_daily_completed": len(daily_entries) >= DAILY_CHALLENGE_COUNT
        and all(e["completed"] for e in daily_entries),
    }


def format_challenge_progress(challenges: Dict[str, any]) -> str:
    """
    Format today's challenges for display

    Args:
        challenges: Output of get_todays_challenges()
    """
    if not challenges["daily"] and not challenges["weekly"]:
        return "No challenges yet today. Check back after the daily reset!"

    lines = ["🎯 TODAY'S CHALLENGES\n"]
    for entry in challenges["daily"]:
        status = "✅" if entry["completed"] else "⬜"
        lines.append(
            f"{status} {entry['name']} ({entry['difficulty']}): "
            f"{min(entry['progress'], entry['target'])}/{entry['target']} · {entry['xp_reward']} XP"
        )
    if challenges["all_daily_completed"]:
        lines.append(f"\n🧹 Daily sweep complete! +{DAILY_SWEEP_BONUS} XP")

    weekly = challenges["weekly"]
    if weekly:
        status = "✅" if weekly["completed"] else "📅"
        lines.append(
            f"\n{status} This week: {weekly['name']}: "
            f"{min(weekly['progress'], weekly['target'])}/{weekly['target']} · {weekly['xp_reward']} XP"
        )

    return "\n".join(lines)
