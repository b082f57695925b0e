"""
In-memory gamification store

Implements GamificationStore with plain dicts. Used by the test suite and
for local runs without PostgreSQL. Records are copied on the way in and
out so callers never mutate stored state by accident.

transaction() snapshots every table on entry and restores the snapshot if
the block raises, so a failed pipeline leaves nothing behind, as with
PostgreSQL.
"""

import copy
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncGenerator, Optional

from src.models.gamification import (
    Achievement,
    ActivityLog,
    CompletionRecord,
    DailyChallenge,
    DailyChallengeTemplate,
    DailySweep,
    EntityType,
    Group,
    GroupChallenge,
    GroupChallengeTemplate,
    GroupMember,
    GroupWeeklyHistory,
    Habit,
    PlanningAward,
    ScheduleBlock,
    StreakFreezeInventory,
    Task,
    UserAchievement,
    UserProfile,
    WeeklyChallenge,
    WeeklyChallengeTemplate,
    XpTransaction,
)
from src.config import STARTING_STREAK_FREEZES

logger = logging.getLogger(__name__)


def _copy(record):
    return record.model_copy(deep=True) if record is not None else None


class InMemoryGamificationStore:
    """Dict-backed store keyed the same way as the SQL unique constraints"""

    def __init__(self):
        self._profiles: dict[str, UserProfile] = {}
        self._tasks: dict[str, Task] = {}
        self._habits: dict[str, Habit] = {}
        self._blocks: dict[str, ScheduleBlock] = {}
        self._completions: dict[tuple, CompletionRecord] = {}
        self._activity: dict[tuple, ActivityLog] = {}
        self._freezes: dict[str, StreakFreezeInventory] = {}
        self._achievements: dict[str, Achievement] = {}
        self._user_achievements: dict[tuple, UserAchievement] = {}
        self._daily_templates: dict[str, DailyChallengeTemplate] = {}
        self._weekly_templates: dict[str, WeeklyChallengeTemplate] = {}
        self._group_templates: dict[str, GroupChallengeTemplate] = {}
        self._daily_challenges: dict[tuple, DailyChallenge] = {}
        self._weekly_challenges: dict[tuple, WeeklyChallenge] = {}
        self._sweeps: dict[tuple, DailySweep] = {}
        self._planning_awards: dict[tuple, PlanningAward] = {}
        self._groups: dict[str, Group] = {}
        self._members: dict[tuple, GroupMember] = {}
        self._group_history: dict[tuple, GroupWeeklyHistory] = {}
        self._group_challenges: dict[tuple, GroupChallenge] = {}
        self._transactions: list[XpTransaction] = []
        self._transaction_depth = 0

    # ==========================================
    # Seeding helpers (not part of the protocol)
    # ==========================================

    def add_task(self, task: Task) -> Task:
        self._tasks[task.id] = _copy(task)
        return task

    def add_habit(self, habit: Habit) -> Habit:
        self._habits[habit.id] = _copy(habit)
        return habit

    def add_schedule_block(self, block: ScheduleBlock) -> ScheduleBlock:
        self._blocks[block.id] = _copy(block)
        return block

    def add_achievement(self, achievement: Achievement) -> None:
        self._achievements[achievement.id] = _copy(achievement)

    def add_daily_template(self, template: DailyChallengeTemplate) -> None:
        self._daily_templates[template.id] = _copy(template)

    def add_weekly_template(self, template: WeeklyChallengeTemplate) -> None:
        self._weekly_templates[template.id] = _copy(template)

    def add_group_template(self, template: GroupChallengeTemplate) -> None:
        self._group_templates[template.id] = _copy(template)

    def add_group(self, group: Group, member_ids: list[str]) -> Group:
        self._groups[group.id] = _copy(group)
        for user_id in member_ids:
            self._members[(group.id, user_id)] = GroupMember(group_id=group.id, user_id=user_id)
        return group

    def get_group_history(self, group_id: str, week_start: date) -> Optional[GroupWeeklyHistory]:
        return _copy(self._group_history.get((group_id, week_start)))

    def get_daily_sweep(self, user_id: str, sweep_date: date) -> Optional[DailySweep]:
        return _copy(self._sweeps.get((user_id, sweep_date)))

    # ==========================================
    # Unit of work
    # ==========================================

    def _tables(self) -> dict:
        return {
            name: value for name, value in vars(self).items()
            if name.startswith("_") and isinstance(value, (dict, list))
        }

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        if self._transaction_depth:
            self._transaction_depth += 1
            try:
                yield
            finally:
                self._transaction_depth -= 1
            return

        snapshot = copy.deepcopy(self._tables())
        self._transaction_depth = 1
        try:
            yield
        except BaseException:
            for name, table in snapshot.items():
                setattr(self, name, table)
            logger.debug("Rolled back in-memory transaction")
            raise
        finally:
            self._transaction_depth = 0

    # ==========================================
    # Profiles
    # ==========================================

    async def get_or_create_profile(self, user_id: str, for_update: bool = False) -> UserProfile:
        if user_id not in self._profiles:
            self._profiles[user_id] = UserProfile(user_id=user_id)
            logger.info(f"Created gamification profile for user {user_id}")
        return _copy(self._profiles[user_id])

    async def save_profile(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = _copy(profile)

    async def list_user_ids(self) -> list[str]:
        return sorted(self._profiles)

    # ==========================================
    # Completable entities
    # ==========================================

    async def get_task(self, user_id: str, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return _copy(task) if task and task.user_id == user_id else None

    async def get_habit(self, user_id: str, habit_id: str) -> Optional[Habit]:
        habit = self._habits.get(habit_id)
        return _copy(habit) if habit and habit.user_id == user_id else None

    async def list_habits(self, user_id: str) -> list[Habit]:
        return [_copy(h) for h in self._habits.values() if h.user_id == user_id]

    async def save_habit(self, habit: Habit) -> None:
        self._habits[habit.id] = _copy(habit)

    async def get_schedule_block(self, user_id: str, block_id: str) -> Optional[ScheduleBlock]:
        block = self._blocks.get(block_id)
        return _copy(block) if block and block.user_id == user_id else None

    # ==========================================
    # Completion records
    # ==========================================

    async def get_completion(
        self, entity_type: EntityType, entity_id: str, completed_date: date
    ) -> Optional[CompletionRecord]:
        return _copy(self._completions.get((entity_type, entity_id, completed_date)))

    async def insert_completion(self, record: CompletionRecord) -> bool:
        key = (record.entity_type, record.entity_id, record.completed_date)
        if key in self._completions:
            return False
        self._completions[key] = _copy(record)
        return True

    async def delete_completion(
        self, entity_type: EntityType, entity_id: str, completed_date: date
    ) -> Optional[CompletionRecord]:
        return self._completions.pop((entity_type, entity_id, completed_date), None)

    async def list_completion_dates(self, entity_type: EntityType, entity_id: str) -> list[date]:
        dates = [
            key[2] for key in self._completions
            if key[0] == entity_type and key[1] == entity_id
        ]
        return sorted(dates, reverse=True)

    async def list_completed_entity_ids(
        self, user_id: str, entity_type: EntityType, completed_date: date
    ) -> set[str]:
        return {
            record.entity_id for record in self._completions.values()
            if record.user_id == user_id
            and record.entity_type == entity_type
            and record.completed_date == completed_date
        }

    # ==========================================
    # Activity log
    # ==========================================

    async def get_activity(self, user_id: str, activity_date: date) -> Optional[ActivityLog]:
        return _copy(self._activity.get((user_id, activity_date)))

    async def save_activity(self, activity: ActivityLog) -> None:
        self._activity[(activity.user_id, activity.activity_date)] = _copy(activity)

    async def list_activity(self, user_id: str) -> list[ActivityLog]:
        logs = [_copy(log) for (uid, _), log in self._activity.items() if uid == user_id]
        return sorted(logs, key=lambda log: log.activity_date, reverse=True)

    # ==========================================
    # Streak freezes
    # ==========================================

    async def get_or_create_freeze_inventory(self, user_id: str) -> StreakFreezeInventory:
        if user_id not in self._freezes:
            self._freezes[user_id] = StreakFreezeInventory(
                user_id=user_id, available_freezes=STARTING_STREAK_FREEZES
            )
        return _copy(self._freezes[user_id])

    async def save_freeze_inventory(self, inventory: StreakFreezeInventory) -> None:
        self._freezes[inventory.user_id] = _copy(inventory)

    # ==========================================
    # Achievements
    # ==========================================

    async def list_achievements(self) -> list[Achievement]:
        return sorted((_copy(a) for a in self._achievements.values()), key=lambda a: a.sort_order)

    async def list_user_achievements(self, user_id: str) -> list[UserAchievement]:
        return [_copy(ua) for (uid, _), ua in self._user_achievements.items() if uid == user_id]

    async def save_user_achievement(self, progress: UserAchievement) -> None:
        self._user_achievements[(progress.user_id, progress.achievement_id)] = _copy(progress)

    async def delete_user_achievements(self, user_id: str) -> int:
        keys = [key for key in self._user_achievements if key[0] == user_id]
        for key in keys:
            del self._user_achievements[key]
        return len(keys)

    # ==========================================
    # Challenge templates and instances
    # ==========================================

    async def list_daily_templates(self) -> list[DailyChallengeTemplate]:
        return [_copy(t) for t in self._daily_templates.values()]

    async def list_weekly_templates(self) -> list[WeeklyChallengeTemplate]:
        return [_copy(t) for t in self._weekly_templates.values()]

    async def list_group_challenge_templates(self) -> list[GroupChallengeTemplate]:
        return [_copy(t) for t in self._group_templates.values()]

    async def list_daily_challenges(self, user_id: str, challenge_date: date) -> list[DailyChallenge]:
        return [
            _copy(c) for (uid, day, _), c in self._daily_challenges.items()
            if uid == user_id and day == challenge_date
        ]

    async def insert_daily_challenge(self, challenge: DailyChallenge) -> bool:
        key = (challenge.user_id, challenge.challenge_date, challenge.template_id)
        if key in self._daily_challenges:
            return False
        self._daily_challenges[key] = _copy(challenge)
        return True

    async def save_daily_challenge(self, challenge: DailyChallenge) -> None:
        key = (challenge.user_id, challenge.challenge_date, challenge.template_id)
        self._daily_challenges[key] = _copy(challenge)

    async def get_weekly_challenge(self, user_id: str, week_start: date) -> Optional[WeeklyChallenge]:
        return _copy(self._weekly_challenges.get((user_id, week_start)))

    async def insert_weekly_challenge(self, challenge: WeeklyChallenge) -> bool:
        key = (challenge.user_id, challenge.week_start)
        if key in self._weekly_challenges:
            return False
        self._weekly_challenges[key] = _copy(challenge)
        return True

    async def save_weekly_challenge(self, challenge: WeeklyChallenge) -> None:
        self._weekly_challenges[(challenge.user_id, challenge.week_start)] = _copy(challenge)

    # ==========================================
    # Once-per-day guards
    # ==========================================

    async def insert_daily_sweep(self, sweep: DailySweep) -> bool:
        key = (sweep.user_id, sweep.sweep_date)
        if key in self._sweeps:
            return False
        self._sweeps[key] = _copy(sweep)
        return True

    async def insert_planning_award(self, award: PlanningAward) -> bool:
        key = (award.user_id, award.kind, award.award_date)
        if key in self._planning_awards:
            return False
        self._planning_awards[key] = _copy(award)
        return True

    # ==========================================
    # Groups
    # ==========================================

    async def list_groups(self) -> list[Group]:
        return [_copy(g) for g in self._groups.values()]

    async def list_group_members(self, group_id: str) -> list[GroupMember]:
        return [_copy(m) for (gid, _), m in self._members.items() if gid == group_id]

    async def list_user_group_ids(self, user_id: str) -> list[str]:
        return [gid for (gid, uid) in self._members if uid == user_id]

    async def add_group_weekly_xp(self, group_id: str, user_id: str, delta: int) -> None:
        member = self._members.get((group_id, user_id))
        if member is None:
            return
        member.weekly_xp = max(0, member.weekly_xp + delta)

    async def reset_group_weekly_xp(self, group_id: str) -> None:
        for (gid, _), member in self._members.items():
            if gid == group_id:
                member.weekly_xp = 0

    async def insert_group_weekly_history(self, history: GroupWeeklyHistory) -> bool:
        key = (history.group_id, history.week_start)
        if key in self._group_history:
            return False
        self._group_history[key] = _copy(history)
        return True

    async def get_group_challenge(self, group_id: str, week_start: date) -> Optional[GroupChallenge]:
        return _copy(self._group_challenges.get((group_id, week_start)))

    async def insert_group_challenge(self, challenge: GroupChallenge) -> bool:
        key = (challenge.group_id, challenge.week_start)
        if key in self._group_challenges:
            return False
        self._group_challenges[key] = _copy(challenge)
        return True

    async def save_group_challenge(self, challenge: GroupChallenge) -> None:
        self._group_challenges[(challenge.group_id, challenge.week_start)] = _copy(challenge)

    # ==========================================
    # XP ledger
    # ==========================================

    async def add_xp_transaction(self, transaction: XpTransaction) -> None:
        self._transactions.append(_copy(transaction))

    async def list_xp_transactions(self, user_id: str, limit: int = 50) -> list[XpTransaction]:
        user_transactions = [_copy(t) for t in self._transactions if t.user_id == user_id]
        return list(reversed(user_transactions))[:limit]
