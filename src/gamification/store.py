"""
Gamification persistence interface

The engines only talk to storage through this protocol. Two
implementations ship: InMemoryGamificationStore (tests, local runs) and
PostgresGamificationStore (psycopg pool).

Conventions:
- get_* returns None when the row is missing
- save_* upserts the whole record
- insert_* returns False when the unique key already exists; these are
  the idempotency guards (completions, sweeps, planning awards, challenge
  instances, weekly history)
- list_completion_dates / list_activity return most recent first
- transaction() groups every call made inside it into one unit that is
  committed together or rolled back together; nested scopes join the
  outer one. get_or_create_profile(for_update=True) locks the profile row
  until that unit ends, so concurrent writes for one user serialize
"""

from datetime import date
from typing import AsyncContextManager, Optional, Protocol

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


class GamificationStore(Protocol):
    # Unit of work
    def transaction(self) -> AsyncContextManager[None]: ...

    # Profiles
    async def get_or_create_profile(self, user_id: str, for_update: bool = False) -> UserProfile: ...
    async def save_profile(self, profile: UserProfile) -> None: ...
    async def list_user_ids(self) -> list[str]: ...

    # Completable entities
    async def get_task(self, user_id: str, task_id: str) -> Optional[Task]: ...
    async def get_habit(self, user_id: str, habit_id: str) -> Optional[Habit]: ...
    async def list_habits(self, user_id: str) -> list[Habit]: ...
    async def save_habit(self, habit: Habit) -> None: ...
    async def get_schedule_block(self, user_id: str, block_id: str) -> Optional[ScheduleBlock]: ...

    # Completion records
    async def get_completion(
        self, entity_type: EntityType, entity_id: str, completed_date: date
    ) -> Optional[CompletionRecord]: ...
    async def insert_completion(self, record: CompletionRecord) -> bool: ...
    async def delete_completion(
        self, entity_type: EntityType, entity_id: str, completed_date: date
    ) -> Optional[CompletionRecord]: ...
    async def list_completion_dates(self, entity_type: EntityType, entity_id: str) -> list[date]: ...
    async def list_completed_entity_ids(
        self, user_id: str, entity_type: EntityType, completed_date: date
    ) -> set[str]: ...

    # Activity log
    async def get_activity(self, user_id: str, activity_date: date) -> Optional[ActivityLog]: ...
    async def save_activity(self, activity: ActivityLog) -> None: ...
    async def list_activity(self, user_id: str) -> list[ActivityLog]: ...

    # Streak freezes
    async def get_or_create_freeze_inventory(self, user_id: str) -> StreakFreezeInventory: ...
    async def save_freeze_inventory(self, inventory: StreakFreezeInventory) -> None: ...

    # Achievements
    async def list_achievements(self) -> list[Achievement]: ...
    async def list_user_achievements(self, user_id: str) -> list[UserAchievement]: ...
    async def save_user_achievement(self, progress: UserAchievement) -> None: ...
    async def delete_user_achievements(self, user_id: str) -> int: ...

    # Challenge templates
    async def list_daily_templates(self) -> list[DailyChallengeTemplate]: ...
    async def list_weekly_templates(self) -> list[WeeklyChallengeTemplate]: ...
    async def list_group_challenge_templates(self) -> list[GroupChallengeTemplate]: ...

    # Challenge instances
    async def list_daily_challenges(self, user_id: str, challenge_date: date) -> list[DailyChallenge]: ...
    async def insert_daily_challenge(self, challenge: DailyChallenge) -> bool: ...
    async def save_daily_challenge(self, challenge: DailyChallenge) -> None: ...
    async def get_weekly_challenge(self, user_id: str, week_start: date) -> Optional[WeeklyChallenge]: ...
    async def insert_weekly_challenge(self, challenge: WeeklyChallenge) -> bool: ...
    async def save_weekly_challenge(self, challenge: WeeklyChallenge) -> None: ...

    # Once-per-day guards
    async def insert_daily_sweep(self, sweep: DailySweep) -> bool: ...
    async def insert_planning_award(self, award: PlanningAward) -> bool: ...

    # Groups
    async def list_groups(self) -> list[Group]: ...
    async def list_group_members(self, group_id: str) -> list[GroupMember]: ...
    async def list_user_group_ids(self, user_id: str) -> list[str]: ...
    async def add_group_weekly_xp(self, group_id: str, user_id: str, delta: int) -> None: ...
    async def reset_group_weekly_xp(self, group_id: str) -> None: ...
    async def insert_group_weekly_history(self, history: GroupWeeklyHistory) -> bool: ...
    async def get_group_challenge(self, group_id: str, week_start: date) -> Optional[GroupChallenge]: ...
    async def insert_group_challenge(self, challenge: GroupChallenge) -> bool: ...
    async def save_group_challenge(self, challenge: GroupChallenge) -> None: ...

    # XP ledger
    async def add_xp_transaction(self, transaction: XpTransaction) -> None: ...
    async def list_xp_transactions(self, user_id: str, limit: int = 50) -> list[XpTransaction]: ...
