"""Gamification Pydantic models: stored records and engine results"""
from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.config import HABIT_XP, SCHEDULE_BLOCK_XP, TASK_XP


def _new_id() -> str:
    return str(uuid4())


class EntityType(str, Enum):
    """Completable entity kinds"""
    TASK = "task"
    HABIT = "habit"
    SCHEDULE_BLOCK = "schedule_block"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AchievementTier(str, Enum):
    """Achievement tiers, lowest first"""
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


TIER_ORDER: list[AchievementTier] = [AchievementTier.BRONZE, AchievementTier.SILVER, AchievementTier.GOLD]


class AchievementCategory(str, Enum):
    STREAK = "streak"
    TASKS = "tasks"
    FOCUS = "focus"
    QUESTS = "quests"
    HABITS = "habits"
    SPECIAL = "special"


class ChallengeDifficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class ChallengeType(str, Enum):
    """What a challenge counts"""
    TASKS = "tasks"
    FOCUS = "focus"
    HABITS = "habits"
    HIGH_PRIORITY = "high_priority"
    STREAK = "streak"
    DAILY_CHALLENGES = "daily_challenges"
    XP = "xp"


class PlanningKind(str, Enum):
    DAILY_REVIEW = "daily_review"
    DAILY_PLANNING = "daily_planning"
    WEEKLY_PLANNING = "weekly_planning"


# ==========================================
# Stored records
# ==========================================

class UserProfile(BaseModel):
    """Per-user gamification state"""
    user_id: str
    xp_total: int = 0
    level: int = 1  # derived from xp_total
    current_streak: int = 0
    longest_streak: int = 0
    last_active_date: Optional[date] = None
    permanent_xp_bonus: int = 0  # percent, from level perks

    # Lifetime counters (achievement stats)
    lifetime_tasks_completed: int = 0
    lifetime_high_priority_completed: int = 0
    lifetime_habits_completed: int = 0
    lifetime_schedule_blocks_completed: int = 0
    lifetime_focus_minutes: int = 0
    lifetime_long_focus_sessions: int = 0
    lifetime_early_bird_tasks: int = 0
    lifetime_night_owl_tasks: int = 0
    lifetime_streak_recoveries: int = 0
    lifetime_quests_completed: int = 0
    lifetime_perfect_weeks: int = 0
    lifetime_brain_dumps_processed: int = 0
    achievements_unlocked: int = 0


class Habit(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str
    xp_value: int = HABIT_XP
    current_streak: int = 0
    longest_streak: int = 0
    last_completed_date: Optional[date] = None


class Task(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    title: str
    priority: TaskPriority = TaskPriority.MEDIUM
    xp_value: int = TASK_XP


class ScheduleBlock(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    title: str
    xp_value: int = SCHEDULE_BLOCK_XP


class CompletionRecord(BaseModel):
    """
    Presence means the entity is completed for `completed_date`.

    `xp_awarded` is the snapshot subtracted on un-completion, so a later
    change to the entity's XP value cannot make a round trip drift. It
    excludes streak milestone XP, which is kept on the ActivityLog.
    """
    entity_type: EntityType
    entity_id: str
    completed_date: date
    user_id: str
    xp_awarded: int
    activity_date: date  # day credited to the global streak
    counter_deltas: dict[str, int] = Field(default_factory=dict)  # lifetime counters to undo
    created_at: Optional[datetime] = None


class ActivityLog(BaseModel):
    """Per user per day activity; the global streak is recomputed from these"""
    user_id: str
    activity_date: date
    actions_count: int = 0
    xp_earned: int = 0
    tasks_completed: int = 0
    habits_completed: int = 0
    focus_minutes: int = 0
    milestone_xp: int = 0  # streak milestone paid on this day
    freeze_used: bool = False


class StreakFreezeInventory(BaseModel):
    user_id: str
    available_freezes: int = 1
    last_freeze_used: Optional[date] = None
    last_freeze_earned: Optional[date] = None


class Achievement(BaseModel):
    """Tiered achievement definition"""
    id: str = Field(default_factory=_new_id)
    key: str
    category: AchievementCategory
    name: str
    description: str
    stat_key: str  # UserProfile counter this achievement watches
    bronze_threshold: int
    silver_threshold: int
    gold_threshold: int
    bronze_xp: int
    silver_xp: int
    gold_xp: int
    sort_order: int = 0

    def threshold_for(self, tier: AchievementTier) -> int:
        return getattr(self, f"{tier.value}_threshold")

    def xp_for(self, tier: AchievementTier) -> int:
        return getattr(self, f"{tier.value}_xp")


class UserAchievement(BaseModel):
    """Per-user progress toward one achievement"""
    user_id: str
    achievement_id: str
    current_tier: Optional[AchievementTier] = None
    progress_value: int = 0
    bronze_unlocked_at: Optional[datetime] = None
    silver_unlocked_at: Optional[datetime] = None
    gold_unlocked_at: Optional[datetime] = None

    def unlocked_at(self, tier: AchievementTier) -> Optional[datetime]:
        return getattr(self, f"{tier.value}_unlocked_at")


class DailyChallengeTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    key: str
    name: str
    description: str = ""
    challenge_type: ChallengeType
    target_value: int  # -1 means "all of the user's habits"
    xp_reward: int
    difficulty: ChallengeDifficulty


class WeeklyChallengeTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    key: str
    name: str
    description: str = ""
    challenge_type: ChallengeType
    target_value: int
    xp_reward: int


class DailyChallenge(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    template_id: str
    challenge_date: date
    progress: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    xp_awarded: int = 0


class WeeklyChallenge(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    template_id: str
    week_start: date
    progress: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    xp_awarded: int = 0


class DailySweep(BaseModel):
    """Existence means the sweep bonus was paid for that user and day"""
    user_id: str
    sweep_date: date
    xp_awarded: int
    created_at: Optional[datetime] = None


class PlanningAward(BaseModel):
    user_id: str
    kind: PlanningKind
    award_date: date
    xp_awarded: int


class Group(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str


class GroupMember(BaseModel):
    group_id: str
    user_id: str
    weekly_xp: int = 0


class GroupChallengeTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    challenge_type: ChallengeType
    target_per_member: int
    xp_reward_per_member: int


class GroupChallenge(BaseModel):
    id: str = Field(default_factory=_new_id)
    group_id: str
    template_id: str
    week_start: date
    target_value: int
    progress: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    rewards_distributed: bool = False


class GroupWeeklyHistory(BaseModel):
    group_id: str
    week_start: date
    week_end: date
    total_xp: int
    member_count: int
    top_user_ids: list[str] = Field(default_factory=list)
    rank_bonuses: list[int] = Field(default_factory=list)


class XpTransaction(BaseModel):
    """Signed ledger entry; the sum for a user equals xp_total unless the zero floor clipped a revoke"""
    user_id: str
    amount: int
    source_type: str
    source_id: Optional[str] = None
    reason: str = ""
    awarded_at: Optional[datetime] = None


# ==========================================
# Engine results
# ==========================================

class XpBreakdown(BaseModel):
    base_xp: int
    streak_multiplier: float = 1.0
    streak_bonus: int = 0
    permanent_bonus: int = 0
    total_xp: int


class XpAwardResult(BaseModel):
    xp_awarded: int
    breakdown: Optional[XpBreakdown] = None
    old_total_xp: int
    new_total_xp: int
    old_level: int
    new_level: int
    leveled_up: bool = False


class StreakUpdate(BaseModel):
    """Outcome of one streak transition"""
    current_streak: int
    longest_streak: int
    last_date: Optional[date] = None
    changed: bool = False
    recovered: bool = False  # reset after a previously live streak
    milestone_reached: Optional[int] = None
    milestone_xp: int = 0


class StreakFreezeResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    available_freezes: int
    current_streak: int


class TierUnlock(BaseModel):
    achievement_key: str
    achievement_name: str
    tier: AchievementTier
    xp_reward: int
    unlocked_at: datetime


class AchievementEvaluation(BaseModel):
    progress: UserAchievement
    unlocked: list[TierUnlock] = Field(default_factory=list)
    xp_awarded: int = 0


class ChallengeCompletion(BaseModel):
    challenge_id: str
    template_key: str
    name: str
    xp_reward: int


class ChallengeProgressResult(BaseModel):
    updated: int = 0
    completed: list[ChallengeCompletion] = Field(default_factory=list)
    challenge_xp: int = 0
    sweep_bonus: int = 0
    weekly_completed: Optional[ChallengeCompletion] = None

    @property
    def total_xp(self) -> int:
        return self.challenge_xp + self.sweep_bonus


class ActionResult(BaseModel):
    """Everything one write path changed, with XP sources kept apart"""
    success: bool = True
    already_completed: bool = False
    not_completed: bool = False
    action_xp: int = 0
    streak_milestone_xp: int = 0
    challenge_xp: int = 0
    achievement_xp: int = 0
    xp_breakdown: Optional[XpBreakdown] = None
    xp_total: int
    level: int
    leveled_up: bool = False
    current_streak: int
    longest_streak: int
    streak_milestone: Optional[int] = None
    habit_streak: Optional[int] = None
    challenges_completed: list[ChallengeCompletion] = Field(default_factory=list)
    sweep_bonus_awarded: bool = False
    achievements_unlocked: list[TierUnlock] = Field(default_factory=list)
    freeze_earned: bool = False

    @property
    def total_xp_gained(self) -> int:
        return self.action_xp + self.streak_milestone_xp + self.challenge_xp + self.achievement_xp


class RolloverError(BaseModel):
    entity_id: str
    operation: str
    error: str


class RolloverReport(BaseModel):
    run_date: date
    processed: int = 0
    created: int = 0
    bonuses_paid: int = 0
    errors: list[RolloverError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
