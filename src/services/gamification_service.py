"""
GamificationService - Gamification Business Logic

Runs every write path (task, habit, schedule block, focus session,
planning) through one fixed pipeline:

1. Read and lock the profile
2. Global streak transition (keyed on the clock's today)
3. XP computation (pure: streak multiplier, perk bonus, milestone)
4. Completion record insert (the idempotency guard)
5. Challenge progress (daily, weekly, group; sweep bonus)
6. Achievement check on the projected profile
7. Single profile write
8. Activity log, XP ledger, group weekly XP, freeze earning

Each write path runs inside one store.transaction(): a failure at any step
rolls back every step before it, so a retry is evaluated from scratch.

Un-completion reverses the stored XP snapshot and recomputes streaks by
scan. Streak milestone XP lives on the activity day and is revoked only
when that day ends up with no actions. Challenge and achievement XP are
never reversed.
"""

import logging
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime, date

from src.exceptions import RecordNotFoundError, ValidationError
from src.gamification.achievement_system import check_and_award_achievements, get_user_achievements
from src.gamification.challenges import (
    check_all_habits_challenge,
    get_todays_challenges,
    update_daily_challenge_progress,
    update_group_challenge_progress,
    update_weekly_challenge_progress,
)
from src.gamification.store import GamificationStore
from src.gamification.streak_system import (
    apply_global_streak,
    get_user_streaks,
    maybe_earn_streak_freeze,
    recalculate_global_streak,
    recalculate_habit_streak,
    update_habit_streak,
    use_streak_freeze,
)
from src.gamification.xp_system import (
    LONG_FOCUS_SESSION_MINUTES,
    PLANNING_XP,
    apply_xp_delta,
    calculate_level_from_xp,
    calculate_xp_with_bonuses,
    check_xp_invariants,
    get_focus_xp,
    get_permanent_xp_bonus,
    grant_xp,
)
from src.models.gamification import (
    ActionResult,
    ActivityLog,
    ChallengeProgressResult,
    ChallengeType,
    CompletionRecord,
    EntityType,
    Habit,
    PlanningAward,
    PlanningKind,
    StreakFreezeResult,
    TaskPriority,
    UserProfile,
    XpTransaction,
)
from src.utils.datetime_helpers import Clock, get_week_start

logger = logging.getLogger(__name__)

EARLY_BIRD_HOUR = 7  # completed before 07:00
NIGHT_OWL_HOUR = 22  # completed at or after 22:00
MIN_PLANNED_TASKS = 3

# Activity log fields bumped per entity type
ACTIVITY_FIELDS = {
    EntityType.TASK: "tasks_completed",
    EntityType.HABIT: "habits_completed",
}


class GamificationService:
    """
    Service for gamification features.

    Responsibilities:
    - XP calculation and awarding
    - Global and habit streak tracking
    - Challenge progress and the daily sweep bonus
    - Achievement checking and unlocking
    - Exact reversal of completions
    """

    def __init__(self, store: GamificationStore, clock: Optional[Clock] = None):
        """
        Initialize GamificationService.

        Args:
            store: Gamification store (PostgreSQL or in-memory)
            clock: Date source; defaults to the configured timezone
        """
        self.store = store
        self.clock = clock or Clock()
        logger.debug("GamificationService initialized")

    # ==========================================
    # Tasks
    # ==========================================

    async def complete_task(
        self,
        user_id: str,
        task_id: str,
        completed_at: Optional[datetime] = None,
    ) -> ActionResult:
        """
        Process gamification for a task completion.

        Args:
            user_id: User ID
            task_id: Task ID (must belong to the user)
            completed_at: Local completion time, for early bird / night owl

        Returns:
            ActionResult; already_completed=True if the task was done today
        """
        task = await self.store.get_task(user_id, task_id)
        if task is None:
            raise RecordNotFoundError(
                f"Task {task_id} not found", record_type="Task", record_id=task_id,
                user_id=user_id, operation="complete_task",
            )

        counters = {"lifetime_tasks_completed": 1}
        events = [(ChallengeType.TASKS, 1)]
        if task.priority == TaskPriority.HIGH:
            counters["lifetime_high_priority_completed"] = 1
            events.append((ChallengeType.HIGH_PRIORITY, 1))
        if completed_at is not None:
            if completed_at.hour < EARLY_BIRD_HOUR:
                counters["lifetime_early_bird_tasks"] = 1
            elif completed_at.hour >= NIGHT_OWL_HOUR:
                counters["lifetime_night_owl_tasks"] = 1

        return await self._process_action(
            user_id,
            base_xp=task.xp_value,
            source_type="task",
            source_id=task_id,
            counters=counters,
            challenge_events=events,
            completion=(EntityType.TASK, task_id, self.clock.today()),
        )

    async def uncomplete_task(
        self,
        user_id: str,
        task_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        """
        Undo a task completion (the most recent one unless a date is given)
        """
        task = await self.store.get_task(user_id, task_id)
        if task is None:
            raise RecordNotFoundError(
                f"Task {task_id} not found", record_type="Task", record_id=task_id,
                user_id=user_id, operation="uncomplete_task",
            )
        if completed_date is None:
            dates = await self.store.list_completion_dates(EntityType.TASK, task_id)
            if not dates:
                return await self._unchanged_result(user_id, not_completed=True)
            completed_date = dates[0]

        return await self._reverse_completion(user_id, EntityType.TASK, task_id, completed_date)

    # ==========================================
    # Habits
    # ==========================================

    async def complete_habit(
        self,
        user_id: str,
        habit_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        """
        Process gamification for a habit completion on a date (default today).

        Past dates are allowed and fix up the habit streak by scan; the
        global streak is always credited to today.
        """
        habit = await self._get_habit(user_id, habit_id, "complete_habit")
        completed_date = self._resolve_date(completed_date)

        return await self._process_action(
            user_id,
            base_xp=habit.xp_value,
            source_type="habit",
            source_id=habit_id,
            counters={"lifetime_habits_completed": 1},
            challenge_events=[(ChallengeType.HABITS, 1)],
            completion=(EntityType.HABIT, habit_id, completed_date),
            habit=habit,
        )

    async def uncomplete_habit(
        self,
        user_id: str,
        habit_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        habit = await self._get_habit(user_id, habit_id, "uncomplete_habit")
        completed_date = self._resolve_date(completed_date)
        return await self._reverse_completion(user_id, EntityType.HABIT, habit_id, completed_date, habit=habit)

    async def toggle_habit(
        self,
        user_id: str,
        habit_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        """Complete the habit for the date, or undo it if already completed"""
        completed_date = self._resolve_date(completed_date)
        existing = await self.store.get_completion(EntityType.HABIT, habit_id, completed_date)
        if existing:
            return await self.uncomplete_habit(user_id, habit_id, completed_date)
        return await self.complete_habit(user_id, habit_id, completed_date)

    # ==========================================
    # Schedule blocks
    # ==========================================

    async def complete_schedule_block(
        self,
        user_id: str,
        block_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        block = await self.store.get_schedule_block(user_id, block_id)
        if block is None:
            raise RecordNotFoundError(
                f"Schedule block {block_id} not found", record_type="ScheduleBlock",
                record_id=block_id, user_id=user_id, operation="complete_schedule_block",
            )
        completed_date = self._resolve_date(completed_date)

        return await self._process_action(
            user_id,
            base_xp=block.xp_value,
            source_type="schedule_block",
            source_id=block_id,
            counters={"lifetime_schedule_blocks_completed": 1},
            challenge_events=[],
            completion=(EntityType.SCHEDULE_BLOCK, block_id, completed_date),
        )

    async def uncomplete_schedule_block(
        self,
        user_id: str,
        block_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        block = await self.store.get_schedule_block(user_id, block_id)
        if block is None:
            raise RecordNotFoundError(
                f"Schedule block {block_id} not found", record_type="ScheduleBlock",
                record_id=block_id, user_id=user_id, operation="uncomplete_schedule_block",
            )
        completed_date = self._resolve_date(completed_date)
        return await self._reverse_completion(user_id, EntityType.SCHEDULE_BLOCK, block_id, completed_date)

    async def toggle_schedule_block(
        self,
        user_id: str,
        block_id: str,
        completed_date: Optional[date] = None,
    ) -> ActionResult:
        completed_date = self._resolve_date(completed_date)
        existing = await self.store.get_completion(EntityType.SCHEDULE_BLOCK, block_id, completed_date)
        if existing:
            return await self.uncomplete_schedule_block(user_id, block_id, completed_date)
        return await self.complete_schedule_block(user_id, block_id, completed_date)

    # ==========================================
    # Focus sessions & planning
    # ==========================================

    async def complete_focus_session(
        self,
        user_id: str,
        minutes: int,
        session_id: Optional[str] = None,
    ) -> ActionResult:
        """
        Process gamification for a finished focus session.

        XP is round(0.6 * minutes) plus the highest milestone bonus, then
        streak and perk bonuses.
        """
        if minutes <= 0:
            raise ValidationError(
                "Focus session must last at least one minute", field="minutes", value=minutes,
                user_id=user_id, operation="complete_focus_session",
            )
        focus_xp = get_focus_xp(minutes)

        counters = {"lifetime_focus_minutes": minutes}
        if minutes >= LONG_FOCUS_SESSION_MINUTES:
            counters["lifetime_long_focus_sessions"] = 1

        return await self._process_action(
            user_id,
            base_xp=focus_xp["total_xp"],
            source_type="focus",
            source_id=session_id,
            counters=counters,
            challenge_events=[(ChallengeType.FOCUS, minutes)],
            focus_minutes=minutes,
        )

    async def award_planning_xp(
        self,
        user_id: str,
        kind: str,
        award_date: Optional[date] = None,
        tasks_planned: int = 0,
    ) -> ActionResult:
        """
        Flat XP for a daily review, daily plan (3+ tasks) or weekly plan.

        Paid once per user, kind and date. Does not touch the streak.
        """
        try:
            planning_kind = PlanningKind(kind)
        except ValueError as e:
            raise ValidationError(
                f"Unknown planning kind '{kind}'", field="kind", value=kind,
                user_id=user_id, operation="award_planning_xp",
            ) from e

        if planning_kind == PlanningKind.DAILY_PLANNING and tasks_planned < MIN_PLANNED_TASKS:
            raise ValidationError(
                f"Plan at least {MIN_PLANNED_TASKS} tasks to earn planning XP",
                field="tasks_planned", value=tasks_planned,
                user_id=user_id, operation="award_planning_xp",
            )

        award_date = award_date or self.clock.today()
        xp = PLANNING_XP[planning_kind.value]
        async with self.store.transaction():
            await self.store.get_or_create_profile(user_id, for_update=True)
            inserted = await self.store.insert_planning_award(PlanningAward(
                user_id=user_id, kind=planning_kind, award_date=award_date, xp_awarded=xp,
            ))
            if not inserted:
                logger.debug(f"{planning_kind.value} XP already awarded to user {user_id} for {award_date}")
                return await self._unchanged_result(user_id, already_completed=True)

            award = await grant_xp(
                self.store, user_id, xp, planning_kind.value,
                reason=f"{planning_kind.value.replace('_', ' ').title()} for {award_date}",
            )
            await self._credit_groups(user_id, xp, get_week_start(self.clock.today()), self.clock.now())
            profile = await self.store.get_or_create_profile(user_id)

        return ActionResult(
            action_xp=xp,
            xp_total=award.new_total_xp,
            level=award.new_level,
            leveled_up=award.leveled_up,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
        )

    # ==========================================
    # Achievement-only events
    # ==========================================

    async def record_brain_dumps_processed(self, user_id: str, count: int = 1) -> ActionResult:
        """Count processed brain dump items toward Inbox Zero"""
        return await self._record_counter(user_id, "lifetime_brain_dumps_processed", count)

    async def record_perfect_week(self, user_id: str) -> ActionResult:
        """Count a week where every planned task was finished"""
        return await self._record_counter(user_id, "lifetime_perfect_weeks", 1)

    async def _record_counter(self, user_id: str, field: str, amount: int) -> ActionResult:
        if amount <= 0:
            raise ValidationError("Count must be positive", field=field, value=amount, user_id=user_id)

        async with self.store.transaction():
            profile = await self.store.get_or_create_profile(user_id, for_update=True)
            old_level = profile.level
            setattr(profile, field, getattr(profile, field) + amount)

            unlocks = await check_and_award_achievements(self.store, profile, self.clock.now())
            achievement_xp = sum(u.xp_reward for u in unlocks)
            await self.store.save_profile(profile)
            await self._record_transactions(user_id, None, None, 0, 0, achievement_xp)

        return ActionResult(
            achievement_xp=achievement_xp,
            xp_total=profile.xp_total,
            level=profile.level,
            leveled_up=profile.level > old_level,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
            achievements_unlocked=unlocks,
        )

    # ==========================================
    # Streak freezes & stats
    # ==========================================

    async def use_streak_freeze(self, user_id: str) -> StreakFreezeResult:
        async with self.store.transaction():
            return await use_streak_freeze(self.store, user_id, self.clock.today())

    async def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        """
        Get a user's complete gamification state.

        Returns:
            {
                'xp': calculate_level_from_xp(...) + 'total_xp',
                'streaks': get_user_streaks(...),
                'achievements': get_user_achievements(...),
                'challenges': get_todays_challenges(...)
            }
        """
        profile = await self.store.get_or_create_profile(user_id)
        today = self.clock.today()

        xp_info = calculate_level_from_xp(profile.xp_total)
        xp_info["total_xp"] = profile.xp_total
        xp_info["permanent_xp_bonus"] = profile.permanent_xp_bonus

        return {
            "xp": xp_info,
            "streaks": await get_user_streaks(self.store, user_id),
            "achievements": await get_user_achievements(self.store, user_id),
            "challenges": await get_todays_challenges(self.store, user_id, today, get_week_start(today)),
        }

    # ==========================================
    # Pipeline
    # ==========================================

    async def _process_action(
        self,
        user_id: str,
        base_xp: int,
        source_type: str,
        source_id: Optional[str],
        counters: Dict[str, int],
        challenge_events: List[Tuple[ChallengeType, int]],
        completion: Optional[Tuple[EntityType, str, date]] = None,
        habit: Optional[Habit] = None,
        focus_minutes: int = 0,
    ) -> ActionResult:
        if base_xp <= 0:
            raise ValidationError(
                "Base XP must be positive", field="base_xp", value=base_xp,
                user_id=user_id, operation=source_type,
            )

        async with self.store.transaction():
            return await self._apply_action(
                user_id, base_xp, source_type, source_id, counters,
                challenge_events, completion, habit, focus_minutes,
            )

    async def _apply_action(
        self,
        user_id: str,
        base_xp: int,
        source_type: str,
        source_id: Optional[str],
        counters: Dict[str, int],
        challenge_events: List[Tuple[ChallengeType, int]],
        completion: Optional[Tuple[EntityType, str, date]],
        habit: Optional[Habit],
        focus_minutes: int,
    ) -> ActionResult:
        today = self.clock.today()
        now = self.clock.now()
        week_start = get_week_start(today)

        # 1. Read and lock profile
        profile = await self.store.get_or_create_profile(user_id, for_update=True)
        old_level = profile.level

        # 2. Global streak
        streak_update = apply_global_streak(profile, today)
        milestone_xp = streak_update.milestone_xp

        # 3. Action XP (the milestone belongs to the day, not to this completion)
        breakdown = calculate_xp_with_bonuses(base_xp, profile.current_streak, profile.level)
        action_xp = breakdown.total_xp

        # 4. Completion record
        if completion is not None:
            entity_type, entity_id, completed_date = completion
            inserted = await self.store.insert_completion(CompletionRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                completed_date=completed_date,
                user_id=user_id,
                xp_awarded=action_xp,
                activity_date=today,
                counter_deltas=counters,
                created_at=now,
            ))
            if not inserted:
                logger.debug(f"{entity_type.value} {entity_id} already completed for {completed_date}")
                return await self._unchanged_result(user_id, already_completed=True)

        profile.xp_total, profile.level = apply_xp_delta(profile.xp_total, action_xp + milestone_xp)
        _apply_counters(profile, counters, 1)

        habit_streak = None
        if habit is not None:
            habit_update = await update_habit_streak(self.store, habit, completion[2])
            habit_streak = habit_update.current_streak

        # 5. Challenges
        challenges = await self._advance_challenges(
            user_id,
            challenge_events,
            new_active_day=streak_update.changed,
            check_habits=habit is not None,
            today=today,
            week_start=week_start,
            now=now,
        )
        completed = list(challenges.completed)
        if challenges.weekly_completed:
            completed.append(challenges.weekly_completed)
        profile.lifetime_quests_completed += len(completed)
        challenge_xp = challenges.total_xp
        profile.xp_total, profile.level = apply_xp_delta(profile.xp_total, challenge_xp)

        # 6. Achievements (adds its own XP to the profile)
        unlocks = await check_and_award_achievements(self.store, profile, now)
        achievement_xp = sum(u.xp_reward for u in unlocks)

        profile.permanent_xp_bonus = get_permanent_xp_bonus(profile.level)
        check_xp_invariants(profile.xp_total, profile.level)

        # 7. Profile write
        await self.store.save_profile(profile)

        # 8. Derived records
        total_xp = action_xp + milestone_xp + challenge_xp + achievement_xp
        await self._record_activity(user_id, today, total_xp, completion, focus_minutes, milestone_xp)
        await self._record_transactions(
            user_id, source_type, source_id, action_xp, challenge_xp, achievement_xp, milestone_xp,
        )
        await self._credit_groups(user_id, total_xp, week_start, now)

        freeze_earned = False
        if streak_update.changed:
            freeze_earned = await maybe_earn_streak_freeze(self.store, user_id, profile.current_streak, today)

        logger.info(
            f"User {user_id} {source_type} processed: +{action_xp} action XP, "
            f"+{milestone_xp} streak milestone XP, "
            f"+{challenge_xp} challenge XP, +{achievement_xp} achievement XP "
            f"(total {profile.xp_total}, level {profile.level}, streak {profile.current_streak})"
        )

        return ActionResult(
            action_xp=action_xp,
            streak_milestone_xp=milestone_xp,
            challenge_xp=challenge_xp,
            achievement_xp=achievement_xp,
            xp_breakdown=breakdown,
            xp_total=profile.xp_total,
            level=profile.level,
            leveled_up=profile.level > old_level,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
            streak_milestone=streak_update.milestone_reached,
            habit_streak=habit_streak,
            challenges_completed=completed,
            sweep_bonus_awarded=challenges.sweep_bonus > 0,
            achievements_unlocked=unlocks,
            freeze_earned=freeze_earned,
        )

    async def _reverse_completion(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_id: str,
        completed_date: date,
        habit: Optional[Habit] = None,
    ) -> ActionResult:
        """
        Delete a completion record and subtract its XP snapshot.

        Streaks are recomputed by scan; lifetime counters drop by what the
        completion added (floored at zero). A streak milestone paid on the
        completion's activity day is revoked only when that day has no
        actions left.
        """
        async with self.store.transaction():
            return await self._apply_reversal(user_id, entity_type, entity_id, completed_date, habit)

    async def _apply_reversal(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_id: str,
        completed_date: date,
        habit: Optional[Habit],
    ) -> ActionResult:
        profile = await self.store.get_or_create_profile(user_id, for_update=True)

        existing = await self.store.get_completion(entity_type, entity_id, completed_date)
        if existing is None or existing.user_id != user_id:
            logger.debug(f"{entity_type.value} {entity_id} not completed for {completed_date}")
            return await self._unchanged_result(user_id, not_completed=True)

        record = await self.store.delete_completion(entity_type, entity_id, completed_date)
        if record is None:
            return await self._unchanged_result(user_id, not_completed=True)

        activity = await self.store.get_activity(user_id, record.activity_date)
        milestone_xp = 0
        if activity is not None:
            activity.actions_count = max(0, activity.actions_count - 1)
            field = ACTIVITY_FIELDS.get(entity_type)
            if field:
                setattr(activity, field, max(0, getattr(activity, field) - 1))
            if activity.actions_count == 0 and activity.milestone_xp:
                milestone_xp, activity.milestone_xp = activity.milestone_xp, 0

        old_total = profile.xp_total
        profile.xp_total, profile.level = apply_xp_delta(profile.xp_total, -(record.xp_awarded + milestone_xp))
        removed = old_total - profile.xp_total
        milestone_removed = min(milestone_xp, removed)
        action_removed = removed - milestone_removed
        profile.permanent_xp_bonus = get_permanent_xp_bonus(profile.level)
        _apply_counters(profile, record.counter_deltas, -1)

        if activity is not None:
            activity.xp_earned = max(0, activity.xp_earned - removed)
            await self.store.save_activity(activity)

        await recalculate_global_streak(self.store, profile)

        habit_streak = None
        if habit is not None:
            habit_update = await recalculate_habit_streak(self.store, habit)
            habit_streak = habit_update.current_streak

        check_xp_invariants(profile.xp_total, profile.level)
        await self.store.save_profile(profile)

        now = self.clock.now()
        entries = [
            (action_removed, entity_type.value, entity_id, f"Completion undone for {completed_date}"),
            (milestone_removed, "streak_milestone", None, f"Streak milestone revoked for {record.activity_date}"),
        ]
        for amount, entry_type, entry_id, reason in entries:
            if amount:
                await self.store.add_xp_transaction(XpTransaction(
                    user_id=user_id,
                    amount=-amount,
                    source_type=entry_type,
                    source_id=entry_id,
                    reason=reason,
                    awarded_at=now,
                ))
        if removed:
            for group_id in await self.store.list_user_group_ids(user_id):
                await self.store.add_group_weekly_xp(group_id, user_id, -removed)

        logger.info(
            f"User {user_id} undid {entity_type.value} {entity_id} ({completed_date}): "
            f"-{removed} XP ({milestone_removed} streak milestone), "
            f"total {profile.xp_total}, streak {profile.current_streak}"
        )

        return ActionResult(
            action_xp=-action_removed,
            streak_milestone_xp=-milestone_removed,
            xp_total=profile.xp_total,
            level=profile.level,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
            habit_streak=habit_streak,
        )

    async def _advance_challenges(
        self,
        user_id: str,
        events: List[Tuple[ChallengeType, int]],
        new_active_day: bool,
        check_habits: bool,
        today: date,
        week_start: date,
        now: datetime,
    ) -> ChallengeProgressResult:
        combined = ChallengeProgressResult()

        for challenge_type, increment in events:
            _merge(combined, await update_daily_challenge_progress(
                self.store, user_id, challenge_type, increment, today, now))
            _merge(combined, await update_weekly_challenge_progress(
                self.store, user_id, challenge_type, increment, week_start, now))
            await update_group_challenge_progress(
                self.store, user_id, challenge_type, increment, week_start, now)

        if check_habits:
            _merge(combined, await check_all_habits_challenge(self.store, user_id, today, now))

        if new_active_day:
            _merge(combined, await update_weekly_challenge_progress(
                self.store, user_id, ChallengeType.STREAK, 1, week_start, now))

        if combined.sweep_bonus:
            _merge(combined, await update_weekly_challenge_progress(
                self.store, user_id, ChallengeType.DAILY_CHALLENGES, 1, week_start, now))

        return combined

    async def _record_activity(
        self,
        user_id: str,
        today: date,
        xp_earned: int,
        completion: Optional[Tuple[EntityType, str, date]],
        focus_minutes: int,
        milestone_xp: int = 0,
    ) -> None:
        activity = await self.store.get_activity(user_id, today) or ActivityLog(
            user_id=user_id, activity_date=today
        )
        activity.actions_count += 1
        activity.xp_earned += xp_earned
        activity.milestone_xp += milestone_xp
        activity.focus_minutes += focus_minutes
        if completion is not None:
            field = ACTIVITY_FIELDS.get(completion[0])
            if field:
                setattr(activity, field, getattr(activity, field) + 1)
        await self.store.save_activity(activity)

    async def _record_transactions(
        self,
        user_id: str,
        source_type: Optional[str],
        source_id: Optional[str],
        action_xp: int,
        challenge_xp: int,
        achievement_xp: int,
        milestone_xp: int = 0,
    ) -> None:
        """One ledger entry per XP source so they stay distinguishable"""
        awarded_at = self.clock.now()
        entries = [
            (action_xp, source_type, source_id, f"{source_type} completed"),
            (milestone_xp, "streak_milestone", None, "Streak milestone reached"),
            (challenge_xp, "challenge", None, "Challenge rewards"),
            (achievement_xp, "achievement", None, "Achievement unlocks"),
        ]
        for amount, entry_type, entry_id, reason in entries:
            if amount:
                await self.store.add_xp_transaction(XpTransaction(
                    user_id=user_id,
                    amount=amount,
                    source_type=entry_type,
                    source_id=entry_id,
                    reason=reason,
                    awarded_at=awarded_at,
                ))

    async def _credit_groups(self, user_id: str, xp: int, week_start: date, now: datetime) -> None:
        if xp <= 0:
            return
        group_ids = await self.store.list_user_group_ids(user_id)
        for group_id in group_ids:
            await self.store.add_group_weekly_xp(group_id, user_id, xp)
        if group_ids:
            await update_group_challenge_progress(self.store, user_id, ChallengeType.XP, xp, week_start, now)

    # ==========================================
    # Helpers
    # ==========================================

    async def _get_habit(self, user_id: str, habit_id: str, operation: str) -> Habit:
        habit = await self.store.get_habit(user_id, habit_id)
        if habit is None:
            raise RecordNotFoundError(
                f"Habit {habit_id} not found", record_type="Habit", record_id=habit_id,
                user_id=user_id, operation=operation,
            )
        return habit

    def _resolve_date(self, completed_date: Optional[date]) -> date:
        today = self.clock.today()
        if completed_date is None:
            return today
        if completed_date > today:
            raise ValidationError(
                "Cannot complete for a future date", field="completed_date", value=str(completed_date),
            )
        return completed_date

    async def _unchanged_result(
        self,
        user_id: str,
        already_completed: bool = False,
        not_completed: bool = False,
    ) -> ActionResult:
        profile = await self.store.get_or_create_profile(user_id)
        return ActionResult(
            already_completed=already_completed,
            not_completed=not_completed,
            xp_total=profile.xp_total,
            level=profile.level,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
        )


def _apply_counters(profile: UserProfile, counters: Dict[str, int], sign: int) -> None:
    """Add (sign=1) or remove (sign=-1) lifetime counter deltas, flooring at zero"""
    for field, amount in counters.items():
        setattr(profile, field, max(0, getattr(profile, field) + sign * amount))


def _merge(target: ChallengeProgressResult, other: ChallengeProgressResult) -> None:
    target.updated += other.updated
    target.completed.extend(other.completed)
    target.challenge_xp += other.challenge_xp
    target.sweep_bonus += other.sweep_bonus
    if other.weekly_completed:
        target.weekly_completed = other.weekly_completed
