"""Gamification database queries (PostgreSQL implementation of GamificationStore)"""
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date
from enum import Enum
from typing import Any, AsyncGenerator, Optional, Sequence, Type, TypeVar

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb
from pydantic import BaseModel

from src.config import STARTING_STREAK_FREEZES
from src.db.connection import Database, db
from src.exceptions import wrap_external_exception
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

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _adapt(value: Any) -> Any:
    """Convert model values into something psycopg dumps the way the schema expects"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return Jsonb(value)
    return value


def _params(model: BaseModel, exclude: Optional[set] = None) -> dict:
    return {key: _adapt(value) for key, value in model.model_dump(exclude=exclude).items()}


def _upsert_query(table: str, columns: Sequence[str], conflict: Sequence[str]) -> sql.Composed:
    """INSERT ... ON CONFLICT (...) DO UPDATE SET every non-key column"""
    updates = [c for c in columns if c not in conflict]
    return sql.SQL(
        "INSERT INTO {table} ({cols}) VALUES ({values}) "
        "ON CONFLICT ({conflict}) DO UPDATE SET {updates}"
    ).format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
        values=sql.SQL(", ").join(map(sql.Placeholder, columns)),
        conflict=sql.SQL(", ").join(map(sql.Identifier, conflict)),
        updates=sql.SQL(", ").join(
            sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in updates
        ),
    )


def _insert_ignore_query(table: str, columns: Sequence[str], conflict: Sequence[str]) -> sql.Composed:
    """INSERT ... ON CONFLICT (...) DO NOTHING; rowcount tells whether the row is new"""
    return sql.SQL(
        "INSERT INTO {table} ({cols}) VALUES ({values}) ON CONFLICT ({conflict}) DO NOTHING"
    ).format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
        values=sql.SQL(", ").join(map(sql.Placeholder, columns)),
        conflict=sql.SQL(", ").join(map(sql.Identifier, conflict)),
    )


class PostgresGamificationStore:
    """
    GamificationStore backed by the psycopg connection pool

    Outside transaction() every method runs in its own transaction. Inside
    it, every method runs on the one connection the scope holds and nothing
    is committed until the scope exits cleanly. Unique constraints in
    migrations/001_gamification_core.sql are the idempotency guards: the
    insert_* methods use ON CONFLICT DO NOTHING and report whether a row
    was written.
    """

    def __init__(self, database: Database = db):
        self.db = database
        self._active: ContextVar[Optional[psycopg.AsyncConnection]] = ContextVar(
            f"gamification_tx_{id(self)}", default=None
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        """One commit for everything awaited inside; joins an enclosing scope"""
        if self._active.get() is not None:
            yield
            return

        try:
            async with self.db.connection() as conn:
                async with conn.transaction():
                    token = self._active.set(conn)
                    try:
                        yield
                    finally:
                        self._active.reset(token)
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation="transaction") from e

    @asynccontextmanager
    async def _cursor(
        self, operation: str, user_id: Optional[str] = None
    ) -> AsyncGenerator[psycopg.AsyncCursor, None]:
        """Cursor that commits on success and maps psycopg errors to QueryError/ConnectionError"""
        try:
            active = self._active.get()
            if active is not None:
                async with active.cursor() as cur:
                    yield cur
                return

            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    yield cur
                await conn.commit()
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation=operation, user_id=user_id) from e

    async def _fetch_one(
        self, model: Type[ModelT], query: str, params: Sequence[Any], operation: str,
        user_id: Optional[str] = None,
    ) -> Optional[ModelT]:
        async with self._cursor(operation, user_id) as cur:
            await cur.execute(query, params)
            row = await cur.fetchone()
        return model.model_validate(row) if row else None

    async def _fetch_all(
        self, model: Type[ModelT], query: str, params: Sequence[Any], operation: str,
        user_id: Optional[str] = None,
    ) -> list[ModelT]:
        async with self._cursor(operation, user_id) as cur:
            await cur.execute(query, params)
            rows = await cur.fetchall()
        return [model.model_validate(row) for row in rows]

    async def _upsert(
        self, table: str, model: BaseModel, conflict: Sequence[str], operation: str,
        user_id: Optional[str] = None, exclude: Optional[set] = None,
    ) -> None:
        params = _params(model, exclude)
        async with self._cursor(operation, user_id) as cur:
            await cur.execute(_upsert_query(table, list(params), conflict), params)

    async def _insert_ignore(
        self, table: str, model: BaseModel, conflict: Sequence[str], operation: str,
        user_id: Optional[str] = None, exclude: Optional[set] = None,
    ) -> bool:
        params = _params(model, exclude)
        async with self._cursor(operation, user_id) as cur:
            await cur.execute(_insert_ignore_query(table, list(params), conflict), params)
            return cur.rowcount == 1

    # ==========================================
    # Profiles
    # ==========================================

    async def get_or_create_profile(self, user_id: str, for_update: bool = False) -> UserProfile:
        """
        Get a user's profile, creating the zero profile on first touch

        for_update=True takes the row lock (SELECT ... FOR UPDATE); it only
        outlives this call inside transaction().
        """
        async with self._cursor("get_or_create_profile", user_id) as cur:
            await cur.execute(
                """
                INSERT INTO user_profiles (user_id)
                VALUES (%s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id,)
            )
            if cur.rowcount == 1:
                logger.info(f"Created gamification profile for user {user_id}")
            query = "SELECT * FROM user_profiles WHERE user_id = %s"
            if for_update:
                query += " FOR UPDATE"
            await cur.execute(query, (user_id,))
            row = await cur.fetchone()
        return UserProfile.model_validate(row)

    async def save_profile(self, profile: UserProfile) -> None:
        await self._upsert("user_profiles", profile, ["user_id"], "save_profile", profile.user_id)

    async def list_user_ids(self) -> list[str]:
        async with self._cursor("list_user_ids") as cur:
            await cur.execute("SELECT user_id FROM user_profiles ORDER BY user_id")
            rows = await cur.fetchall()
        return [row["user_id"] for row in rows]

    # ==========================================
    # Completable entities
    # ==========================================

    async def get_task(self, user_id: str, task_id: str) -> Optional[Task]:
        return await self._fetch_one(
            Task,
            "SELECT id, user_id, title, priority, xp_value FROM tasks WHERE id = %s AND user_id = %s",
            (task_id, user_id), "get_task", user_id,
        )

    async def get_habit(self, user_id: str, habit_id: str) -> Optional[Habit]:
        return await self._fetch_one(
            Habit,
            """
            SELECT id, user_id, name, xp_value, current_streak, longest_streak, last_completed_date
            FROM habits
            WHERE id = %s AND user_id = %s
            """,
            (habit_id, user_id), "get_habit", user_id,
        )

    async def list_habits(self, user_id: str) -> list[Habit]:
        return await self._fetch_all(
            Habit,
            """
            SELECT id, user_id, name, xp_value, current_streak, longest_streak, last_completed_date
            FROM habits
            WHERE user_id = %s
            ORDER BY id
            """,
            (user_id,), "list_habits", user_id,
        )

    async def save_habit(self, habit: Habit) -> None:
        await self._upsert("habits", habit, ["id"], "save_habit", habit.user_id)

    async def get_schedule_block(self, user_id: str, block_id: str) -> Optional[ScheduleBlock]:
        return await self._fetch_one(
            ScheduleBlock,
            "SELECT id, user_id, title, xp_value FROM schedule_blocks WHERE id = %s AND user_id = %s",
            (block_id, user_id), "get_schedule_block", user_id,
        )

    # ==========================================
    # Completion records
    # ==========================================

    async def get_completion(
        self, entity_type: EntityType, entity_id: str, completed_date: date
    ) -> Optional[CompletionRecord]:
        return await self._fetch_one(
            CompletionRecord,
            """
            SELECT * FROM completions
            WHERE entity_type = %s AND entity_id = %s AND completed_date = %s
            """,
            (entity_type.value, entity_id, completed_date), "get_completion",
        )

    async def insert_completion(self, record: CompletionRecord) -> bool:
        return await self._insert_ignore(
            "completions", record, ["entity_type", "entity_id", "completed_date"],
            "insert_completion", record.user_id, exclude={"created_at"},
        )

    async def delete_completion(
        self, entity_type: EntityType, entity_id: str, completed_date: date
    ) -> Optional[CompletionRecord]:
        """Delete a completion and return the deleted row (None if it was not there)"""
        return await self._fetch_one(
            CompletionRecord,
            """
            DELETE FROM completions
            WHERE entity_type = %s AND entity_id = %s AND completed_date = %s
            RETURNING *
            """,
            (entity_type.value, entity_id, completed_date), "delete_completion",
        )

    async def list_completion_dates(self, entity_type: EntityType, entity_id: str) -> list[date]:
        async with self._cursor("list_completion_dates") as cur:
            await cur.execute(
                """
                SELECT completed_date FROM completions
                WHERE entity_type = %s AND entity_id = %s
                ORDER BY completed_date DESC
                """,
                (entity_type.value, entity_id)
            )
            rows = await cur.fetchall()
        return [row["completed_date"] for row in rows]

    async def list_completed_entity_ids(
        self, user_id: str, entity_type: EntityType, completed_date: date
    ) -> set[str]:
        async with self._cursor("list_completed_entity_ids", user_id) as cur:
            await cur.execute(
                """
                SELECT entity_id FROM completions
                WHERE user_id = %s AND entity_type = %s AND completed_date = %s
                """,
                (user_id, entity_type.value, completed_date)
            )
            rows = await cur.fetchall()
        return {row["entity_id"] for row in rows}

    # ==========================================
    # Activity log
    # ==========================================

    async def get_activity(self, user_id: str, activity_date: date) -> Optional[ActivityLog]:
        return await self._fetch_one(
            ActivityLog,
            "SELECT * FROM user_activity_log WHERE user_id = %s AND activity_date = %s",
            (user_id, activity_date), "get_activity", user_id,
        )

    async def save_activity(self, activity: ActivityLog) -> None:
        await self._upsert(
            "user_activity_log", activity, ["user_id", "activity_date"], "save_activity", activity.user_id
        )

    async def list_activity(self, user_id: str) -> list[ActivityLog]:
        return await self._fetch_all(
            ActivityLog,
            "SELECT * FROM user_activity_log WHERE user_id = %s ORDER BY activity_date DESC",
            (user_id,), "list_activity", user_id,
        )

    # ==========================================
    # Streak freezes
    # ==========================================

    async def get_or_create_freeze_inventory(self, user_id: str) -> StreakFreezeInventory:
        async with self._cursor("get_or_create_freeze_inventory", user_id) as cur:
            await cur.execute(
                """
                INSERT INTO user_streak_freezes (user_id, available_freezes)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id, STARTING_STREAK_FREEZES)
            )
            await cur.execute("SELECT * FROM user_streak_freezes WHERE user_id = %s", (user_id,))
            row = await cur.fetchone()
        return StreakFreezeInventory.model_validate(row)

    async def save_freeze_inventory(self, inventory: StreakFreezeInventory) -> None:
        await self._upsert(
            "user_streak_freezes", inventory, ["user_id"], "save_freeze_inventory", inventory.user_id
        )

    # ==========================================
    # Achievements
    # ==========================================

    async def list_achievements(self) -> list[Achievement]:
        return await self._fetch_all(
            Achievement, "SELECT * FROM achievements ORDER BY sort_order, id", (), "list_achievements"
        )

    async def list_user_achievements(self, user_id: str) -> list[UserAchievement]:
        return await self._fetch_all(
            UserAchievement,
            "SELECT * FROM user_achievements WHERE user_id = %s",
            (user_id,), "list_user_achievements", user_id,
        )

    async def save_user_achievement(self, progress: UserAchievement) -> None:
        await self._upsert(
            "user_achievements", progress, ["user_id", "achievement_id"],
            "save_user_achievement", progress.user_id,
        )

    async def delete_user_achievements(self, user_id: str) -> int:
        async with self._cursor("delete_user_achievements", user_id) as cur:
            await cur.execute("DELETE FROM user_achievements WHERE user_id = %s", (user_id,))
            return cur.rowcount

    # ==========================================
    # Challenge templates
    # ==========================================

    async def list_daily_templates(self) -> list[DailyChallengeTemplate]:
        return await self._fetch_all(
            DailyChallengeTemplate, "SELECT * FROM daily_challenge_templates ORDER BY id", (),
            "list_daily_templates",
        )

    async def list_weekly_templates(self) -> list[WeeklyChallengeTemplate]:
        return await self._fetch_all(
            WeeklyChallengeTemplate, "SELECT * FROM weekly_challenge_templates ORDER BY id", (),
            "list_weekly_templates",
        )

    async def list_group_challenge_templates(self) -> list[GroupChallengeTemplate]:
        return await self._fetch_all(
            GroupChallengeTemplate, "SELECT * FROM group_challenge_templates ORDER BY id", (),
            "list_group_challenge_templates",
        )

    # ==========================================
    # Challenge instances
    # ==========================================

    async def list_daily_challenges(self, user_id: str, challenge_date: date) -> list[DailyChallenge]:
        return await self._fetch_all(
            DailyChallenge,
            """
            SELECT * FROM user_daily_challenges
            WHERE user_id = %s AND challenge_date = %s
            ORDER BY template_id
            """,
            (user_id, challenge_date), "list_daily_challenges", user_id,
        )

    async def insert_daily_challenge(self, challenge: DailyChallenge) -> bool:
        return await self._insert_ignore(
            "user_daily_challenges", challenge, ["user_id", "challenge_date", "template_id"],
            "insert_daily_challenge", challenge.user_id,
        )

    async def save_daily_challenge(self, challenge: DailyChallenge) -> None:
        await self._upsert(
            "user_daily_challenges", challenge, ["id"], "save_daily_challenge", challenge.user_id
        )

    async def get_weekly_challenge(self, user_id: str, week_start: date) -> Optional[WeeklyChallenge]:
        return await self._fetch_one(
            WeeklyChallenge,
            "SELECT * FROM user_weekly_challenges WHERE user_id = %s AND week_start = %s",
            (user_id, week_start), "get_weekly_challenge", user_id,
        )

    async def insert_weekly_challenge(self, challenge: WeeklyChallenge) -> bool:
        return await self._insert_ignore(
            "user_weekly_challenges", challenge, ["user_id", "week_start"],
            "insert_weekly_challenge", challenge.user_id,
        )

    async def save_weekly_challenge(self, challenge: WeeklyChallenge) -> None:
        await self._upsert(
            "user_weekly_challenges", challenge, ["id"], "save_weekly_challenge", challenge.user_id
        )

    # ==========================================
    # Once-per-day guards
    # ==========================================

    async def insert_daily_sweep(self, sweep: DailySweep) -> bool:
        return await self._insert_ignore(
            "daily_sweeps", sweep, ["user_id", "sweep_date"], "insert_daily_sweep",
            sweep.user_id, exclude={"created_at"},
        )

    async def insert_planning_award(self, award: PlanningAward) -> bool:
        return await self._insert_ignore(
            "planning_awards", award, ["user_id", "kind", "award_date"], "insert_planning_award",
            award.user_id,
        )

    # ==========================================
    # Groups
    # ==========================================

    async def list_groups(self) -> list[Group]:
        return await self._fetch_all(Group, "SELECT id, name FROM groups ORDER BY id", (), "list_groups")

    async def list_group_members(self, group_id: str) -> list[GroupMember]:
        return await self._fetch_all(
            GroupMember,
            "SELECT group_id, user_id, weekly_xp FROM group_members WHERE group_id = %s ORDER BY user_id",
            (group_id,), "list_group_members",
        )

    async def list_user_group_ids(self, user_id: str) -> list[str]:
        async with self._cursor("list_user_group_ids", user_id) as cur:
            await cur.execute(
                "SELECT group_id FROM group_members WHERE user_id = %s ORDER BY group_id",
                (user_id,)
            )
            rows = await cur.fetchall()
        return [row["group_id"] for row in rows]

    async def add_group_weekly_xp(self, group_id: str, user_id: str, delta: int) -> None:
        """Adjust a member's weekly XP, never below zero"""
        async with self._cursor("add_group_weekly_xp", user_id) as cur:
            await cur.execute(
                """
                UPDATE group_members
                SET weekly_xp = GREATEST(weekly_xp + %s, 0)
                WHERE group_id = %s AND user_id = %s
                """,
                (delta, group_id, user_id)
            )

    async def reset_group_weekly_xp(self, group_id: str) -> None:
        async with self._cursor("reset_group_weekly_xp") as cur:
            await cur.execute("UPDATE group_members SET weekly_xp = 0 WHERE group_id = %s", (group_id,))

    async def insert_group_weekly_history(self, history: GroupWeeklyHistory) -> bool:
        return await self._insert_ignore(
            "group_weekly_history", history, ["group_id", "week_start"], "insert_group_weekly_history"
        )

    async def get_group_challenge(self, group_id: str, week_start: date) -> Optional[GroupChallenge]:
        return await self._fetch_one(
            GroupChallenge,
            "SELECT * FROM group_challenges WHERE group_id = %s AND week_start = %s",
            (group_id, week_start), "get_group_challenge",
        )

    async def insert_group_challenge(self, challenge: GroupChallenge) -> bool:
        return await self._insert_ignore(
            "group_challenges", challenge, ["group_id", "week_start"], "insert_group_challenge"
        )

    async def save_group_challenge(self, challenge: GroupChallenge) -> None:
        await self._upsert("group_challenges", challenge, ["id"], "save_group_challenge")

    # ==========================================
    # XP ledger
    # ==========================================

    async def add_xp_transaction(self, transaction: XpTransaction) -> None:
        async with self._cursor("add_xp_transaction", transaction.user_id) as cur:
            await cur.execute(
                """
                INSERT INTO xp_transactions (user_id, amount, source_type, source_id, reason, awarded_at)
                VALUES (%s, %s, %s, %s, %s, COALESCE(%s, CURRENT_TIMESTAMP))
                """,
                (
                    transaction.user_id,
                    transaction.amount,
                    transaction.source_type,
                    transaction.source_id,
                    transaction.reason,
                    transaction.awarded_at,
                )
            )

    async def list_xp_transactions(self, user_id: str, limit: int = 50) -> list[XpTransaction]:
        return await self._fetch_all(
            XpTransaction,
            """
            SELECT user_id, amount, source_type, source_id, reason, awarded_at
            FROM xp_transactions
            WHERE user_id = %s
            ORDER BY awarded_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit), "list_xp_transactions", user_id,
        )
