"""Global test fixtures and utilities for gamification tests"""
import pytest
from datetime import date, datetime, timezone

from src.gamification.achievement_system import DEFAULT_ACHIEVEMENTS
from src.gamification.challenges import (
    DEFAULT_DAILY_TEMPLATES,
    DEFAULT_GROUP_CHALLENGE_TEMPLATES,
    DEFAULT_WEEKLY_TEMPLATES,
)
from src.gamification.memory_store import InMemoryGamificationStore
from src.models.gamification import Habit, ScheduleBlock, Task, TaskPriority
from src.services.gamification_service import GamificationService
from src.utils.datetime_helpers import Clock


# ============================================================================
# Dates
# ============================================================================

@pytest.fixture
def today():
    """A Wednesday, so the week started two days earlier"""
    return date(2026, 3, 11)


@pytest.fixture
def now(today):
    return datetime(today.year, today.month, today.day, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(today):
    return Clock(tz_name="UTC", fixed_today=today)


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def test_user_id():
    """Standard test user ID"""
    return "user-123"


@pytest.fixture
def empty_store():
    """Store with no definitions at all"""
    return InMemoryGamificationStore()


@pytest.fixture
def store():
    """Store seeded with the default achievements and challenge templates"""
    store = InMemoryGamificationStore()
    for achievement in DEFAULT_ACHIEVEMENTS:
        store.add_achievement(achievement)
    for template in DEFAULT_DAILY_TEMPLATES:
        store.add_daily_template(template)
    for template in DEFAULT_WEEKLY_TEMPLATES:
        store.add_weekly_template(template)
    for template in DEFAULT_GROUP_CHALLENGE_TEMPLATES:
        store.add_group_template(template)
    return store


@pytest.fixture
def task(store, test_user_id):
    """A 15 XP medium priority task owned by the test user"""
    return store.add_task(Task(id="task-1", user_id=test_user_id, title="Write report", xp_value=15))


@pytest.fixture
def high_priority_task(store, test_user_id):
    return store.add_task(Task(
        id="task-hp", user_id=test_user_id, title="Ship release",
        priority=TaskPriority.HIGH, xp_value=15,
    ))


@pytest.fixture
def habit(store, test_user_id):
    return store.add_habit(Habit(id="habit-1", user_id=test_user_id, name="Meditate", xp_value=15))


@pytest.fixture
def schedule_block(store, test_user_id):
    return store.add_schedule_block(ScheduleBlock(
        id="block-1", user_id=test_user_id, title="Deep work", xp_value=10,
    ))


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def service(store, clock):
    """GamificationService over the seeded store with a pinned clock"""
    return GamificationService(store, clock)
