"""Unit tests for XP and Leveling System (src/gamification/xp_system.py)"""
import pytest

from src.exceptions import InvariantViolationError, ValidationError
from src.gamification.xp_system import (
    apply_xp_delta,
    award_xp,
    calculate_level_from_xp,
    calculate_xp_with_bonuses,
    check_xp_invariants,
    get_focus_xp,
    get_level,
    get_permanent_xp_bonus,
    get_streak_multiplier,
    get_title_for_level,
    get_user_xp,
    get_xp_history,
    grant_xp,
    revoke_xp,
    xp_for_level,
)


# ============================================================================
# Level Calculation Tests
# ============================================================================

@pytest.mark.parametrize("xp_total,expected_level", [
    (0, 1),
    (-50, 1),
    (99, 1),
    (100, 2),
    (299, 2),
    (300, 3),
    (999, 4),
    (1000, 5),
    (4499, 9),
    (4500, 10),
])
def test_get_level_boundaries(xp_total, expected_level):
    """Level L starts at exactly 50 * L * (L - 1) XP"""
    assert get_level(xp_total) == expected_level


def test_get_level_monotonic():
    """More XP never means a lower level"""
    levels = [get_level(xp) for xp in range(0, 20000, 7)]
    assert levels == sorted(levels)


def test_xp_for_level_matches_get_level():
    for level in range(1, 60):
        start = xp_for_level(level)
        assert get_level(start) == level
        if start > 0:
            assert get_level(start - 1) == level - 1


def test_calculate_level_from_xp_mid_level():
    """Test progress halfway into level 2"""
    result = calculate_level_from_xp(150)

    assert result["current_level"] == 2
    assert result["level_title"] == "Novice"
    assert result["xp_in_current_level"] == 50
    assert result["xp_to_next_level"] == 150
    assert result["total_xp_for_next_level"] == 300
    assert result["progress_percent"] == 25


def test_calculate_level_from_xp_negative():
    """Negative totals are treated as zero"""
    result = calculate_level_from_xp(-10)
    assert result["current_level"] == 1
    assert result["xp_in_current_level"] == 0


def test_level_titles():
    assert get_title_for_level(1) == "Novice"
    assert get_title_for_level(5) == "Apprentice"
    assert get_title_for_level(10) == "Scholar"
    assert get_title_for_level(99) == "Ascended"


# ============================================================================
# Bonus Tests
# ============================================================================

@pytest.mark.parametrize("streak,multiplier", [
    (0, 1.0),
    (2, 1.0),
    (3, 1.05),
    (7, 1.10),
    (14, 1.15),
    (21, 1.20),
    (30, 1.30),
    (60, 1.40),
    (100, 1.50),
    (365, 1.50),
])
def test_get_streak_multiplier(streak, multiplier):
    assert get_streak_multiplier(streak) == pytest.approx(multiplier)


def test_get_permanent_xp_bonus():
    assert get_permanent_xp_bonus(29) == 0
    assert get_permanent_xp_bonus(30) == 5
    assert get_permanent_xp_bonus(39) == 5
    assert get_permanent_xp_bonus(40) == 10


def test_calculate_xp_with_bonuses_no_streak():
    breakdown = calculate_xp_with_bonuses(15, 0, 1)
    assert breakdown.total_xp == 15
    assert breakdown.streak_bonus == 0
    assert breakdown.permanent_bonus == 0


def test_calculate_xp_with_bonuses_floors_each_step():
    """15 * 1.05 = 15.75 floors to 15; 15 * 1.10 = 16.5 floors to 16"""
    assert calculate_xp_with_bonuses(15, 3, 1).total_xp == 15
    breakdown = calculate_xp_with_bonuses(15, 7, 1)
    assert breakdown.total_xp == 16
    assert breakdown.streak_bonus == 1


def test_calculate_xp_with_bonuses_streak_and_perk():
    """Streak multiplier first, then the permanent perk"""
    breakdown = calculate_xp_with_bonuses(15, 100, 40)
    # 15 * 1.5 = 22 (floored), 22 * 1.10 = 24 (floored)
    assert breakdown.streak_bonus == 7
    assert breakdown.permanent_bonus == 2
    assert breakdown.total_xp == 24

    assert calculate_xp_with_bonuses(100, 30, 30).total_xp == 136


def test_calculate_xp_with_bonuses_negative_base():
    with pytest.raises(ValidationError):
        calculate_xp_with_bonuses(-1, 0, 1)


def test_apply_xp_delta_floors_at_zero():
    assert apply_xp_delta(10, -20) == (0, 1)
    assert apply_xp_delta(90, 15) == (105, 2)


# ============================================================================
# Activity XP Tests
# ============================================================================

@pytest.mark.parametrize("minutes,base,bonus", [
    (0, 0, 0),
    (1, 1, 0),
    (5, 3, 0),
    (25, 15, 0),
    (29, 17, 0),
    (30, 18, 5),
    (45, 27, 5),
    (60, 36, 10),
    (90, 54, 15),
    (120, 72, 15),
])
def test_get_focus_xp(minutes, base, bonus):
    """round(0.6 * minutes) plus only the highest milestone reached"""
    result = get_focus_xp(minutes)
    assert result["base_xp"] == base
    assert result["milestone_bonus"] == bonus
    assert result["total_xp"] == base + bonus


def test_get_focus_xp_negative_minutes():
    with pytest.raises(ValidationError):
        get_focus_xp(-5)


def test_check_xp_invariants():
    check_xp_invariants(100, 2)

    with pytest.raises(InvariantViolationError):
        check_xp_invariants(-1, 1)
    with pytest.raises(InvariantViolationError):
        check_xp_invariants(100, 1)


# ============================================================================
# Award Tests
# ============================================================================

@pytest.mark.asyncio
async def test_award_xp_basic(empty_store, test_user_id):
    """Test awarding XP to a fresh user"""
    result = await award_xp(empty_store, test_user_id, 15, "task", source_id="task-1")

    assert result.xp_awarded == 15
    assert result.old_total_xp == 0
    assert result.new_total_xp == 15
    assert result.new_level == 1
    assert result.leveled_up is False

    transactions = await empty_store.list_xp_transactions(test_user_id)
    assert len(transactions) == 1
    assert transactions[0].amount == 15
    assert transactions[0].source_id == "task-1"


@pytest.mark.asyncio
async def test_award_xp_applies_streak_bonus(empty_store, test_user_id):
    profile = await empty_store.get_or_create_profile(test_user_id)
    profile.current_streak = 7
    profile.longest_streak = 7
    await empty_store.save_profile(profile)

    result = await award_xp(empty_store, test_user_id, 15, "task")

    assert result.xp_awarded == 16
    assert result.breakdown.streak_multiplier == pytest.approx(1.10)


@pytest.mark.asyncio
async def test_award_xp_with_level_up(empty_store, test_user_id):
    profile = await empty_store.get_or_create_profile(test_user_id)
    profile.xp_total = 90
    await empty_store.save_profile(profile)

    result = await award_xp(empty_store, test_user_id, 15, "task")

    assert result.new_total_xp == 105
    assert result.old_level == 1
    assert result.new_level == 2
    assert result.leveled_up is True


@pytest.mark.asyncio
async def test_award_xp_zero_amount(empty_store, test_user_id):
    with pytest.raises(ValidationError):
        await award_xp(empty_store, test_user_id, 0, "task")


@pytest.mark.asyncio
async def test_grant_xp_is_flat(empty_store, test_user_id):
    profile = await empty_store.get_or_create_profile(test_user_id)
    profile.current_streak = 100
    profile.longest_streak = 100
    await empty_store.save_profile(profile)

    result = await grant_xp(empty_store, test_user_id, 25, "weekly_rank", reason="Place 1")

    assert result.xp_awarded == 25
    assert result.breakdown.streak_bonus == 0


@pytest.mark.asyncio
async def test_revoke_xp_floors_at_zero(empty_store, test_user_id):
    await grant_xp(empty_store, test_user_id, 10, "task")

    result = await revoke_xp(empty_store, test_user_id, 25, "task")

    assert result.new_total_xp == 0
    assert result.xp_awarded == -10
    transactions = await empty_store.list_xp_transactions(test_user_id)
    assert transactions[0].amount == -10


@pytest.mark.asyncio
async def test_get_user_xp(empty_store, test_user_id):
    await grant_xp(empty_store, test_user_id, 150, "bonus")

    info = await get_user_xp(empty_store, test_user_id)

    assert info["total_xp"] == 150
    assert info["current_level"] == 2
    assert info["progress_percent"] == 25


@pytest.mark.asyncio
async def test_get_xp_history_newest_first(empty_store, test_user_id):
    await grant_xp(empty_store, test_user_id, 10, "daily_review")
    await grant_xp(empty_store, test_user_id, 25, "weekly_planning")

    history = await get_xp_history(empty_store, test_user_id)

    assert [t.amount for t in history] == [25, 10]
