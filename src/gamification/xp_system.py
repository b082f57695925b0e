"""
XP and Leveling System

Manages XP awards, level calculations, and bonus multipliers.

Leveling Curve (quadratic):
- Level L starts at 50 * L * (L - 1) cumulative XP
- level = floor(0.5 + sqrt(0.25 + xp / 50)), evaluated in integers
- Level 2 at 100 XP, level 3 at 300, level 5 at 1000, level 10 at 4500

XP Award Rules:
- Task / habit completion: 15 XP (base) + streak and perk bonuses
- Schedule block: 10 XP
- Focus session: round(0.6 * minutes) + milestone bonus (30/60/90 min)
- Planning: daily review 10, daily planning 10, weekly planning 25 (flat)
- Streak milestones: 50-3000 XP
- Challenge rewards, sweep bonus, achievement unlocks: flat, no multipliers
"""

from typing import Dict, List, Optional, Tuple
from datetime import timedelta
from math import isqrt
import logging

from src.exceptions import InvariantViolationError, ValidationError
from src.gamification.store import GamificationStore
from src.models.gamification import XpAwardResult, XpBreakdown, XpTransaction
from src.utils.datetime_helpers import now_utc

logger = logging.getLogger(__name__)


XP_PER_LEVEL_STEP = 50

# (min_level, title), checked highest first
LEVEL_TITLES: List[Tuple[int, str]] = [
    (50, "Ascended"),
    (45, "Transcendent"),
    (40, "Mythic"),
    (35, "Legend"),
    (30, "Grandmaster"),
    (25, "Master"),
    (20, "Expert"),
    (15, "Adept"),
    (10, "Scholar"),
    (5, "Apprentice"),
    (1, "Novice"),
]

# (min_streak_days, multiplier percent), checked highest first
STREAK_MULTIPLIER_BANDS: List[Tuple[int, int]] = [
    (100, 150),
    (60, 140),
    (30, 130),
    (21, 120),
    (14, 115),
    (7, 110),
    (3, 105),
]

# (min_level, permanent bonus percent)
PERMANENT_BONUS_PERKS: List[Tuple[int, int]] = [
    (40, 10),
    (30, 5),
]

# (min_minutes, bonus xp), only the highest reached applies
FOCUS_MILESTONE_BONUSES: List[Tuple[int, int]] = [
    (90, 15),
    (60, 10),
    (30, 5),
]

LONG_FOCUS_SESSION_MINUTES = 60

PLANNING_XP: Dict[str, int] = {
    "daily_review": 10,
    "daily_planning": 10,
    "weekly_planning": 25,
}


def get_level(xp_total: int) -> int:
    """
    Level for a cumulative XP total.

    Largest L with 50 * L * (L - 1) <= xp_total. Negative totals clamp to 1.
    """
    if xp_total <= 0:
        return 1
    steps = xp_total // XP_PER_LEVEL_STEP
    return (1 + isqrt(1 + 4 * steps)) // 2


def xp_for_level(level: int) -> int:
    """Cumulative XP at which `level` starts"""
    if level <= 1:
        return 0
    return XP_PER_LEVEL_STEP * level * (level - 1)


def get_title_for_level(level: int) -> str:
    for min_level, title in LEVEL_TITLES:
        if level >= min_level:
            return title
    return LEVEL_TITLES[-1][1]


def calculate_level_from_xp(total_xp: int) -> Dict[str, any]:
    """
    Calculate level and progress from total XP

    Returns:
        {
            'current_level': int,
            'level_title': str,
            'xp_in_current_level': int,
            'xp_to_next_level': int,
            'total_xp_for_next_level': int,
            'progress_percent': int (0-100)
        }
    """
    total_xp = max(0, total_xp)
    level = get_level(total_xp)
    level_start = xp_for_level(level)
    next_level_start = xp_for_level(level + 1)
    level_span = next_level_start - level_start
    xp_in_level = total_xp - level_start

    return {
        "current_level": level,
        "level_title": get_title_for_level(level),
        "xp_in_current_level": xp_in_level,
        "xp_to_next_level": next_level_start - total_xp,
        "total_xp_for_next_level": next_level_start,
        "progress_percent": (xp_in_level * 100) // level_span,
    }


def get_streak_multiplier(streak_days: int) -> float:
    """Streak multiplier band (1.00 - 1.50) for display"""
    return _streak_multiplier_percent(streak_days) / 100


def _streak_multiplier_percent(streak_days: int) -> int:
    for min_days, percent in STREAK_MULTIPLIER_BANDS:
        if streak_days >= min_days:
            return percent
    return 100


def get_permanent_xp_bonus(level: int) -> int:
    """Permanent bonus percent unlocked by level perks (0, 5 or 10)"""
    for min_level, percent in PERMANENT_BONUS_PERKS:
        if level >= min_level:
            return percent
    return 0


def calculate_xp_with_bonuses(base_xp: int, streak_days: int, level: int) -> XpBreakdown:
    """
    Apply the streak multiplier, then the permanent perk bonus.

    Each step floors, so the total is always an integer and never rounds up.

    Raises:
        ValidationError: If base_xp is negative
    """
    if base_xp < 0:
        raise ValidationError("Base XP cannot be negative", field="base_xp", value=base_xp)

    multiplier_percent = _streak_multiplier_percent(streak_days)
    after_streak = base_xp * multiplier_percent // 100

    bonus_percent = get_permanent_xp_bonus(level)
    total = after_streak * (100 + bonus_percent) // 100

    return XpBreakdown(
        base_xp=base_xp,
        streak_multiplier=multiplier_percent / 100,
        streak_bonus=after_streak - base_xp,
        permanent_bonus=total - after_streak,
        total_xp=total,
    )


def apply_xp_delta(xp_total: int, delta: int) -> Tuple[int, int]:
    """
    Apply a signed XP delta with a floor at zero.

    Returns:
        (new_xp_total, new_level)
    """
    new_total = max(0, xp_total + delta)
    return new_total, get_level(new_total)


def get_focus_xp(minutes: int) -> Dict[str, int]:
    """
    XP for a focus session: round(0.6 * minutes) plus the highest milestone bonus

    Raises:
        ValidationError: If minutes is negative
    """
    if minutes < 0:
        raise ValidationError("Focus minutes cannot be negative", field="minutes", value=minutes)

    # Half-up rounding of 0.6 * minutes in integers
    base = (6 * minutes + 5) // 10
    bonus = 0
    for min_minutes, milestone_xp in FOCUS_MILESTONE_BONUSES:
        if minutes >= min_minutes:
            bonus = milestone_xp
            break

    return {"base_xp": base, "milestone_bonus": bonus, "total_xp": base + bonus}


def check_xp_invariants(xp_total: int, level: int) -> None:
    """
    Raises:
        InvariantViolationError: If the total is negative or the level is stale
    """
    if xp_total < 0:
        raise InvariantViolationError(
            f"xp_total went negative ({xp_total})",
            invariant="xp_total_non_negative",
        )
    if level != get_level(xp_total):
        raise InvariantViolationError(
            f"Level {level} does not match xp_total {xp_total}",
            invariant="level_matches_xp",
        )


async def award_xp(
    store: GamificationStore,
    user_id: str,
    base_xp: int,
    source_type: str,
    source_id: Optional[str] = None,
    reason: str = "Activity completed",
    apply_bonuses: bool = True,
) -> XpAwardResult:
    """
    Award XP to user and check for level up

    Args:
        store: Gamification store
        user_id: User ID
        base_xp: XP before bonuses
        source_type: Type of activity (task, habit, focus, challenge, ...)
        source_id: ID of the source activity (optional)
        reason: Human-readable description
        apply_bonuses: False for flat grants (no streak or perk bonus)

    Returns:
        XpAwardResult with the breakdown, new total and level change
    """
    if base_xp <= 0:
        raise ValidationError("XP award must be positive", field="base_xp", value=base_xp)

    async with store.transaction():
        profile = await store.get_or_create_profile(user_id, for_update=True)
        old_level = profile.level
        old_total_xp = profile.xp_total

        if apply_bonuses:
            breakdown = calculate_xp_with_bonuses(base_xp, profile.current_streak, profile.level)
        else:
            breakdown = XpBreakdown(base_xp=base_xp, total_xp=base_xp)

        new_total_xp, new_level = apply_xp_delta(old_total_xp, breakdown.total_xp)
        profile.xp_total = new_total_xp
        profile.level = new_level
        profile.permanent_xp_bonus = get_permanent_xp_bonus(new_level)
        await store.save_profile(profile)

        # Log transaction
        await store.add_xp_transaction(XpTransaction(
            user_id=user_id,
            amount=breakdown.total_xp,
            source_type=source_type,
            source_id=source_id,
            reason=reason,
            awarded_at=now_utc(),
        ))

    leveled_up = new_level > old_level
    logger.info(
        f"Awarded {breakdown.total_xp} XP to user {user_id} for {source_type}. "
        f"Total: {new_total_xp} XP, Level: {new_level}"
    )
    if leveled_up:
        logger.info(f"User {user_id} leveled up from {old_level} to {new_level}!")

    return XpAwardResult(
        xp_awarded=breakdown.total_xp,
        breakdown=breakdown,
        old_total_xp=old_total_xp,
        new_total_xp=new_total_xp,
        old_level=old_level,
        new_level=new_level,
        leveled_up=leveled_up,
    )


async def grant_xp(
    store: GamificationStore,
    user_id: str,
    amount: int,
    source_type: str,
    source_id: Optional[str] = None,
    reason: str = "Bonus",
) -> XpAwardResult:
    """Flat grant with no multipliers (challenge rewards, rank bonuses, planning)"""
    return await award_xp(
        store, user_id, amount, source_type,
        source_id=source_id, reason=reason, apply_bonuses=False,
    )


async def revoke_xp(
    store: GamificationStore,
    user_id: str,
    xp_awarded: int,
    source_type: str,
    source_id: Optional[str] = None,
    reason: str = "Completion undone",
) -> XpAwardResult:
    """
    Subtract a previously awarded XP snapshot, flooring the total at zero

    Args:
        xp_awarded: The stored snapshot, never a recomputed amount
    """
    if xp_awarded < 0:
        raise ValidationError("XP snapshot cannot be negative", field="xp_awarded", value=xp_awarded)

    async with store.transaction():
        profile = await store.get_or_create_profile(user_id, for_update=True)
        old_total_xp = profile.xp_total
        old_level = profile.level

        new_total_xp, new_level = apply_xp_delta(old_total_xp, -xp_awarded)
        removed = old_total_xp - new_total_xp
        profile.xp_total = new_total_xp
        profile.level = new_level
        profile.permanent_xp_bonus = get_permanent_xp_bonus(new_level)
        await store.save_profile(profile)

        if removed:
            await store.add_xp_transaction(XpTransaction(
                user_id=user_id,
                amount=-removed,
                source_type=source_type,
                source_id=source_id,
                reason=reason,
                awarded_at=now_utc(),
            ))

    logger.info(f"Revoked {removed} XP from user {user_id} for {source_type}. Total: {new_total_xp} XP")

    return XpAwardResult(
        xp_awarded=-removed,
        old_total_xp=old_total_xp,
        new_total_xp=new_total_xp,
        old_level=old_level,
        new_level=new_level,
        leveled_up=False,
    )


async def get_user_xp(store: GamificationStore, user_id: str) -> Dict[str, any]:
    """
    Get user's current XP and level information

    Returns:
        {
            'user_id': str,
            'total_xp': int,
            'current_level': int,
            'level_title': str,
            'xp_to_next_level': int,
            'xp_in_current_level': int,
            'progress_percent': int
        }
    """
    profile = await store.get_or_create_profile(user_id)
    level_info = calculate_level_from_xp(profile.xp_total)

    return {
        "user_id": user_id,
        "total_xp": profile.xp_total,
        "current_level": level_info["current_level"],
        "level_title": level_info["level_title"],
        "xp_to_next_level": level_info["xp_to_next_level"],
        "xp_in_current_level": level_info["xp_in_current_level"],
        "progress_percent": level_info["progress_percent"],
    }


async def get_xp_history(store: GamificationStore, user_id: str, days: int = 7) -> List[XpTransaction]:
    """
    Get recent XP transaction history

    Returns:
        Transactions from the last `days` days (newest first)
    """
    transactions = await store.list_xp_transactions(user_id, limit=50)

    cutoff = now_utc() - timedelta(days=days)
    return [t for t in transactions if t.awarded_at is None or t.awarded_at >= cutoff]
