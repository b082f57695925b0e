"""
Gamification engine

Turns completions (tasks, habits, schedule blocks, focus sessions,
planning) into:
- XP and levels, with streak multipliers and permanent level perks
- A global daily streak plus per-habit streaks, with streak freezes
- Tiered achievements (bronze / silver / gold)
- Daily, weekly and group challenges
- Scheduled daily and weekly group rollovers

Storage goes through the GamificationStore protocol.
"""

from src.gamification.xp_system import award_xp, get_user_xp, calculate_level_from_xp, get_level
from src.gamification.streak_system import get_user_streaks, use_streak_freeze, update_global_streak
from src.gamification.achievement_system import check_and_award_achievements, get_user_achievements
from src.gamification.challenges import generate_daily_challenges, get_todays_challenges
from src.gamification.rollover import run_daily_reset, run_weekly_group_reset
from src.gamification.store import GamificationStore
from src.gamification.memory_store import InMemoryGamificationStore

__all__ = [
    "award_xp",
    "get_user_xp",
    "calculate_level_from_xp",
    "get_level",
    "get_user_streaks",
    "use_streak_freeze",
    "update_global_streak",
    "check_and_award_achievements",
    "get_user_achievements",
    "generate_daily_challenges",
    "get_todays_challenges",
    "run_daily_reset",
    "run_weekly_group_reset",
    "GamificationStore",
    "InMemoryGamificationStore",
]
