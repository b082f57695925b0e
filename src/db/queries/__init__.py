"""
Database queries

Module organization:
- gamification.py: PostgresGamificationStore, the psycopg implementation
  of the GamificationStore protocol (profiles, completions, activity,
  streak freezes, achievements, challenges, groups, XP ledger)
"""

from src.db.queries.gamification import PostgresGamificationStore

__all__ = ["PostgresGamificationStore"]
