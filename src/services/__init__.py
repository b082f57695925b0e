"""
Service Layer Package

Business logic that sits between callers (rollover entrypoint, API
handlers) and the gamification store.

Core Services:
- GamificationService: completions and un-completions of tasks, habits
  and schedule blocks, focus sessions, planning XP, streak freezes, stats
"""

from src.services.container import ServiceContainer, get_container, init_container, reset_container
from src.services.gamification_service import GamificationService

__all__ = [
    "ServiceContainer",
    "get_container",
    "init_container",
    "reset_container",
    "GamificationService",
]
