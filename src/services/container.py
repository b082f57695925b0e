"""
Service Container

Holds the store and clock the gamification engines run against and hands
out GamificationService instances built on them. main.py initializes the
global container once; request handlers for users in other timezones ask
for a service bound to that user's calendar via service_for_timezone().
"""

from dataclasses import dataclass, field
from typing import Optional
import logging

from src.gamification.store import GamificationStore
from src.utils.datetime_helpers import Clock

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """
    Store + clock wiring for the gamification services.

    gamification_service is built on first access and reused; it answers
    "today" with the container's clock (DEFAULT_TIMEZONE unless pinned).
    """

    store: GamificationStore
    clock: Clock = field(default_factory=Clock)

    _gamification_service: Optional[object] = field(default=None, init=False, repr=False)

    @property
    def gamification_service(self):
        """Shared GamificationService on the container's clock"""
        if self._gamification_service is None:
            from src.services.gamification_service import GamificationService
            self._gamification_service = GamificationService(self.store, self.clock)
            logger.debug(f"GamificationService created (timezone {self.clock.tz_name})")
        return self._gamification_service

    def service_for_timezone(self, tz_name: Optional[str]):
        """
        GamificationService whose "today" is the calendar date in tz_name.

        A pinned container clock wins, so tests stay deterministic.
        """
        if not tz_name or tz_name == self.clock.tz_name or self.clock.fixed_today is not None:
            return self.gamification_service

        from src.services.gamification_service import GamificationService
        return GamificationService(self.store, Clock(tz_name=tz_name))


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """
    Return the global container.

    Raises:
        RuntimeError: If init_container() has not run yet
    """
    if _container is None:
        raise RuntimeError("Service container not initialized; call init_container() first")
    return _container


def init_container(store: GamificationStore, clock: Optional[Clock] = None) -> ServiceContainer:
    """
    Build the global container around a store.

    Args:
        store: PostgresGamificationStore in production, InMemoryGamificationStore in tests
        clock: Date source (defaults to DEFAULT_TIMEZONE)

    Returns:
        The new global ServiceContainer
    """
    global _container

    _container = ServiceContainer(store=store, clock=clock or Clock())
    logger.info(f"Service container initialized with {type(store).__name__}")
    return _container


def reset_container() -> None:
    """Drop the global container (used between tests)"""
    global _container
    _container = None
