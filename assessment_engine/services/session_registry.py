from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from assessment_engine.core.config import settings
from assessment_engine.core.logging_config import get_logger
from assessment_engine.services.attempt_manager import AttemptManager
from assessment_engine.services.record_store import RecordStore, SqlRecordStore
from assessment_engine.utils.datetime_utils import get_current_utc_datetime


logger = get_logger("session_registry")

SessionKey = Tuple[str, int]


class SessionRegistry:
    """Keeps one AttemptManager per (user, assigned assessment) so countdowns survive between requests.

    Managers untouched for `idle_seconds` are closed on the next lookup,
    unless a timed attempt is still counting down or a submission is in flight.
    """

    def __init__(self, store: Optional[RecordStore] = None, idle_seconds: Optional[int] = None, **manager_options):
        self.store = store or SqlRecordStore()
        self.idle_after = timedelta(seconds=idle_seconds or settings.SESSION_IDLE_SECONDS)
        self._clock: Callable[[], datetime] = manager_options.get("clock", get_current_utc_datetime)
        self._manager_options = manager_options
        self._managers: Dict[SessionKey, AttemptManager] = {}
        self._last_seen: Dict[SessionKey, datetime] = {}

    def __len__(self) -> int:
        return len(self._managers)

    async def get(self, user_id: str, assigned_assessment_id: int) -> AttemptManager:
        key = (str(user_id), assigned_assessment_id)
        now = self._clock()
        self._last_seen[key] = now
        await self._evict_idle(now)

        manager = self._managers.get(key)
        if manager is None:
            manager = AttemptManager(self.store, user_id, assigned_assessment_id, **self._manager_options)
            manager.watch()
            self._managers[key] = manager
        return manager

    async def release(self, user_id: str, assigned_assessment_id: int) -> None:
        key = (str(user_id), assigned_assessment_id)
        self._last_seen.pop(key, None)
        manager = self._managers.pop(key, None)
        if manager is not None:
            await manager.close()

    async def close_all(self) -> None:
        managers, self._managers = list(self._managers.values()), {}
        self._last_seen = {}
        for manager in managers:
            await manager.close()
        if managers:
            logger.info(f"Closed {len(managers)} assessment session(s)")

    @staticmethod
    def _busy(manager: AttemptManager) -> bool:
        # remaining_seconds is None unless a countdown is running
        return manager.submitting or manager.remaining_seconds() is not None

    async def _evict_idle(self, now: datetime) -> None:
        stale = [
            key for key, manager in self._managers.items()
            if now - self._last_seen.get(key, now) >= self.idle_after and not self._busy(manager)
        ]
        for user_id, assigned_assessment_id in stale:
            await self.release(user_id, assigned_assessment_id)
        if stale:
            logger.debug(f"Evicted {len(stale)} idle assessment session(s)")


registry = SessionRegistry()


def get_session_registry() -> SessionRegistry:
    return registry
