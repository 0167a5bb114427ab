import asyncio
import inspect
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from assessment_engine.core.config import settings
from assessment_engine.core.logging_config import get_logger
from assessment_engine.utils.datetime_utils import ensure_utc, get_current_utc_datetime


logger = get_logger("countdown")

Clock = Callable[[], datetime]
ExpireCallback = Callable[[], Union[Awaitable[Any], Any]]
TickCallback = Callable[[int], Union[Awaitable[Any], Any]]


async def _call(fn: Optional[Callable[..., Any]], *args: Any) -> None:
    if fn is None:
        return
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


class Countdown:
    """Remaining time of one timed attempt, derived from its persisted start.

    The countdown holds no authoritative state: every tick recomputes the
    remaining time from `started_at`, so a countdown rebuilt after a restart
    shows the same value as the one it replaces. `on_expire` fires at most
    once and never after `stop()`.
    """

    def __init__(
        self,
        started_at: datetime,
        duration_seconds: float,
        on_expire: ExpireCallback,
        clock: Clock = get_current_utc_datetime,
        on_tick: Optional[TickCallback] = None,
        interval: Optional[float] = None,
    ):
        self.started_at = ensure_utc(started_at)
        self.duration_seconds = duration_seconds
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._clock = clock
        self._interval = interval or settings.COUNTDOWN_TICK_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._fired = False
        self.remaining = self.remaining_seconds()

    @property
    def expires_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_seconds)

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    def remaining_seconds(self, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now or self._clock())
        left = (self.expires_at - now).total_seconds()
        return max(0, math.ceil(left))

    async def tick(self) -> int:
        """Publish the remaining time, or fire expiry once it reaches zero."""
        if self._stopped or self._fired:
            return self.remaining

        self.remaining = self.remaining_seconds()
        if self.remaining <= 0:
            self._fired = True
            self.stop()
            logger.info(f"Countdown expired (started_at={self.started_at.isoformat()})")
            await _call(self._on_expire)
            return 0

        await _call(self._on_tick, self.remaining)
        return self.remaining

    def start(self) -> None:
        if self._task is not None or self._stopped:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # Expiry stops the countdown from inside its own task; let it finish.
        if task is not current:
            task.cancel()

    async def _run(self) -> None:
        logger.debug(
            f"Starting countdown (expires_at={self.expires_at.isoformat()}, interval={self._interval}s)"
        )
        try:
            while not self._stopped:
                try:
                    await self.tick()
                except Exception as e:
                    logger.exception(f"Countdown tick error: {e}")
                if self._stopped:
                    break
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("Countdown task cancelled")
            raise
