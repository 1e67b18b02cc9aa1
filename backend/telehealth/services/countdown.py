import asyncio
import math
from typing import Awaitable, Callable, Optional

from telehealth.utils.logger import get_logger

logger = get_logger("session.countdown")


class Countdown:
    """Session countdown: a display ticker plus one deadline timer.

    Both run as asyncio tasks and are released together by cancel(), which is
    idempotent and may be called from inside on_expire.
    """

    def __init__(
        self,
        duration: float,
        on_expire: Callable[[], Awaitable[None]],
        on_tick: Optional[Callable[[int], None]] = None,
        tick_interval: float = 1.0,
    ) -> None:
        self.duration = max(0.0, duration)
        self.tick_interval = tick_interval
        self.remaining = math.ceil(self.duration)
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._ticker: asyncio.Task | None = None
        self._deadline: asyncio.Task | None = None
        self._started = False
        self.expired = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def active(self) -> bool:
        return any(t is not None and not t.done() for t in (self._ticker, self._deadline))

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._ticker = asyncio.create_task(self._tick())
        self._deadline = asyncio.create_task(self._wait_deadline())

    async def _tick(self) -> None:
        while self.remaining > 0:
            await asyncio.sleep(self.tick_interval)
            self.remaining = max(0, self.remaining - 1)
            if self._on_tick is not None:
                try:
                    self._on_tick(self.remaining)
                except Exception:
                    logger.exception("Countdown tick listener failed")

    async def _wait_deadline(self) -> None:
        await asyncio.sleep(self.duration)
        # Detach before firing so cancel() from on_expire does not cancel this task
        self._deadline = None
        self.expired = True
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self.remaining = 0
        await self._on_expire()

    def cancel(self) -> None:
        current = asyncio.current_task() if self._has_loop() else None
        for task in (self._ticker, self._deadline):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._ticker = None
        self._deadline = None

    @staticmethod
    def _has_loop() -> bool:
        try:
            asyncio.get_running_loop()
            return True
        except RuntimeError:
            return False
